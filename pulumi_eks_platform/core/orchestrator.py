"""Materialises a frozen plan with bounded parallelism, retries and waits."""

from __future__ import annotations

import asyncio
import enum
import heapq
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Protocol

import pulumi

from ..errors import (
    OutputMissingError,
    PlanCancelledError,
    PlatformError,
    TerminalMaterialisationError,
    TimeoutExceededError,
    TransientMaterialisationError,
)
from . import values
from .graph import Plan
from .references import StackPointer, StackReferenceRegistry
from .resource import ResourceDeclaration
from .wait import CancellationToken, wait_for

DEFAULT_PARALLELISM = 16


class ResourceState(str, enum.Enum):
    PENDING = "pending"
    CREATING = "creating"
    CREATED = "created"
    UPDATING = "updating"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"


class Provisioner(Protocol):
    """Performs the create/update/delete calls against a real backend.

    Implementations raise ``TransientMaterialisationError`` for failures
    worth retrying; any other exception is terminal for the resource.
    """

    async def create(
        self, name: str, type_token: str, inputs: Mapping[str, Any]
    ) -> Mapping[str, Any]: ...

    async def update(
        self,
        name: str,
        type_token: str,
        inputs: Mapping[str, Any],
        outputs: Mapping[str, Any],
    ) -> Mapping[str, Any]: ...

    async def delete(self, name: str, type_token: str, outputs: Mapping[str, Any]) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential back-off between attempts."""

    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 60.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)


@dataclass(frozen=True)
class ResourceSnapshot:
    type_token: str
    inputs: Mapping[str, Any]
    outputs: Mapping[str, Any]
    kind: str = "resource"


@dataclass(frozen=True)
class StateSnapshot:
    """What a previous run left behind, in creation order."""

    stack: str
    resources: Mapping[str, ResourceSnapshot]
    order: tuple[str, ...]

    @classmethod
    def empty(cls, stack: str) -> "StateSnapshot":
        return cls(stack, MappingProxyType({}), ())


@dataclass
class MaterialisationSummary:
    stack: str
    states: dict[str, ResourceState]
    creation_sequence: list[str] = field(default_factory=list)
    outputs: dict[str, Mapping[str, Any]] = field(default_factory=dict)
    inputs: dict[str, Mapping[str, Any]] = field(default_factory=dict)
    failures: dict[str, PlatformError] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    type_tokens: dict[str, str] = field(default_factory=dict)
    kinds: dict[str, str] = field(default_factory=dict)
    # Prior resources deleted because their type token changed
    replaced: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failures and not self.blocked and not self.cancelled

    @property
    def blocked(self) -> list[str]:
        """Resources never attempted because something upstream did not finish."""
        return sorted(
            name for name, state in self.states.items() if state == ResourceState.PENDING
        )

    def created_at(self, name: str) -> int:
        return self.creation_sequence.index(name)

    def resolution(self, references: StackReferenceRegistry | None = None) -> "PlanResolution":
        return PlanResolution(self.outputs, references, self.stack)

    def snapshot(self, previous: StateSnapshot | None = None) -> StateSnapshot:
        """State to hand to the next run."""
        resources: dict[str, ResourceSnapshot] = {}
        order: list[str] = []
        for name in previous.order if previous is not None else ():
            if (
                self.states.get(name) == ResourceState.DELETED
                or name in self.outputs
                or name in self.replaced
            ):
                continue
            resources[name] = previous.resources[name]
            order.append(name)
        for name in self.creation_sequence:
            resources[name] = ResourceSnapshot(
                self.type_tokens[name],
                MappingProxyType(dict(self.inputs[name])),
                self.outputs[name],
                self.kinds.get(name, "resource"),
            )
            order.append(name)
        return StateSnapshot(self.stack, MappingProxyType(resources), tuple(order))


class PlanResolution:
    """Resolves pending values against the outputs of created resources."""

    def __init__(
        self,
        outputs: Mapping[str, Mapping[str, Any]],
        references: StackReferenceRegistry | None,
        current: str,
    ):
        self._outputs = outputs
        self._references = references
        self._current = current

    def output(self, resource: str, attribute: str) -> Any:
        """Output ``attribute`` of ``resource``; dotted names read nested fields."""
        value: Any = self._outputs.get(resource, {})
        if attribute in value:
            return value[attribute]
        for part in attribute.split("."):
            if not isinstance(value, Mapping) or part not in value:
                raise OutputMissingError(
                    f"Resource '{resource}' did not produce output '{attribute}'",
                    resource=self._current,
                )
            value = value[part]
        return value

    def resource(self, resource: str) -> Any:
        outputs = self._outputs.get(resource, {})
        return outputs.get("id", resource)

    def reference(self, pointer: StackPointer, key: str) -> Any:
        if self._references is None:
            raise OutputMissingError(
                f"No stack reference registry to resolve '{pointer}#{key}'",
                resource=self._current,
            )
        return self._references.lookup(pointer, key)


class Orchestrator:
    """Drives a provisioner through a plan in dependency order.

    Nodes whose dependencies have all been created run concurrently, at
    most ``parallelism`` at a time, picked in name order. A terminal failure
    leaves every dependent in ``PENDING``; independent branches carry on.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        references: StackReferenceRegistry | None = None,
        parallelism: int = DEFAULT_PARALLELISM,
        retry: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self.provisioner = provisioner
        self.references = references
        self.parallelism = parallelism
        self.retry = retry
        self._sleep = sleep

    async def materialise(
        self,
        plan: Plan,
        previous: StateSnapshot | None = None,
        cancel: CancellationToken | None = None,
    ) -> MaterialisationSummary:
        """Create or update every resource in ``plan``; delete removed ones."""
        cancel = cancel or CancellationToken()
        previous = previous or StateSnapshot.empty(plan.stack)
        summary = MaterialisationSummary(
            stack=plan.stack,
            states={
                name: ResourceState.CREATED if name in previous.resources else ResourceState.PENDING
                for name in plan.creation_order
            },
        )
        for name in plan.creation_order:
            summary.type_tokens[name] = plan[name].type_token
            summary.kinds[name] = plan[name].kind
        settled: set[str] = set()
        remaining = {name: set(plan.dependencies(name)) for name in plan.creation_order}
        ready = [name for name, deps in remaining.items() if not deps]
        heapq.heapify(ready)
        running: dict[asyncio.Task, str] = {}

        while ready or running:
            while ready and len(running) < self.parallelism:
                if cancel.cancelled:
                    summary.cancelled = True
                    ready.clear()
                    break
                name = heapq.heappop(ready)
                task = asyncio.ensure_future(
                    self._materialise_one(plan[name], summary, previous, cancel)
                )
                running[task] = name
            if not running:
                break
            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=lambda t: running[t]):
                name = running.pop(task)
                if task.result():
                    settled.add(name)
                    for dependent in sorted(plan.dependents(name)):
                        deps = remaining[dependent]
                        deps.discard(name)
                        if not deps and dependent not in settled:
                            heapq.heappush(ready, dependent)

        if cancel.cancelled:
            summary.cancelled = True
        # Restored nodes that were never reached keep their previous state
        for name in plan.creation_order:
            if name not in settled and summary.states[name] == ResourceState.CREATED:
                summary.states[name] = ResourceState.PENDING

        removed = [name for name in previous.order if name not in plan.resources]
        if removed and not summary.cancelled and not summary.failures:
            await self._delete_all(removed, previous, summary, cancel)
        self._log_summary(summary)
        return summary

    async def destroy(
        self,
        snapshot: StateSnapshot,
        cancel: CancellationToken | None = None,
    ) -> MaterialisationSummary:
        """Delete everything in ``snapshot`` in reverse creation order."""
        cancel = cancel or CancellationToken()
        summary = MaterialisationSummary(
            stack=snapshot.stack,
            states={name: ResourceState.CREATED for name in snapshot.order},
        )
        await self._delete_all(list(snapshot.order), snapshot, summary, cancel)
        self._log_summary(summary)
        return summary

    async def _delete_all(
        self,
        names: list[str],
        snapshot: StateSnapshot,
        summary: MaterialisationSummary,
        cancel: CancellationToken,
    ) -> None:
        for name in reversed(names):
            if cancel.cancelled:
                summary.cancelled = True
                return
            resource = snapshot.resources[name]
            summary.states[name] = ResourceState.DELETING
            if resource.kind != "resource":
                summary.states[name] = ResourceState.DELETED
                continue
            try:
                await self._with_retries(
                    name,
                    lambda: self.provisioner.delete(name, resource.type_token, resource.outputs),
                    max_attempts=3,
                    timeout=None,
                    summary=summary,
                    cancel=cancel,
                )
            except PlanCancelledError:
                summary.states[name] = ResourceState.CREATED
                summary.cancelled = True
                return
            except PlatformError as exc:
                summary.states[name] = ResourceState.FAILED
                summary.failures[name] = exc
                pulumi.log.error(f"Failed to delete {name}: {exc.message}")
                # Anything created before it may still be in use by it
                return
            summary.states[name] = ResourceState.DELETED

    async def _materialise_one(
        self,
        decl: ResourceDeclaration,
        summary: MaterialisationSummary,
        previous: StateSnapshot,
        cancel: CancellationToken,
    ) -> bool:
        name = decl.logical_name
        prior = previous.resources.get(name)
        try:
            resolution = PlanResolution(summary.outputs, self.references, name)
            inputs = values.resolve(dict(decl.inputs), resolution)
            summary.inputs[name] = inputs

            if decl.options.wait_for is not None:
                gate = decl.options.wait_for
                result = await wait_for(
                    lambda: gate.predicate(inputs),
                    deadline=gate.deadline,
                    interval=gate.interval,
                    cancel=cancel,
                    sleep=self._sleep,
                    description=gate.description,
                )
            else:
                result = None

            if decl.is_component:
                summary.states[name] = ResourceState.CREATING
                outputs: Mapping[str, Any] = {}
            elif decl.is_data:
                summary.states[name] = ResourceState.CREATING
                outputs = dict(result) if isinstance(result, Mapping) else {"value": result}
            elif prior is not None and prior.type_token == decl.type_token:
                if prior.inputs == inputs:
                    outputs = prior.outputs
                else:
                    summary.states[name] = ResourceState.UPDATING
                    outputs = await self._with_retries(
                        name,
                        lambda: self.provisioner.update(name, decl.type_token, inputs, prior.outputs),
                        decl.options.max_attempts,
                        decl.options.timeout,
                        summary,
                        cancel,
                    )
            else:
                if prior is not None and prior.kind == "resource":
                    await self._replace(name, prior, summary, cancel)
                summary.states[name] = ResourceState.CREATING
                outputs = await self._with_retries(
                    name,
                    lambda: self.provisioner.create(name, decl.type_token, inputs),
                    decl.options.max_attempts,
                    decl.options.timeout,
                    summary,
                    cancel,
                )
        except PlanCancelledError:
            summary.states[name] = ResourceState.PENDING
            summary.cancelled = True
            return False
        except PlatformError as exc:
            if exc.resource is None:
                exc.resource = name
            summary.states[name] = ResourceState.FAILED
            summary.failures[name] = exc
            pulumi.log.error(f"{name}: {exc.kind}: {exc.message}")
            return False
        except Exception as exc:
            summary.states[name] = ResourceState.FAILED
            summary.failures[name] = TerminalMaterialisationError(str(exc), resource=name)
            pulumi.log.error(f"{name}: could not compute inputs: {exc}")
            return False

        summary.outputs[name] = MappingProxyType(dict(outputs or {}))
        summary.states[name] = ResourceState.CREATED
        summary.creation_sequence.append(name)
        return True

    async def _replace(
        self,
        name: str,
        prior: ResourceSnapshot,
        summary: MaterialisationSummary,
        cancel: CancellationToken,
    ) -> None:
        """Delete the previous resource of ``name`` whose type token changed."""
        pulumi.log.info(
            f"{name}: type changed from {prior.type_token}; replacing the existing resource"
        )
        summary.states[name] = ResourceState.DELETING
        await self._with_retries(
            name,
            lambda: self.provisioner.delete(name, prior.type_token, prior.outputs),
            max_attempts=3,
            timeout=None,
            summary=summary,
            cancel=cancel,
        )
        summary.replaced.append(name)

    async def _with_retries(
        self,
        name: str,
        call: Callable[[], Awaitable[Any]],
        max_attempts: int,
        timeout: float | None,
        summary: MaterialisationSummary,
        cancel: CancellationToken | None = None,
    ) -> Any:
        for attempt in range(1, max_attempts + 1):
            if cancel is not None:
                cancel.raise_if_cancelled(name)
            summary.attempts[name] = attempt
            try:
                if timeout is None:
                    return await call()
                return await asyncio.wait_for(call(), timeout)
            except asyncio.TimeoutError as exc:
                raise TimeoutExceededError(
                    f"Exceeded {timeout:g}s timeout", resource=name, stage="materialisation"
                ) from exc
            except TransientMaterialisationError as exc:
                if attempt == max_attempts:
                    raise TerminalMaterialisationError(
                        f"Gave up after {attempt} attempt(s): {exc.message}", resource=name
                    ) from exc
                delay = self.retry.delay(attempt)
                pulumi.log.warn(
                    f"{name}: attempt {attempt}/{max_attempts} failed ({exc.message}); "
                    f"retrying in {delay:g}s"
                )
                await self._sleep(delay)
            except PlatformError:
                raise
            except Exception as exc:
                raise TerminalMaterialisationError(str(exc), resource=name) from exc
        raise AssertionError("unreachable")

    @staticmethod
    def _log_summary(summary: MaterialisationSummary) -> None:
        counts: dict[str, int] = {}
        for state in summary.states.values():
            counts[state.value] = counts.get(state.value, 0) + 1
        rendered = ", ".join(f"{count} {state}" for state, count in sorted(counts.items()))
        pulumi.log.info(f"Stack '{summary.stack}': {rendered}")
