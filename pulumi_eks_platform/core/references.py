"""Cross-stack references: pointers, output sources and the per-run registry."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Protocol

import pulumi
import pulumi.automation as auto

from ..errors import OutputMissingError, ReferenceNotFoundError
from .values import ReferenceOutput, Secret

DEFAULT_ORG = "organization"


@dataclass(frozen=True, order=True)
class StackPointer:
    """Fully qualified ``org/project/stack`` name of a deployed stack."""

    org: str
    project: str
    stack: str

    @classmethod
    def parse(cls, value: "str | StackPointer", default_org: str = DEFAULT_ORG) -> "StackPointer":
        if isinstance(value, StackPointer):
            return value
        parts = value.split("/")
        if len(parts) == 2:
            return cls(default_org, *parts)
        if len(parts) == 3 and all(parts):
            return cls(*parts)
        raise ValueError(f"Invalid stack reference {value!r}; expected 'org/project/stack'")

    def __str__(self) -> str:
        return f"{self.org}/{self.project}/{self.stack}"


class OutputSource(Protocol):
    """Where the outputs of materialised stacks are read from."""

    def fetch(self, pointer: StackPointer) -> Mapping[str, Any] | None:
        """Outputs of ``pointer``, or ``None`` if it was never materialised."""


class InMemoryOutputSource:
    """Outputs kept in process; used when stacks are chained in one run."""

    def __init__(self, outputs: Mapping[StackPointer, Mapping[str, Any]] | None = None):
        self._outputs: dict[StackPointer, dict[str, Any]] = {
            pointer: dict(values) for pointer, values in (outputs or {}).items()
        }

    def publish(self, pointer: StackPointer, outputs: Mapping[str, Any]) -> None:
        self._outputs[pointer] = dict(outputs)

    def fetch(self, pointer: StackPointer) -> Mapping[str, Any] | None:
        return self._outputs.get(pointer)


class AutomationOutputSource:
    """Reads outputs from the Pulumi backend through the Automation API."""

    def __init__(self, env_vars: Mapping[str, str] | None = None):
        self._env_vars = dict(env_vars or {})

    def fetch(self, pointer: StackPointer) -> Mapping[str, Any] | None:
        try:
            stack = auto.select_stack(
                stack_name=str(pointer),
                project_name=pointer.project,
                program=lambda: None,
                opts=auto.LocalWorkspaceOptions(env_vars=self._env_vars),
            )
        except auto.StackNotFoundError:
            return None
        if stack.info() is None:
            return None
        outputs = stack.outputs()
        return {
            key: Secret(output.value) if output.secret else output.value
            for key, output in outputs.items()
        }


class DeferredOutputSource:
    """Source used inside a Pulumi program, where the engine resolves outputs.

    Every pointer counts as deployed at planning time; the engine reports a
    missing stack when the ``pulumi.StackReference`` is registered.
    """

    def fetch(self, pointer: StackPointer) -> Mapping[str, Any] | None:
        return MappingProxyType({})


@dataclass(frozen=True)
class StackReferenceHandle:
    pointer: StackPointer
    deferred: bool = False


class StackReferenceRegistry:
    """Opens each referenced stack at most once per run."""

    def __init__(self, source: OutputSource):
        self._source = source
        self._outputs: dict[StackPointer, Mapping[str, Any]] = {}
        self._deferred = isinstance(source, DeferredOutputSource)

    @property
    def opened(self) -> tuple[StackPointer, ...]:
        return tuple(self._outputs)

    def open_reference(self, pointer: StackPointer | str) -> StackReferenceHandle:
        """Resolve ``pointer`` against the output source."""
        pointer = StackPointer.parse(pointer)
        if pointer not in self._outputs:
            outputs = self._source.fetch(pointer)
            if outputs is None:
                raise ReferenceNotFoundError(
                    f"Stack '{pointer}' has not been materialised", resource=str(pointer)
                )
            self._outputs[pointer] = MappingProxyType(dict(outputs))
            pulumi.log.debug(f"Opened stack reference {pointer}")
        return StackReferenceHandle(pointer, self._deferred)

    def get_output(self, handle: StackReferenceHandle, key: str, secret: bool = False) -> ReferenceOutput:
        """Pending value for output ``key`` of the referenced stack."""
        if handle.pointer not in self._outputs:
            raise ReferenceNotFoundError(
                f"Stack '{handle.pointer}' was not opened in this run",
                resource=str(handle.pointer),
            )
        return ReferenceOutput(handle.pointer, key, secret)

    def lookup(self, pointer: StackPointer, key: str) -> Any:
        """Concrete value of an output; used at materialisation."""
        outputs = self._outputs.get(pointer)
        if outputs is None:
            outputs = self._source.fetch(pointer)
            if outputs is None:
                raise ReferenceNotFoundError(
                    f"Stack '{pointer}' has not been materialised", resource=str(pointer)
                )
            self._outputs[pointer] = MappingProxyType(dict(outputs))
        if key not in outputs:
            raise OutputMissingError(
                f"Stack '{pointer}' does not export '{key}'", resource=str(pointer)
            )
        return outputs[key]
