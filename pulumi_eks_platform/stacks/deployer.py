"""Deploys several micro-stacks in dependency order with the Automation API.

Each stack is one node of a plan whose edges are the stacks' ``requires``;
the orchestrator runs siblings in parallel and retries stacks whose update
collided with another one.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

import pulumi
import pulumi.automation as auto

from ..core import tokens
from ..core.graph import Plan, ResourceGraph
from ..core.orchestrator import (
    MaterialisationSummary,
    Orchestrator,
    ResourceSnapshot,
    RetryPolicy,
    StateSnapshot,
)
from ..core.values import Secret
from ..core.wait import CancellationToken
from ..errors import TerminalMaterialisationError, TransientMaterialisationError
from . import STACKS

DEFAULT_STACK_PARALLELISM = 4


class AutomationStackProvisioner:
    """Runs ``pulumi up``/``destroy`` for the program in ``projects/<stack>``.

    ``config`` maps a stack name to the configuration set before each
    update; ``Secret`` values are stored as secrets.
    """

    def __init__(
        self,
        projects_dir: str | Path,
        stack_name: str,
        config: Mapping[str, Mapping[str, Any]] | None = None,
        env_vars: Mapping[str, str] | None = None,
        on_output: Callable[[str], Any] | None = None,
    ):
        self.projects_dir = Path(projects_dir)
        self.stack_name = stack_name
        self.config = config or {}
        self.env_vars = dict(env_vars or {})
        self.on_output = on_output

    def _select(self, name: str) -> auto.Stack:
        stack = auto.create_or_select_stack(
            stack_name=self.stack_name,
            work_dir=str(self.projects_dir / name),
            opts=auto.LocalWorkspaceOptions(env_vars=self.env_vars),
        )
        for key, value in self.config.get(name, {}).items():
            if isinstance(value, Secret):
                stack.set_config(key, auto.ConfigValue(value=str(value.inner), secret=True))
            else:
                stack.set_config(key, auto.ConfigValue(value=str(value)))
        return stack

    def _up(self, name: str) -> Mapping[str, Any]:
        try:
            result = self._select(name).up(on_output=self.on_output)
        except auto.ConcurrentUpdateError as exc:
            raise TransientMaterialisationError(str(exc), resource=name) from exc
        except auto.CommandError as exc:
            raise TerminalMaterialisationError(str(exc), resource=name) from exc
        return {
            key: Secret(output.value) if output.secret else output.value
            for key, output in result.outputs.items()
        }

    def _destroy(self, name: str) -> None:
        try:
            self._select(name).destroy(on_output=self.on_output)
        except auto.ConcurrentUpdateError as exc:
            raise TransientMaterialisationError(str(exc), resource=name) from exc
        except auto.CommandError as exc:
            raise TerminalMaterialisationError(str(exc), resource=name) from exc

    async def create(self, name: str, type_token: str, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        return await asyncio.to_thread(self._up, name)

    async def update(
        self,
        name: str,
        type_token: str,
        inputs: Mapping[str, Any],
        outputs: Mapping[str, Any],
    ) -> Mapping[str, Any]:
        return await asyncio.to_thread(self._up, name)

    async def delete(self, name: str, type_token: str, outputs: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._destroy, name)


class StackDeployer:
    """Orders stacks by their requirements and deploys or destroys them."""

    def __init__(
        self,
        provisioner,
        parallelism: int = DEFAULT_STACK_PARALLELISM,
        retry: RetryPolicy = RetryPolicy(base_delay=30.0, max_delay=300.0),
    ):
        self.orchestrator = Orchestrator(provisioner, parallelism=parallelism, retry=retry)

    @staticmethod
    def plan(names: Iterable[str]) -> Plan:
        """Plan with one node per stack; requirements outside ``names`` count as deployed."""
        names = list(names)
        graph = ResourceGraph("platform")
        for name in names:
            stack = STACKS[name]
            graph.declare(
                name,
                tokens.PULUMI_STACK,
                {"project": name},
                depends_on=[required for required in stack.requires if required in names],
            )
        return graph.freeze()

    async def deploy(
        self, names: Iterable[str], cancel: CancellationToken | None = None
    ) -> MaterialisationSummary:
        plan = self.plan(names)
        pulumi.log.info(f"Deploying stacks in order: {', '.join(plan.creation_order)}")
        return await self.orchestrator.materialise(plan, cancel=cancel)

    async def destroy(
        self, names: Iterable[str], cancel: CancellationToken | None = None
    ) -> MaterialisationSummary:
        plan = self.plan(names)
        snapshot = StateSnapshot(
            "platform",
            MappingProxyType(
                {
                    name: ResourceSnapshot(tokens.PULUMI_STACK, MappingProxyType({}), MappingProxyType({}))
                    for name in plan.creation_order
                }
            ),
            plan.creation_order,
        )
        pulumi.log.info(f"Destroying stacks in order: {', '.join(plan.deletion_order)}")
        return await self.orchestrator.destroy(snapshot, cancel=cancel)
