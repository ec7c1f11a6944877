"""Turns a micro-stack and its typed configuration into a validated plan."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import pulumi

from ..config.models import StackConfig
from ..core import tokens
from ..core.graph import Plan, ResourceGraph, topological_order
from ..core.orchestrator import MaterialisationSummary, Orchestrator, StateSnapshot
from ..core.outputs import OutputPublisher
from ..core.references import StackReferenceRegistry
from ..core.wait import CancellationToken
from ..policy import PolicyReport, validate
from ..profiles import ResourceProfileCatalogue
from .base import MicroStack, StackContext

MAX_STACK_RESOURCES = 50
MAX_STACK_SHARE = 0.5


@dataclass
class StackPlan:
    stack: MicroStack
    config: StackConfig
    plan: Plan
    publisher: OutputPublisher
    policy_report: PolicyReport

    @property
    def outputs(self) -> Mapping[str, Any]:
        return self.publisher.values

    @property
    def committable(self) -> bool:
        return not self.policy_report.has_mandatory_violations


@dataclass
class CommitResult:
    summary: MaterialisationSummary
    # Empty unless every resource was created
    outputs: dict[str, Any]


class StackComposer:
    """Plans and commits micro-stacks against one stack reference registry.

    ``profiles`` overrides the catalogue otherwise loaded for each config's
    ``environment``.
    """

    def __init__(
        self,
        references: StackReferenceRegistry,
        profiles: ResourceProfileCatalogue | None = None,
    ):
        self.references = references
        self._profiles = profiles

    def plan(self, stack: MicroStack, config: StackConfig) -> StackPlan:
        """Compose ``stack``, freeze it and validate it against its policy pack."""
        upstream = stack.upstream(config)
        unexpected = sorted(set(upstream) - set(stack.requires))
        if unexpected:
            raise ValueError(
                f"Stack '{stack.name}' may only reference {list(stack.requires)}, "
                f"not {unexpected}"
            )
        handles = {name: self.references.open_reference(pointer) for name, pointer in upstream.items()}
        profiles = self._profiles or ResourceProfileCatalogue.load(config.environment)

        graph = ResourceGraph(stack.name, stack.transformations(config))
        publisher = OutputPublisher(stack.contract)
        ctx = StackContext(stack.name, graph, publisher, self.references, profiles, handles)
        with graph.component(stack.name, tokens.STACK_ROOT):
            stack.compose(ctx, config)
        plan = graph.freeze()
        publisher.check_complete()

        report = validate(plan, stack.policies(config))
        summary = report.summary
        pulumi.log.info(
            f"Planned {stack.name}: {plan.concrete_count} resources, "
            f"{summary.mandatory_fail} mandatory and {summary.advisory_fail} advisory violations"
        )
        for violation in report.violations():
            pulumi.log.warn(
                f"[{violation.enforcement.value}] {violation.policy_name} on "
                f"{violation.resource_name}: {violation.message}"
            )
        return StackPlan(stack, config, plan, publisher, report)

    async def commit(
        self,
        stack_plan: StackPlan,
        orchestrator: Orchestrator,
        previous: StateSnapshot | None = None,
        cancel: CancellationToken | None = None,
    ) -> CommitResult:
        """Materialise a plan; refuses while mandatory violations remain."""
        stack_plan.policy_report.raise_for_mandatory()
        summary = await orchestrator.materialise(stack_plan.plan, previous, cancel)
        outputs: dict[str, Any] = {}
        if summary.succeeded:
            outputs = stack_plan.publisher.resolve(summary.resolution(self.references))
        return CommitResult(summary, outputs)


def stack_order(stacks: Iterable[MicroStack]) -> list[str]:
    """Deployment order of ``stacks``; requirements outside the set are ignored."""
    stacks = list(stacks)
    names = {stack.name for stack in stacks}
    return topological_order(
        {stack.name: [name for name in stack.requires if name in names] for stack in stacks}
    )


@dataclass(frozen=True)
class BlastRadius:
    count: int
    share: float
    within_count: bool
    within_share: bool

    @property
    def ok(self) -> bool:
        return self.within_count and self.within_share


def blast_radius(
    counts: Mapping[str, int],
    max_resources: int = MAX_STACK_RESOURCES,
    max_share: float = MAX_STACK_SHARE,
) -> dict[str, BlastRadius]:
    """Check each stack's resource count against the limits for related stacks."""
    total = sum(counts.values())
    result = {}
    for name, count in counts.items():
        share = count / total if total else 0.0
        result[name] = BlastRadius(count, share, count < max_resources, share < max_share)
    return result
