"""Evaluates policies against a frozen plan.

Policies see a read-only view of each declaration in which values that are
not known yet render as ``UNKNOWN`` and secrets as ``SECRET``. A policy
must not report a violation on a value it cannot see.
"""

from __future__ import annotations

import enum
from collections import defaultdict
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..core import values
from ..core.graph import Plan
from ..core.resource import ResourceDeclaration
from ..errors import ConfigTypeMismatchError, MandatoryPolicyViolationError


class Enforcement(str, enum.Enum):
    MANDATORY = "mandatory"
    ADVISORY = "advisory"
    DISABLED = "disabled"


class _Opaque:
    def __init__(self, label: str):
        self._label = label

    def __repr__(self) -> str:
        return self._label

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Opaque("<unknown>")
SECRET = _Opaque("<secret>")


def is_known(value: Any) -> bool:
    return value is not UNKNOWN


def view(value: Any) -> Any:
    """Read-only rendering of an input value for policies."""
    if isinstance(value, values.Value) and value.is_secret:
        return SECRET
    if isinstance(value, values.Literal):
        return view(value.value)
    if isinstance(value, values.Pending):
        return UNKNOWN
    if isinstance(value, Mapping):
        return MappingProxyType({key: view(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(view(item) for item in value)
    return value


@dataclass(frozen=True)
class PolicyResource:
    """What a policy sees of one declaration."""

    name: str
    type_token: str
    props: Mapping[str, Any]
    parent: str | None = None

    @classmethod
    def from_declaration(cls, decl: ResourceDeclaration) -> "PolicyResource":
        return cls(decl.logical_name, decl.type_token, view(dict(decl.inputs)), decl.options.parent)

    def get(self, path: str, default: Any = None) -> Any:
        """Dotted lookup into nested props; ``UNKNOWN`` propagates."""
        current: Any = self.props
        for part in path.split("."):
            if current is UNKNOWN:
                return UNKNOWN
            if not isinstance(current, Mapping) or part not in current:
                return default
            current = current[part]
        return current


@dataclass(frozen=True)
class Violation:
    resource_name: str
    policy_name: str
    message: str
    enforcement: Enforcement = Enforcement.MANDATORY


Predicate = Callable[[PolicyResource], "str | Iterable[str] | None"]
StackPredicate = Callable[[Sequence[PolicyResource]], "str | Iterable[str] | None"]


@dataclass(frozen=True)
class Policy:
    """A pure check applied to every declaration whose type it selects."""

    name: str
    description: str
    enforcement: Enforcement
    selector: frozenset[str]
    predicate: Predicate

    def selects(self, resource: PolicyResource) -> bool:
        return resource.type_token in self.selector

    def with_enforcement(self, enforcement: Enforcement) -> "Policy":
        return replace(self, enforcement=enforcement)


@dataclass(frozen=True)
class StackPolicy:
    """A pure check over the whole set of declarations in a stack."""

    name: str
    description: str
    enforcement: Enforcement
    predicate: StackPredicate

    def with_enforcement(self, enforcement: Enforcement) -> "StackPolicy":
        return replace(self, enforcement=enforcement)


def _messages(result) -> list[str]:
    if result is None:
        return []
    if isinstance(result, str):
        return [result] if result else []
    return [message for message in result if message]


@dataclass(frozen=True)
class PolicySummary:
    mandatory_pass: int
    mandatory_fail: int
    advisory_pass: int
    advisory_fail: int


@dataclass
class PolicyReport:
    by_policy: dict[str, list[Violation]] = field(default_factory=dict)
    enforcement: dict[str, Enforcement] = field(default_factory=dict)
    evaluations: dict[str, int] = field(default_factory=dict)

    @property
    def summary(self) -> PolicySummary:
        counts: dict[tuple[Enforcement, bool], int] = defaultdict(int)
        for name, enforcement in self.enforcement.items():
            counts[(enforcement, not self.by_policy.get(name))] += 1
        return PolicySummary(
            mandatory_pass=counts[(Enforcement.MANDATORY, True)],
            mandatory_fail=counts[(Enforcement.MANDATORY, False)],
            advisory_pass=counts[(Enforcement.ADVISORY, True)],
            advisory_fail=counts[(Enforcement.ADVISORY, False)],
        )

    def violations(self, enforcement: Enforcement | None = None) -> list[Violation]:
        found = [v for name in sorted(self.by_policy) for v in self.by_policy[name]]
        if enforcement is None:
            return found
        return [v for v in found if v.enforcement == enforcement]

    @property
    def has_mandatory_violations(self) -> bool:
        return bool(self.violations(Enforcement.MANDATORY))

    def raise_for_mandatory(self) -> None:
        mandatory = self.violations(Enforcement.MANDATORY)
        if mandatory:
            raise MandatoryPolicyViolationError(mandatory)

    def to_dict(self) -> dict:
        summary = self.summary
        return {
            "summary": {
                "mandatoryPass": summary.mandatory_pass,
                "mandatoryFail": summary.mandatory_fail,
                "advisoryPass": summary.advisory_pass,
                "advisoryFail": summary.advisory_fail,
            },
            "violations": [
                {
                    "policy": v.policy_name,
                    "resource": v.resource_name,
                    "enforcement": v.enforcement.value,
                    "message": v.message,
                }
                for v in self.violations()
            ],
        }

    def to_text(self) -> str:
        summary = self.summary
        lines = [
            f"  policies: mandatory {summary.mandatory_pass} passed / "
            f"{summary.mandatory_fail} failed, advisory {summary.advisory_pass} passed / "
            f"{summary.advisory_fail} failed"
        ]
        for v in self.violations():
            lines.append(
                f"    [{v.enforcement.value}] {v.policy_name} on {v.resource_name}: {v.message}"
            )
        return "\n".join(lines)


def validate(
    resources: Plan | Iterable[ResourceDeclaration],
    policies: Iterable[Policy | StackPolicy],
) -> PolicyReport:
    """Evaluate each policy once per selected declaration."""
    views = [PolicyResource.from_declaration(decl) for decl in resources]
    report = PolicyReport()
    for policy in policies:
        if policy.enforcement == Enforcement.DISABLED:
            continue
        if policy.name in report.enforcement:
            raise ValueError(f"Policy '{policy.name}' is listed twice")
        report.enforcement[policy.name] = policy.enforcement
        report.by_policy[policy.name] = []
        report.evaluations[policy.name] = 0
        if isinstance(policy, StackPolicy):
            report.evaluations[policy.name] = 1
            for message in _messages(policy.predicate(views)):
                report.by_policy[policy.name].append(
                    Violation("<stack>", policy.name, message, policy.enforcement)
                )
            continue
        for resource in views:
            if not policy.selects(resource):
                continue
            report.evaluations[policy.name] += 1
            for message in _messages(policy.predicate(resource)):
                report.by_policy[policy.name].append(
                    Violation(resource.name, policy.name, message, policy.enforcement)
                )
    return report


def apply_overrides(
    policies: Iterable[Policy | StackPolicy],
    overrides: Mapping[str, str],
) -> list[Policy | StackPolicy]:
    """Re-grade policies by name, e.g. ``{"rds-multi-az-recommended": "mandatory"}``."""
    policies = list(policies)
    known = {policy.name for policy in policies}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ConfigTypeMismatchError(f"Unknown policies in policyEnforcement: {', '.join(unknown)}")
    result = []
    for policy in policies:
        if policy.name in overrides:
            try:
                enforcement = Enforcement(overrides[policy.name])
            except ValueError as exc:
                raise ConfigTypeMismatchError(
                    f"Invalid enforcement {overrides[policy.name]!r} for policy '{policy.name}'"
                ) from exc
            policy = policy.with_enforcement(enforcement)
        result.append(policy)
    return result
