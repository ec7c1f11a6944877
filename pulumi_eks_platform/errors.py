"""Error types surfaced while planning and materialising micro-stacks."""

from __future__ import annotations

from typing import Iterable


class PlatformError(Exception):
    """Base class for every error that ends up in a run report."""

    kind = "platform-error"
    stage = "planning"

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        stage: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.resource = resource
        if stage is not None:
            self.stage = stage


class ConfigMissingError(PlatformError):
    kind = "config-missing"
    stage = "config"

    def __init__(self, key: str):
        super().__init__(f"Missing required configuration key '{key}'")
        self.key = key


class ConfigTypeMismatchError(PlatformError):
    kind = "config-type-mismatch"
    stage = "config"


class DuplicateResourceNameError(PlatformError):
    kind = "duplicate-resource-name"

    def __init__(self, name: str, stack: str):
        super().__init__(
            f"Resource '{name}' is already registered in stack '{stack}'",
            resource=name,
        )


class CycleDetectedError(PlatformError):
    kind = "cycle-detected"

    def __init__(self, nodes: Iterable[str]):
        self.nodes = sorted(nodes)
        super().__init__(
            "Dependency cycle between: " + ", ".join(self.nodes),
            resource=self.nodes[0] if self.nodes else None,
        )


class UnknownDependencyError(PlatformError):
    kind = "unknown-dependency"


class TransformationError(PlatformError):
    kind = "transformation-failed"


class ComponentScopeError(PlatformError):
    kind = "component-scope"


class MandatoryPolicyViolationError(PlatformError):
    kind = "policy-violation-mandatory"
    stage = "policy"

    def __init__(self, violations: list):
        self.violations = violations
        names = sorted({v.policy_name for v in violations})
        super().__init__(
            f"{len(violations)} mandatory policy violation(s): {', '.join(names)}"
        )


class ReferenceNotFoundError(PlatformError):
    kind = "reference-not-found"
    stage = "reference"


class OutputMissingError(PlatformError):
    kind = "output-missing"
    stage = "materialisation"


class TransientMaterialisationError(PlatformError):
    kind = "materialisation-transient"
    stage = "materialisation"


class TerminalMaterialisationError(PlatformError):
    kind = "materialisation-terminal"
    stage = "materialisation"


class TimeoutExceededError(PlatformError):
    kind = "timeout-exceeded"
    stage = "wait"


class PlanCancelledError(PlatformError):
    kind = "cancelled"
    stage = "materialisation"


class SecretLeakError(PlatformError):
    kind = "secret-leak"
    stage = "outputs"


class ContractBreakError(PlatformError):
    kind = "contract-break"
    stage = "outputs"


class DuplicateOutputError(PlatformError):
    kind = "duplicate-output"
    stage = "outputs"
