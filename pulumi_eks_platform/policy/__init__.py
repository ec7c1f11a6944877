from .catalogue import CATALOGUE, PACKS, policies_for
from .validator import (
    SECRET,
    UNKNOWN,
    Enforcement,
    Policy,
    PolicyReport,
    PolicyResource,
    StackPolicy,
    Violation,
    apply_overrides,
    validate,
)

__all__ = [
    "CATALOGUE",
    "PACKS",
    "SECRET",
    "UNKNOWN",
    "Enforcement",
    "Policy",
    "PolicyReport",
    "PolicyResource",
    "StackPolicy",
    "Violation",
    "apply_overrides",
    "validate",
    "policies_for",
]
