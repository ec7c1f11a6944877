from .api import Api
from .base import MicroStack, StackContext
from .ci_support import CiSupport
from .composer import BlastRadius, CommitResult, StackComposer, StackPlan, blast_radius, stack_order
from .infra_aws import InfraAws
from .infra_gcp import InfraGcp
from .infra_kube import InfraKube
from .mon_log import MonLog
from .sql import Sql

STACKS: dict[str, MicroStack] = {
    stack.name: stack
    for stack in (InfraAws(), InfraGcp(), InfraKube(), Sql(), MonLog(), CiSupport(), Api())
}


def get_stack(name: str) -> MicroStack:
    try:
        return STACKS[name]
    except KeyError:
        raise KeyError(f"Unknown stack '{name}'; expected one of {sorted(STACKS)}") from None


__all__ = [
    "Api",
    "BlastRadius",
    "CiSupport",
    "CommitResult",
    "InfraAws",
    "InfraGcp",
    "InfraKube",
    "MicroStack",
    "MonLog",
    "STACKS",
    "Sql",
    "StackComposer",
    "StackContext",
    "StackPlan",
    "blast_radius",
    "get_stack",
    "stack_order",
]
