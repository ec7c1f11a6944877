"""Planning and materialisation core shared by every micro-stack."""

from .graph import Component, ComponentBuilder, Plan, ResourceGraph, topological_order
from .orchestrator import (
    MaterialisationSummary,
    Orchestrator,
    Provisioner,
    ResourceState,
    RetryPolicy,
    StateSnapshot,
)
from .outputs import OutputKind, OutputPublisher, OutputSpec, StackContract
from .references import (
    AutomationOutputSource,
    DeferredOutputSource,
    InMemoryOutputSource,
    StackPointer,
    StackReferenceRegistry,
)
from .report import RunReport
from .resource import ResourceDeclaration, ResourceHandle, ResourceOptions
from .transforms import TransformArgs, TransformResult, auto_tag_transformation
from .values import Derived, Literal, OutputRef, Pending, ReferenceOutput, Secret
from .wait import CancellationToken, LoadBalancerLookup, WaitGate, wait_for

__all__ = [
    "AutomationOutputSource",
    "CancellationToken",
    "Component",
    "ComponentBuilder",
    "DeferredOutputSource",
    "Derived",
    "InMemoryOutputSource",
    "Literal",
    "LoadBalancerLookup",
    "MaterialisationSummary",
    "Orchestrator",
    "OutputKind",
    "OutputPublisher",
    "OutputRef",
    "OutputSpec",
    "Pending",
    "Plan",
    "Provisioner",
    "ReferenceOutput",
    "ResourceDeclaration",
    "ResourceGraph",
    "ResourceHandle",
    "ResourceOptions",
    "ResourceState",
    "RetryPolicy",
    "RunReport",
    "Secret",
    "StackContract",
    "StackPointer",
    "StackReferenceRegistry",
    "StateSnapshot",
    "TransformArgs",
    "TransformResult",
    "WaitGate",
    "auto_tag_transformation",
    "topological_order",
    "wait_for",
]
