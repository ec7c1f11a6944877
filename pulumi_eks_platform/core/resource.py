"""Immutable resource declarations and the options attached to them."""

from __future__ import annotations

import re
import typing
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping

if typing.TYPE_CHECKING:
    from .wait import WaitGate

TYPE_TOKEN_RE = re.compile(r"^[^:\s]+:[^:\s]+:[^:\s]+$")
PROVIDER_TOKEN_PREFIX = "pulumi:providers:"

ResourceKind = typing.Literal["resource", "component", "data"]


def validate_type_token(type_token: str) -> str:
    """Check that ``type_token`` is a ``<provider>:<module>:<kind>`` string."""
    if not isinstance(type_token, str) or not TYPE_TOKEN_RE.match(type_token):
        raise ValueError(
            f"Invalid type token {type_token!r}; expected '<provider>:<module>:<kind>'"
        )
    return type_token


@dataclass(frozen=True)
class ResourceHandle:
    """Reference to a registered resource, keyed by logical name."""

    name: str
    type_token: str

    def __str__(self) -> str:
        return self.name


def _names(items) -> tuple[str, ...]:
    names = []
    for item in items or ():
        name = item.name if isinstance(item, ResourceHandle) else item
        if not isinstance(name, str):
            raise TypeError(f"depends_on entries must be handles or names, got {item!r}")
        if name not in names:
            names.append(name)
    return tuple(names)


@dataclass(frozen=True)
class ResourceOptions:
    """Options that shape how a declaration is scheduled and materialised."""

    depends_on: tuple[str, ...] = ()
    parent: str | None = None
    provider: str | None = None
    # Seconds allowed for a single create/update call
    timeout: float | None = None
    max_attempts: int = 3
    wait_for: "WaitGate | None" = None
    protect: bool = False
    ignore_changes: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "depends_on", _names(self.depends_on))
        if isinstance(self.parent, ResourceHandle):
            object.__setattr__(self, "parent", self.parent.name)
        if isinstance(self.provider, ResourceHandle):
            object.__setattr__(self, "provider", self.provider.name)
        object.__setattr__(self, "ignore_changes", tuple(self.ignore_changes))
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")

    def merge_depends_on(self, extra) -> "ResourceOptions":
        return replace(self, depends_on=_names([*self.depends_on, *_names(extra)]))


@dataclass(frozen=True)
class ResourceDeclaration:
    """A resource as declared by a stack, before it is materialised."""

    logical_name: str
    type_token: str
    inputs: Mapping[str, Any] = field(default_factory=dict)
    options: ResourceOptions = field(default_factory=ResourceOptions)
    kind: ResourceKind = "resource"

    def __post_init__(self):
        if not self.logical_name:
            raise ValueError("logical_name must not be empty")
        validate_type_token(self.type_token)
        object.__setattr__(self, "inputs", MappingProxyType(dict(self.inputs)))

    @property
    def is_provider(self) -> bool:
        return self.type_token.startswith(PROVIDER_TOKEN_PREFIX)

    @property
    def is_component(self) -> bool:
        return self.kind == "component"

    @property
    def is_data(self) -> bool:
        return self.kind == "data"

    @property
    def handle(self) -> ResourceHandle:
        return ResourceHandle(self.logical_name, self.type_token)

    def with_inputs(self, inputs: Mapping[str, Any]) -> "ResourceDeclaration":
        return replace(self, inputs=inputs)

    def with_options(self, options: ResourceOptions) -> "ResourceDeclaration":
        return replace(self, options=options)
