"""Typed stack outputs and the versioned contracts downstream stacks rely on."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping

import pulumi

from ..errors import ContractBreakError, DuplicateOutputError, SecretLeakError
from . import values


class OutputKind(str, enum.Enum):
    STRING = "string"
    INT = "int"
    BOOL = "bool"
    STRING_LIST = "list<string>"
    STRING_MAP = "map<string,string>"
    SEALED = "sealed"


def _matches(kind: OutputKind, value: Any) -> bool:
    if isinstance(value, pulumi.Output):
        return True
    if kind == OutputKind.STRING:
        return isinstance(value, str)
    if kind == OutputKind.INT:
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == OutputKind.BOOL:
        return isinstance(value, bool)
    if kind == OutputKind.STRING_LIST:
        return isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value)
    if kind == OutputKind.STRING_MAP:
        return isinstance(value, Mapping) and all(
            isinstance(k, str) and isinstance(v, str) for k, v in value.items()
        )
    return True


@dataclass(frozen=True)
class OutputSpec:
    name: str
    kind: OutputKind
    # Only published when the subsystem behind it is enabled
    optional: bool = False
    description: str = ""


@dataclass(frozen=True)
class StackContract:
    """Named, typed outputs a stack promises to publish."""

    stack: str
    version: int
    outputs: tuple[OutputSpec, ...]

    def __post_init__(self):
        names = [spec.name for spec in self.outputs]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate output names in contract for '{self.stack}'")

    @property
    def names(self) -> frozenset[str]:
        return frozenset(spec.name for spec in self.outputs)

    def spec(self, name: str) -> OutputSpec:
        for spec in self.outputs:
            if spec.name == name:
                return spec
        raise ContractBreakError(
            f"Output '{name}' is not part of the '{self.stack}' contract v{self.version}"
        )

    def check_compatible(self, previous: "StackContract") -> None:
        """Fail if outputs were removed or retyped without a version bump."""
        if self.version > previous.version:
            return
        if self.version < previous.version:
            raise ContractBreakError(
                f"Contract for '{self.stack}' went from v{previous.version} back to v{self.version}"
            )
        current = {spec.name: spec for spec in self.outputs}
        for spec in previous.outputs:
            now = current.get(spec.name)
            if now is None:
                raise ContractBreakError(
                    f"Output '{spec.name}' of '{self.stack}' was removed without a version bump"
                )
            if now.kind != spec.kind:
                raise ContractBreakError(
                    f"Output '{spec.name}' of '{self.stack}' changed from {spec.kind.value} "
                    f"to {now.kind.value} without a version bump"
                )


class OutputPublisher:
    """Append-only collection of the outputs a stack publishes."""

    def __init__(self, contract: StackContract):
        self.contract = contract
        self._values: dict[str, Any] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._values

    @property
    def values(self) -> Mapping[str, Any]:
        return MappingProxyType(self._values)

    def publish(self, name: str, value: Any) -> None:
        spec = self.contract.spec(name)
        if name in self._values:
            raise DuplicateOutputError(f"Output '{name}' was already published")
        if spec.kind == OutputKind.SEALED:
            value = values.seal(value)
        elif values.is_secret(value):
            raise SecretLeakError(
                f"Secret value published to non-sealed output '{name}'", resource=name
            )
        elif not values.is_pending(value) and not _matches(spec.kind, values.unseal(value)):
            raise ContractBreakError(
                f"Output '{name}' expects {spec.kind.value}, got {type(value).__name__}"
            )
        self._values[name] = value

    def missing(self) -> list[str]:
        return sorted(
            spec.name
            for spec in self.contract.outputs
            if not spec.optional and spec.name not in self._values
        )

    def check_complete(self) -> None:
        missing = self.missing()
        if missing:
            raise ContractBreakError(
                f"Stack '{self.contract.stack}' did not publish: {', '.join(missing)}"
            )

    def resolve(self, resolution: values.Resolution) -> dict[str, Any]:
        """Concrete outputs after materialisation; sealed ones stay ``Secret``."""
        resolved = {}
        for name, value in self._values.items():
            spec = self.contract.spec(name)
            concrete = values.resolve(value, resolution, keep_secrets=True)
            if spec.kind == OutputKind.SEALED:
                resolved[name] = values.seal(concrete)
                continue
            if values.is_secret(concrete):
                raise SecretLeakError(
                    f"Output '{name}' resolved to a secret but is not sealed", resource=name
                )
            if not _matches(spec.kind, concrete):
                raise ContractBreakError(
                    f"Output '{name}' expects {spec.kind.value}, got {type(concrete).__name__}"
                )
            resolved[name] = concrete
        return resolved

    def export(self, convert: Callable[[Any], Any]) -> None:
        """Export every output from inside a Pulumi program.

        ``convert`` turns a value expression into a Pulumi input; sealed
        outputs are wrapped with ``pulumi.Output.secret``.
        """
        for name, value in self._values.items():
            spec = self.contract.spec(name)
            converted = convert(value)
            if spec.kind == OutputKind.SEALED:
                converted = pulumi.Output.secret(converted)
            pulumi.export(name, converted)

    def to_text(self) -> str:
        return json.dumps(values.mask(self._values), sort_keys=True, indent=2, default=str)
