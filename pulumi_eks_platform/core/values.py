"""Value expressions carried by resource inputs and stack outputs.

Resource inputs are ordinary Python containers (dicts, lists, tuples and
scalars). Anywhere inside them a ``Value`` can stand in for data that is
not known at planning time:

* ``Literal`` wraps a concrete value explicitly (plain values are literals
  implicitly);
* ``Pending`` values resolve during materialisation: an attribute of
  another resource (``OutputRef``), a resource itself (``ResourceRef``), an
  output of another stack (``ReferenceOutput``) or a function of other
  values (``Derived``);
* ``Secret`` seals whatever it wraps. Secrecy is a taint: anything derived
  from a secret through ``apply``/``combine`` is itself secret.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping, Protocol

import pulumi

if TYPE_CHECKING:
    from .references import StackPointer

MASK = "[secret]"


class Value:
    """Base class for explicit value expressions."""

    @property
    def is_secret(self) -> bool:
        return False


@dataclass(frozen=True)
class Literal(Value):
    value: Any

    @property
    def is_secret(self) -> bool:
        return is_secret(self.value)


class Pending(Value):
    """A value that becomes known once something upstream materialises."""


@dataclass(frozen=True)
class OutputRef(Pending):
    resource: str
    attribute: str
    secret: bool = False

    @property
    def is_secret(self) -> bool:
        return self.secret

    def __str__(self) -> str:
        return f"<{self.resource}.{self.attribute}>"


@dataclass(frozen=True)
class ResourceRef(Pending):
    resource: str

    def __str__(self) -> str:
        return f"<{self.resource}>"


@dataclass(frozen=True)
class ReferenceOutput(Pending):
    pointer: "StackPointer"
    key: str
    secret: bool = False

    @property
    def is_secret(self) -> bool:
        return self.secret

    def __str__(self) -> str:
        return f"<{self.pointer}#{self.key}>"


@dataclass(frozen=True, eq=False)
class Derived(Pending):
    sources: tuple
    fn: Callable[..., Any]
    secret: bool = False

    @property
    def is_secret(self) -> bool:
        return self.secret or any(is_secret(source) for source in self.sources)

    def __str__(self) -> str:
        return "<derived(" + ", ".join(str(mask(s)) for s in self.sources) + ")>"


@dataclass(frozen=True, repr=False)
class Secret(Value):
    inner: Any

    @property
    def is_secret(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"Secret({MASK})"

    def __str__(self) -> str:
        return MASK


class Resolution(Protocol):
    """Source of concrete values for pending expressions."""

    def output(self, resource: str, attribute: str) -> Any: ...

    def resource(self, resource: str) -> Any: ...

    def reference(self, pointer: "StackPointer", key: str) -> Any: ...


def walk(obj: Any) -> Iterator[Value]:
    """Yield every value expression nested anywhere in ``obj``."""
    if isinstance(obj, Value):
        yield obj
        if isinstance(obj, Literal):
            yield from walk(obj.value)
        elif isinstance(obj, Secret):
            yield from walk(obj.inner)
        elif isinstance(obj, Derived):
            for source in obj.sources:
                yield from walk(source)
    elif isinstance(obj, Mapping):
        for item in obj.values():
            yield from walk(item)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            yield from walk(item)


def is_secret(obj: Any) -> bool:
    """Whether ``obj`` is, or transitively depends on, a secret."""
    return any(value.is_secret for value in walk(obj))


def is_pending(obj: Any) -> bool:
    """Whether ``obj`` holds anything that is only known at materialisation."""
    return any(isinstance(value, Pending) for value in walk(obj))


def dependencies(obj: Any) -> set[str]:
    """Logical names of the resources ``obj`` reads from."""
    names = set()
    for value in walk(obj):
        if isinstance(value, (OutputRef, ResourceRef)):
            names.add(value.resource)
    return names


def references(obj: Any) -> set[tuple["StackPointer", str]]:
    """Stack outputs ``obj`` reads from."""
    return {
        (value.pointer, value.key)
        for value in walk(obj)
        if isinstance(value, ReferenceOutput)
    }


def unseal(obj: Any) -> Any:
    """Strip ``Secret`` and ``Literal`` wrappers from a fully known value."""
    if isinstance(obj, Secret):
        return unseal(obj.inner)
    if isinstance(obj, Literal):
        return unseal(obj.value)
    if isinstance(obj, Pending):
        raise ValueError(f"Cannot unseal pending value {obj}")
    if isinstance(obj, Mapping):
        return {key: unseal(item) for key, item in obj.items()}
    if isinstance(obj, list):
        return [unseal(item) for item in obj]
    if isinstance(obj, tuple):
        return tuple(unseal(item) for item in obj)
    return obj


def seal(value: Any) -> Any:
    """Mark ``value`` secret unless it already is."""
    if isinstance(value, Secret):
        return value
    return Secret(value)


def apply(value: Any, fn: Callable[[Any], Any], secret: bool = False) -> Any:
    """Map ``fn`` over ``value``, preserving pending-ness and secrecy."""
    return combine(value, fn=fn, secret=secret)


def combine(*values: Any, fn: Callable[..., Any], secret: bool = False) -> Any:
    """Combine several values with ``fn``.

    Known inputs are combined eagerly, so literals stay literals. Pulumi
    outputs (which only appear inside a running program) are combined with
    ``pulumi.Output.all``. Anything pending yields a ``Derived`` value.
    """
    tainted = secret or any(is_secret(value) for value in values)
    if any(is_pending(value) for value in values):
        return Derived(tuple(values), fn, secret=tainted)
    plain = [unseal(value) for value in values]
    if any(isinstance(item, pulumi.Output) for item in plain):
        result = pulumi.Output.all(*plain).apply(lambda resolved: fn(*resolved))
    else:
        result = fn(*plain)
    return Secret(result) if tainted else result


def mask(obj: Any) -> Any:
    """Render ``obj`` for display: secrets masked, pendings described."""
    if isinstance(obj, Value) and obj.is_secret:
        return MASK
    if isinstance(obj, Literal):
        return mask(obj.value)
    if isinstance(obj, Pending):
        return str(obj)
    if isinstance(obj, Mapping):
        return {key: mask(item) for key, item in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [mask(item) for item in obj]
    return obj


def resolve(obj: Any, resolution: Resolution, keep_secrets: bool = False) -> Any:
    """Replace every pending expression in ``obj`` by its concrete value.

    With ``keep_secrets`` the result still wraps sealed values in ``Secret``;
    otherwise plaintext is returned for handing to a provisioner.
    """
    if isinstance(obj, Secret):
        inner = resolve(obj.inner, resolution, keep_secrets)
        return seal(inner) if keep_secrets else inner
    if isinstance(obj, Literal):
        return resolve(obj.value, resolution, keep_secrets)
    if isinstance(obj, OutputRef):
        value = resolution.output(obj.resource, obj.attribute)
        return Secret(value) if keep_secrets and obj.secret else value
    if isinstance(obj, ResourceRef):
        return resolution.resource(obj.resource)
    if isinstance(obj, ReferenceOutput):
        value = resolution.reference(obj.pointer, obj.key)
        if isinstance(value, Secret) and not keep_secrets:
            return value.inner
        return Secret(value) if keep_secrets and obj.secret else value
    if isinstance(obj, Derived):
        resolved = [resolve(source, resolution) for source in obj.sources]
        value = obj.fn(*resolved)
        return Secret(value) if keep_secrets and obj.is_secret else value
    if isinstance(obj, Mapping):
        return {key: resolve(item, resolution, keep_secrets) for key, item in obj.items()}
    if isinstance(obj, list):
        return [resolve(item, resolution, keep_secrets) for item in obj]
    if isinstance(obj, tuple):
        return tuple(resolve(item, resolution, keep_secrets) for item in obj)
    return obj
