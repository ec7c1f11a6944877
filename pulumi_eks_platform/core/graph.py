"""Resource graph: registration, scoped components and frozen plans."""

from __future__ import annotations

import heapq
import json
from collections import defaultdict
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Sequence

from ..errors import (
    ComponentScopeError,
    CycleDetectedError,
    DuplicateResourceNameError,
    UnknownDependencyError,
)
from . import values
from .resource import ResourceDeclaration, ResourceHandle, ResourceKind, ResourceOptions
from .transforms import Transformation, TransformationPipeline


def topological_order(edges: Mapping[str, Iterable[str]]) -> list[str]:
    """Order nodes so each comes after everything it depends on.

    ``edges`` maps a node to the nodes it depends on. Ties are broken by
    node name so the result is reproducible. Raises ``CycleDetectedError``
    naming every node that could not be ordered.
    """
    remaining = {node: set(deps) for node, deps in edges.items()}
    dependents: dict[str, set[str]] = defaultdict(set)
    for node, deps in remaining.items():
        for dep in deps:
            dependents[dep].add(node)

    ready = [node for node, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    order = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            pending = remaining[dependent]
            pending.discard(node)
            if not pending:
                heapq.heappush(ready, dependent)

    if len(order) != len(remaining):
        ordered = set(order)
        raise CycleDetectedError(node for node in remaining if node not in ordered)
    return order


@dataclass(frozen=True)
class Component:
    """A finalised component scope and what it depends on outside itself."""

    handle: ResourceHandle
    children: tuple[str, ...]
    depends_on: frozenset[str]
    outbound: frozenset[str]


class ComponentBuilder:
    """Scope that parents every resource registered while it is open.

    Children inherit the builder's local depends-on set; ``depends_on`` adds
    to that set for children registered afterwards. On exit the builder
    finalises into an immutable ``Component``.
    """

    def __init__(
        self,
        graph: "ResourceGraph",
        name: str,
        type_token: str,
        inputs: Mapping[str, Any] | None,
        depends_on: Sequence,
    ):
        self._graph = graph
        self.handle = graph.register(
            ResourceDeclaration(
                name,
                type_token,
                inputs or {},
                ResourceOptions(depends_on=depends_on, parent=graph.current_scope),
                kind="component",
            )
        )
        self._local_depends_on: list[str] = []
        self._children: list[str] = []
        self._data_dependencies: set[str] = set()
        self.component: Component | None = None

    @property
    def name(self) -> str:
        return self.handle.name

    def depends_on(self, *resources) -> None:
        for resource in resources:
            name = resource.name if isinstance(resource, ResourceHandle) else resource
            if name not in self._local_depends_on:
                self._local_depends_on.append(name)

    def _adopt(self, decl: ResourceDeclaration) -> ResourceDeclaration:
        self._children.append(decl.logical_name)
        options = decl.options
        if options.parent is None:
            options = replace(options, parent=self.name)
        if self._local_depends_on:
            options = options.merge_depends_on(self._local_depends_on)
        return decl.with_options(options)

    def _record_data_dependency(self, name: str) -> None:
        self._data_dependencies.add(name)

    def __enter__(self) -> "ComponentBuilder":
        self._graph._scopes.append(self)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        scopes = self._graph._scopes
        if not scopes or scopes[-1] is not self:
            raise ComponentScopeError(
                f"Component '{self.name}' closed while another component scope is open",
                resource=self.name,
            )
        scopes.pop()
        if exc_type is None:
            self.component = self._finalise()
            self._graph._components[self.name] = self.component

    def _finalise(self) -> Component:
        inside = {self.name, *self._children}
        outbound = set(self._data_dependencies)
        for child in self._children:
            decl = self._graph._nodes[child]
            outbound.update(decl.options.depends_on)
            outbound.update(values.dependencies(decl.inputs))
        return Component(
            handle=self.handle,
            children=tuple(self._children),
            depends_on=frozenset(self._graph._nodes[self.name].options.depends_on),
            outbound=frozenset(outbound - inside),
        )


class ResourceGraph:
    """Per-stack arena of resource declarations keyed by logical name."""

    def __init__(self, stack: str, transformations: Sequence[Transformation] = ()):
        self.stack = stack
        self.pipeline = TransformationPipeline(transformations)
        self._nodes: dict[str, ResourceDeclaration] = {}
        self._requested: dict[str, set[str]] = defaultdict(set)
        self._scopes: list[ComponentBuilder] = []
        self._components: dict[str, Component] = {}
        self._plan: Plan | None = None

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    @property
    def current_scope(self) -> str | None:
        return self._scopes[-1].name if self._scopes else None

    def register(self, decl: ResourceDeclaration) -> ResourceHandle:
        """Transform ``decl`` and add it to the graph."""
        if self._plan is not None:
            raise RuntimeError(f"Graph for stack '{self.stack}' is already frozen")
        if decl.logical_name in self._nodes:
            raise DuplicateResourceNameError(decl.logical_name, self.stack)
        if self._scopes:
            decl = self._scopes[-1]._adopt(decl)
        decl = self.pipeline.apply(decl)
        self._nodes[decl.logical_name] = decl
        return decl.handle

    def declare(
        self,
        name: str,
        type_token: str,
        inputs: Mapping[str, Any] | None = None,
        kind: ResourceKind = "resource",
        **options,
    ) -> ResourceHandle:
        """Register a declaration built from keyword ``ResourceOptions``."""
        return self.register(
            ResourceDeclaration(name, type_token, inputs or {}, ResourceOptions(**options), kind)
        )

    def resolve(self, handle: ResourceHandle, attribute: str, secret: bool = False) -> values.OutputRef:
        """Return a pending value for an output attribute of ``handle``."""
        self._requested[handle.name].add(attribute)
        if self._scopes:
            self._scopes[-1]._record_data_dependency(handle.name)
        return values.OutputRef(handle.name, attribute, secret)

    def ref(self, handle: ResourceHandle) -> values.ResourceRef:
        """Return a pending value standing for the resource itself."""
        if self._scopes:
            self._scopes[-1]._record_data_dependency(handle.name)
        return values.ResourceRef(handle.name)

    def component(
        self,
        name: str,
        type_token: str,
        inputs: Mapping[str, Any] | None = None,
        depends_on: Sequence = (),
    ) -> ComponentBuilder:
        """Open a component scope; use as a context manager."""
        return ComponentBuilder(self, name, type_token, inputs, depends_on)

    def get(self, name: str) -> ResourceDeclaration:
        return self._nodes[name]

    def freeze(self) -> "Plan":
        """Validate edges and return the topologically sorted plan."""
        if self._plan is not None:
            return self._plan
        if self._scopes:
            raise RuntimeError(f"Component scope '{self._scopes[-1].name}' is still open")

        children: dict[str, list[str]] = defaultdict(list)
        for decl in self._nodes.values():
            if decl.options.parent is not None:
                children[decl.options.parent].append(decl.logical_name)

        def descendants(name: str) -> set[str]:
            found, stack = set(), list(children.get(name, ()))
            while stack:
                child = stack.pop()
                if child not in found:
                    found.add(child)
                    stack.extend(children.get(child, ()))
            return found

        edges: dict[str, frozenset[str]] = {}
        for name, decl in self._nodes.items():
            direct = set(decl.options.depends_on) | values.dependencies(decl.inputs)
            for extra in (decl.options.parent, decl.options.provider):
                if extra is not None:
                    direct.add(extra)
            for dep in direct:
                if dep not in self._nodes:
                    raise UnknownDependencyError(
                        f"Resource '{name}' depends on unregistered resource '{dep}'",
                        resource=name,
                    )
            expanded = set(direct)
            for dep in direct:
                # Depending on a component means waiting for everything in it
                if self._nodes[dep].is_component and name not in descendants(dep):
                    expanded |= descendants(dep)
            expanded.discard(name)
            edges[name] = frozenset(expanded)

        order = topological_order(edges)
        self._plan = Plan(
            stack=self.stack,
            resources=MappingProxyType(dict(self._nodes)),
            creation_order=tuple(order),
            edges=MappingProxyType(edges),
            requested_outputs=MappingProxyType(
                {name: frozenset(attrs) for name, attrs in self._requested.items()}
            ),
            components=MappingProxyType(dict(self._components)),
        )
        return self._plan


@dataclass(frozen=True)
class Plan:
    """Frozen, topologically sorted view of a stack's resource graph."""

    stack: str
    resources: Mapping[str, ResourceDeclaration]
    creation_order: tuple[str, ...]
    edges: Mapping[str, frozenset[str]]
    requested_outputs: Mapping[str, frozenset[str]] = field(default_factory=dict)
    components: Mapping[str, Component] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.creation_order)

    def __iter__(self) -> Iterator[ResourceDeclaration]:
        return (self.resources[name] for name in self.creation_order)

    def __getitem__(self, name: str) -> ResourceDeclaration:
        return self.resources[name]

    def __contains__(self, name: str) -> bool:
        return name in self.resources

    @property
    def deletion_order(self) -> tuple[str, ...]:
        return tuple(reversed(self.creation_order))

    @property
    def concrete_count(self) -> int:
        """Number of resources that exist in a cloud or cluster."""
        return sum(
            1 for decl in self.resources.values() if not (decl.is_component or decl.is_data)
        )

    def dependencies(self, name: str) -> frozenset[str]:
        return self.edges[name]

    def dependents(self, name: str) -> frozenset[str]:
        return frozenset(node for node, deps in self.edges.items() if name in deps)

    def children(self, name: str) -> tuple[str, ...]:
        return tuple(
            node for node in self.creation_order if self.resources[node].options.parent == name
        )

    def descendants(self, name: str) -> tuple[str, ...]:
        """Everything parented, directly or not, under ``name``."""
        found: list[str] = []
        frontier = [name]
        while frontier:
            parent = frontier.pop(0)
            for child in self.children(parent):
                found.append(child)
                frontier.append(child)
        return tuple(found)

    def of_type(self, type_token: str) -> list[ResourceDeclaration]:
        return [decl for decl in self if decl.type_token == type_token]

    def type_counts(self) -> dict[str, int]:
        counts: dict[str, int] = defaultdict(int)
        for decl in self.resources.values():
            counts[decl.type_token] += 1
        return dict(counts)

    def references(self) -> set:
        """Stack outputs read by any resource in the plan."""
        found = set()
        for decl in self.resources.values():
            found |= values.references(decl.inputs)
        return found

    def to_text(self) -> str:
        """Human-readable plan with secrets masked."""
        lines = [f"Plan for stack '{self.stack}' ({len(self)} resources)"]
        for index, decl in enumerate(self, start=1):
            lines.append(f"{index:>3}. + {decl.type_token} {decl.logical_name}")
            deps = sorted(self.edges[decl.logical_name])
            if deps:
                lines.append(f"       depends on: {', '.join(deps)}")
            if decl.inputs:
                rendered = json.dumps(values.mask(dict(decl.inputs)), sort_keys=True, default=str)
                lines.append(f"       inputs: {rendered}")
        return "\n".join(lines)
