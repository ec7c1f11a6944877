"""Registers a frozen plan with the Pulumi engine.

Every declaration becomes a generic resource built from its type token, so
the engine (and the provider plugins it loads) does the create/update/
delete work while the plan keeps ordering, secrecy and policy.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pulumi

from ..core import tokens, values
from ..core.graph import Plan
from ..core.references import StackPointer
from ..core.resource import ResourceDeclaration
from ..core.wait import wait_for


def to_snake(name: str) -> str:
    return "".join(f"_{char.lower()}" if char.isupper() else char for char in name).lstrip("_")


def dig(value: Any, path: str) -> Any:
    """Read a dotted ``path`` out of nested mappings, objects or outputs.

    SDK objects expose snake_case attributes, so ``vpcConfig`` is looked up
    as ``vpc_config`` first. An ``Output`` met along the way is read through
    ``apply``, which makes the result an ``Output`` too.
    """
    head, _, rest = path.partition(".")
    if value is None:
        return None
    if isinstance(value, pulumi.Output):
        return value.apply(lambda resolved: dig(resolved, path))
    if isinstance(value, Mapping):
        value = value.get(head)
    else:
        snake = to_snake(head)
        value = getattr(value, snake) if hasattr(value, snake) else getattr(value, head, None)
    return dig(value, rest) if rest else value


def unknown_output() -> pulumi.Output:
    """An output whose value is not known until the update runs."""

    async def _value() -> Any:
        return None

    async def _is_known() -> bool:
        return False

    return pulumi.Output(set(), _value(), _is_known())


class PulumiRegistrar:
    """Turns each declaration of a plan into a Pulumi resource.

    Providers become ``ProviderResource``s, multi-language components are
    registered as remote components, and data declarations resolve their
    wait gate inside an ``apply`` once their inputs are known.
    """

    def __init__(self, plan: Plan):
        self.plan = plan
        self.resources: dict[str, pulumi.Resource] = {}
        self._data: dict[str, pulumi.Output] = {}
        self._stack_references: dict[StackPointer, pulumi.StackReference] = {}

    def register(self) -> dict[str, pulumi.Resource]:
        for decl in self.plan:
            self.resources[decl.logical_name] = self._register(decl)
        for decl in self.plan:
            resource = self.resources[decl.logical_name]
            if isinstance(resource, pulumi.ComponentResource) and not self._is_remote(decl):
                resource.register_outputs({})
        return self.resources

    def convert(self, obj: Any) -> Any:
        """Turn a value expression into a Pulumi input."""
        if isinstance(obj, values.Secret):
            return pulumi.Output.secret(self.convert(obj.inner))
        if isinstance(obj, values.Literal):
            return self.convert(obj.value)
        if isinstance(obj, values.OutputRef):
            output = self.output(obj.resource, obj.attribute)
            return pulumi.Output.secret(output) if obj.secret else output
        if isinstance(obj, values.ResourceRef):
            return self.resources[obj.resource]
        if isinstance(obj, values.ReferenceOutput):
            output = self.stack_reference(obj.pointer).require_output(obj.key)
            return pulumi.Output.secret(output) if obj.secret else output
        if isinstance(obj, values.Derived):
            sources = [self.convert(source) for source in obj.sources]
            output = pulumi.Output.all(*sources).apply(lambda resolved: obj.fn(*resolved))
            return pulumi.Output.secret(output) if obj.is_secret else output
        if isinstance(obj, Mapping):
            return {key: self.convert(item) for key, item in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [self.convert(item) for item in obj]
        return obj

    def output(self, resource: str, attribute: str) -> pulumi.Output:
        """Output ``attribute`` of a registered resource; dotted names read nested fields."""
        if resource in self._data:
            return self._data[resource].apply(lambda outputs: dig(outputs, attribute))
        registered = self.resources[resource]
        head, _, rest = attribute.partition(".")
        if head == "id" and isinstance(registered, pulumi.CustomResource):
            output = registered.id
        else:
            output = getattr(registered, head, None)
            if output is None:
                output = getattr(registered, to_snake(head))
        output = pulumi.Output.from_input(output)
        if rest:
            return output.apply(lambda value: dig(value, rest))
        return output

    def stack_reference(self, pointer: StackPointer) -> pulumi.StackReference:
        if pointer not in self._stack_references:
            self._stack_references[pointer] = pulumi.StackReference(str(pointer))
        return self._stack_references[pointer]

    @staticmethod
    def _is_remote(decl: ResourceDeclaration) -> bool:
        return decl.type_token in tokens.REMOTE_COMPONENT_TOKENS

    def _options(self, decl: ResourceDeclaration) -> pulumi.ResourceOptions:
        options = decl.options
        kwargs: dict[str, Any] = {
            "depends_on": [self.resources[name] for name in options.depends_on],
            "protect": options.protect,
        }
        if options.parent is not None:
            kwargs["parent"] = self.resources[options.parent]
        if options.provider is not None:
            provider = self.resources[options.provider]
            if decl.is_component or self._is_remote(decl):
                kwargs["providers"] = [provider]
            else:
                kwargs["provider"] = provider
        if options.ignore_changes:
            kwargs["ignore_changes"] = list(options.ignore_changes)
        if options.timeout is not None and not decl.is_component:
            timeout = f"{int(options.timeout)}s"
            kwargs["custom_timeouts"] = pulumi.CustomTimeouts(
                create=timeout, update=timeout, delete=timeout
            )
        return pulumi.ResourceOptions(**kwargs)

    def _props(self, decl: ResourceDeclaration) -> dict[str, Any]:
        props = self.convert(dict(decl.inputs))
        for attribute in self.plan.requested_outputs.get(decl.logical_name, ()):
            head = attribute.split(".", 1)[0]
            if head != "id":
                props.setdefault(head, None)
        return props

    def _register(self, decl: ResourceDeclaration) -> pulumi.Resource:
        name = decl.logical_name
        opts = self._options(decl)
        if decl.is_data:
            self._data[name] = self._gate(decl)
            return pulumi.ComponentResource(decl.type_token, name, None, opts)
        if decl.is_component:
            return pulumi.ComponentResource(decl.type_token, name, None, opts)
        props = self._props(decl)
        if decl.is_provider:
            package = decl.type_token[len("pulumi:providers:") :]
            return pulumi.ProviderResource(package, name, props, opts)
        if self._is_remote(decl):
            return pulumi.ComponentResource(decl.type_token, name, props, opts, remote=True)
        return pulumi.CustomResource(decl.type_token, name, props, opts)

    def _gate(self, decl: ResourceDeclaration) -> pulumi.Output:
        gate = decl.options.wait_for
        inputs = pulumi.Output.from_input(self.convert(dict(decl.inputs)))
        if gate is None:
            return inputs

        if pulumi.runtime.is_dry_run():
            # Nothing is polled in preview; dependents see computed values
            return unknown_output()

        async def _wait(resolved: Mapping[str, Any]) -> Any:
            return await wait_for(
                lambda: asyncio.to_thread(gate.predicate, resolved),
                deadline=gate.deadline,
                interval=gate.interval,
                description=gate.description,
            )

        return inputs.apply(_wait)
