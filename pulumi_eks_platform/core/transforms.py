"""Pre-plan rewrites applied to every resource declaration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import pulumi

from ..errors import PlatformError, TransformationError
from . import values
from .resource import ResourceDeclaration, ResourceOptions
from .tokens import TAGGABLE


@dataclass(frozen=True)
class TransformArgs:
    type_token: str
    logical_name: str
    inputs: Mapping[str, Any]
    options: ResourceOptions


@dataclass(frozen=True)
class TransformResult:
    inputs: Mapping[str, Any]
    options: ResourceOptions


Transformation = Callable[[TransformArgs], "TransformResult | None"]


class TransformationPipeline:
    """Runs transformations over a declaration in registration order."""

    def __init__(self, transformations: Sequence[Transformation] = ()):
        self._transformations: list[Transformation] = list(transformations)

    def register(self, transformation: Transformation) -> None:
        self._transformations.append(transformation)

    def __len__(self) -> int:
        return len(self._transformations)

    def apply(self, decl: ResourceDeclaration) -> ResourceDeclaration:
        inputs, options = decl.inputs, decl.options
        for transformation in self._transformations:
            args = TransformArgs(decl.type_token, decl.logical_name, inputs, options)
            try:
                result = transformation(args)
            except PlatformError:
                raise
            except Exception as exc:
                raise TransformationError(
                    f"Transformation {getattr(transformation, '__name__', transformation)!r} "
                    f"failed: {exc}",
                    resource=decl.logical_name,
                ) from exc
            if result is None:
                continue
            inputs, options = result.inputs, result.options
        if inputs is decl.inputs and options is decl.options:
            return decl
        return ResourceDeclaration(
            decl.logical_name, decl.type_token, inputs, options, decl.kind
        )


def merge_tags(existing: Any, auto_tags: Mapping[str, str]) -> Any:
    """Merge ``auto_tags`` under ``existing``; keys already present win."""

    def _merge(current):
        return {**auto_tags, **(current or {})}

    if existing is None:
        return dict(auto_tags)
    if values.is_pending(existing) or isinstance(existing, (values.Secret, pulumi.Output)):
        return values.apply(existing, _merge)
    if isinstance(existing, values.Literal):
        return _merge(existing.value)
    return _merge(existing)


def auto_tag_transformation(
    auto_tags: Mapping[str, str],
    taggable: Mapping[str, str] | None = None,
) -> Transformation:
    """Build a transformation that injects ``auto_tags`` into taggable resources.

    ``taggable`` maps a type token to the name of its tag attribute (``tags``
    on AWS, ``labels``/``resourceLabels`` on GCP). Tokens outside the map are
    left untouched.
    """
    auto_tags = dict(auto_tags)
    taggable = dict(TAGGABLE if taggable is None else taggable)

    def auto_tag(args: TransformArgs) -> TransformResult | None:
        if not auto_tags:
            return None
        attribute = taggable.get(args.type_token)
        if attribute is None:
            return None
        existing = args.inputs.get(attribute)
        merged = merge_tags(existing, auto_tags)
        if merged == existing:
            return None
        return TransformResult({**args.inputs, attribute: merged}, args.options)

    return auto_tag


def to_pulumi_transformation(
    transformation: Transformation,
) -> Callable[[pulumi.ResourceTransformationArgs], pulumi.ResourceTransformationResult | None]:
    """Adapt a transformation for ``pulumi.runtime.register_stack_transformation``.

    Only inputs are rewritten; Pulumi resource options pass through as-is.
    """

    def _adapted(args: pulumi.ResourceTransformationArgs):
        result = transformation(
            TransformArgs(args.type_, args.name, dict(args.props or {}), ResourceOptions())
        )
        if result is None:
            return None
        return pulumi.ResourceTransformationResult(dict(result.inputs), args.opts)

    return _adapted
