"""Base class and construction context shared by every micro-stack."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping

from ..config.models import StackConfig
from ..core import tokens, values
from ..core.graph import ResourceGraph
from ..core.outputs import OutputPublisher, StackContract
from ..core.references import StackReferenceHandle, StackReferenceRegistry
from ..core.resource import ResourceHandle
from ..core.transforms import Transformation, auto_tag_transformation
from ..policy import Policy, StackPolicy, policies_for
from ..profiles import ResourceProfileCatalogue


@dataclass
class StackContext:
    """Everything a stack needs while it declares resources.

    Lower layers are only reachable through ``upstream``, the handles opened
    on the stack reference registry for the stacks named in ``requires``.
    """

    stack: str
    graph: ResourceGraph
    publisher: OutputPublisher
    references: StackReferenceRegistry
    profiles: ResourceProfileCatalogue
    upstream: Mapping[str, StackReferenceHandle] = field(default_factory=dict)

    def declare(self, name: str, type_token: str, inputs: Mapping[str, Any] | None = None, **options) -> ResourceHandle:
        return self.graph.declare(name, type_token, inputs, **options)

    def output(self, handle: ResourceHandle, attribute: str, secret: bool = False) -> values.OutputRef:
        return self.graph.resolve(handle, attribute, secret)

    def upstream_output(self, stack: str, key: str, secret: bool = False) -> values.ReferenceOutput:
        try:
            handle = self.upstream[stack]
        except KeyError:
            raise KeyError(f"Stack '{self.stack}' has no reference to '{stack}'") from None
        return self.references.get_output(handle, key, secret)

    def publish(self, name: str, value: Any) -> None:
        self.publisher.publish(name, value)

    def kubernetes_provider(self, kubeconfig: Any, name: str = "k8s-provider") -> ResourceHandle:
        """Declare the Kubernetes provider every in-cluster resource goes through."""
        return self.declare(
            name,
            tokens.KUBERNETES_PROVIDER,
            {"kubeconfig": values.seal(kubeconfig), "enableServerSideApply": True},
        )


class MicroStack(abc.ABC):
    """A small, independently deployable layer of the platform.

    Subclasses declare their resources in ``compose`` and nothing else: no
    I/O, no reads from other stacks except through the context.
    """

    name: ClassVar[str]
    config_model: ClassVar[type[StackConfig]]
    contract: ClassVar[StackContract]
    # Stacks this one may read outputs from
    requires: ClassVar[tuple[str, ...]] = ()

    def upstream(self, config: StackConfig) -> dict[str, str]:
        """Map each required stack to the reference configured for it."""
        return {}

    def transformations(self, config: StackConfig) -> list[Transformation]:
        if not config.auto_tags:
            return []
        return [auto_tag_transformation(config.auto_tags)]

    def policies(self, config: StackConfig) -> list[Policy | StackPolicy]:
        return policies_for(self.name, config.policy_enforcement)

    @abc.abstractmethod
    def compose(self, ctx: StackContext, config: StackConfig) -> None:
        """Declare resources and publish outputs for ``config``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"
