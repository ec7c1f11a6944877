"""Node pool and taint definitions for EKS managed node groups."""

import typing
from dataclasses import dataclass

DEFAULT_DISK_SIZE = 50
DEFAULT_MIN_SIZE = 0
DEFAULT_MAX_SIZE = 2

# AWS managed policies for EKS nodes
EKS_NODE_POLICIES = [
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
]

# EKS cluster log types
CLUSTER_LOG_TYPES = [
    "api",
    "audit",
    "authenticator",
    "controllerManager",
    "scheduler",
]

GPU_TAINT_KEY = "nvidia.com/gpu"

_NODE_GROUP_EFFECTS = {
    "NoSchedule": "NO_SCHEDULE",
    "PreferNoSchedule": "PREFER_NO_SCHEDULE",
    "NoExecute": "NO_EXECUTE",
}


@dataclass
class TaintConfig:
    """Configuration for a Kubernetes taint."""

    key: str
    value: str | None = None
    effect: typing.Literal["NoSchedule", "PreferNoSchedule", "NoExecute"] = "NoSchedule"

    def to_toleration(
        self, operator: typing.Literal["Equal", "Exists"] = "Equal"
    ) -> dict:
        """Convert taint to a toleration dict.

        Args:
            operator: Toleration operator. "Equal" matches key and value, "Exists" matches only key.
        """
        toleration = {"key": self.key, "operator": operator, "effect": self.effect}
        if operator == "Equal" and self.value:
            toleration["value"] = self.value
        return toleration

    def to_node_group_taint(self) -> dict:
        """Render the taint the way the EKS node group API spells it."""
        taint = {"key": self.key, "effect": _NODE_GROUP_EFFECTS[self.effect]}
        if self.value:
            taint["value"] = self.value
        return taint


@dataclass
class NodePoolConfig:
    """Configuration for an EKS managed node group."""

    name: str
    instance_type: str
    capacity_type: typing.Literal["ON_DEMAND", "SPOT"] = "ON_DEMAND"
    min_size: int = DEFAULT_MIN_SIZE
    max_size: int = DEFAULT_MAX_SIZE
    desired_size: int | None = None
    disk_size: int = DEFAULT_DISK_SIZE
    # Custom taints and labels
    taints: list[TaintConfig] | None = None
    labels: dict[str, str] | None = None

    def __post_init__(self):
        if self.min_size > self.max_size:
            raise ValueError(
                f"Node pool '{self.name}': min_size {self.min_size} exceeds max_size {self.max_size}"
            )

    @property
    def gpu(self) -> bool:
        """Whether the node pool is a GPU node pool."""
        # AWS NVIDIA GPU instance families always start with 'g' or 'p'
        return self.instance_type.startswith("g") or self.instance_type.startswith("p")

    @property
    def ami_type(self) -> str:
        return "AL2_x86_64_GPU" if self.gpu else "AL2_x86_64"

    @property
    def effective_taints(self) -> list[TaintConfig]:
        """Configured taints, plus the NVIDIA taint on GPU pools."""
        taints = list(self.taints or [])
        if self.gpu and not any(t.key == GPU_TAINT_KEY for t in taints):
            taints.append(TaintConfig(key=GPU_TAINT_KEY, value="true"))
        return taints

    @classmethod
    def from_dict(cls, data: dict) -> "NodePoolConfig":
        """Create a NodePoolConfig from a JSON/dict payload."""
        taints = None
        if data.get("taints"):
            taints = [TaintConfig(**taint) for taint in data["taints"]]

        return cls(
            name=data["name"],
            instance_type=data.get("instance_type") or data["instanceType"],
            capacity_type=data.get("capacity_type", data.get("capacityType", "ON_DEMAND")),
            min_size=data.get("min_size", data.get("minSize", DEFAULT_MIN_SIZE)),
            max_size=data.get("max_size", data.get("maxSize", DEFAULT_MAX_SIZE)),
            desired_size=data.get("desired_size", data.get("desiredSize")),
            disk_size=data.get("disk_size", data.get("diskSize", DEFAULT_DISK_SIZE)),
            taints=taints,
            labels=data.get("labels"),
        )
