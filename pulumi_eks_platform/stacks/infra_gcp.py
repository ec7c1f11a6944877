"""Network and GKE cluster on Google Cloud."""

from __future__ import annotations

import yaml

from ..config.models import InfraGcpConfig
from ..core import tokens, values
from ..core.outputs import OutputKind, OutputSpec, StackContract
from .base import MicroStack, StackContext

GKE_AUTH_PLUGIN = "gke-gcloud-auth-plugin"
OAUTH_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
DISK_SIZE_GB = 100

CONTRACT = StackContract(
    stack="infra-gcp",
    version=1,
    outputs=(
        OutputSpec("environment", OutputKind.STRING),
        OutputSpec("clusterName", OutputKind.STRING),
        OutputSpec("networkName", OutputKind.STRING),
        OutputSpec("subnetworkName", OutputKind.STRING),
        OutputSpec("kubeconfig", OutputKind.SEALED),
        OutputSpec("clusterEndpoint", OutputKind.STRING),
    ),
)


def render_kubeconfig(cluster_name: str, endpoint: str, ca_certificate: str) -> str:
    """Kubeconfig that authenticates through the gcloud auth plugin."""
    return yaml.safe_dump(
        {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [
                {
                    "name": cluster_name,
                    "cluster": {
                        "certificate-authority-data": ca_certificate,
                        "server": f"https://{endpoint}",
                    },
                }
            ],
            "contexts": [
                {"name": cluster_name, "context": {"cluster": cluster_name, "user": cluster_name}}
            ],
            "current-context": cluster_name,
            "preferences": {},
            "users": [
                {
                    "name": cluster_name,
                    "user": {
                        "exec": {
                            "apiVersion": "client.authentication.k8s.io/v1beta1",
                            "command": GKE_AUTH_PLUGIN,
                            "provideClusterInfo": True,
                        }
                    },
                }
            ],
        },
        sort_keys=False,
    )


class InfraGcp(MicroStack):
    name = "infra-gcp"
    config_model = InfraGcpConfig
    contract = CONTRACT

    def compose(self, ctx: StackContext, config: InfraGcpConfig) -> None:
        name = config.cluster_name
        network = ctx.declare(
            f"{name}-network",
            tokens.GCP_NETWORK,
            {
                "name": f"{name}-network",
                "project": config.gcp_project,
                "autoCreateSubnetworks": False,
            },
        )
        subnetwork = ctx.declare(
            f"{name}-subnetwork",
            tokens.GCP_SUBNETWORK,
            {
                "name": f"{name}-subnetwork",
                "project": config.gcp_project,
                "region": config.region,
                "network": ctx.output(network, "id"),
                "ipCidrRange": config.network_cidr,
                "privateIpGoogleAccess": True,
            },
        )
        router = ctx.declare(
            f"{name}-router",
            tokens.GCP_ROUTER,
            {
                "name": f"{name}-router",
                "project": config.gcp_project,
                "region": config.region,
                "network": ctx.output(network, "id"),
            },
        )
        ctx.declare(
            f"{name}-nat",
            tokens.GCP_ROUTER_NAT,
            {
                "name": f"{name}-nat",
                "project": config.gcp_project,
                "region": config.region,
                "router": ctx.output(router, "name"),
                "natIpAllocateOption": "AUTO_ONLY",
                "sourceSubnetworkIpRangesToNat": "ALL_SUBNETWORKS_ALL_IP_RANGES",
            },
        )

        cluster = ctx.declare(
            name,
            tokens.GKE_CLUSTER,
            {
                "name": name,
                "project": config.gcp_project,
                "location": config.region,
                "network": ctx.output(network, "id"),
                "subnetwork": ctx.output(subnetwork, "id"),
                "minMasterVersion": config.k8s_version,
                # Node pools are managed separately
                "removeDefaultNodePool": True,
                "initialNodeCount": 1,
                "deletionProtection": False,
                "ipAllocationPolicy": {},
                "workloadIdentityConfig": {"workloadPool": f"{config.gcp_project}.svc.id.goog"},
                "releaseChannel": {"channel": "REGULAR"},
                "resourceLabels": {"cluster": name},
            },
        )
        ctx.declare(
            f"{name}-nodepool",
            tokens.GKE_NODE_POOL,
            {
                "name": f"{name}-nodepool",
                "project": config.gcp_project,
                "cluster": ctx.output(cluster, "name"),
                "location": config.region,
                "version": config.k8s_version,
                "initialNodeCount": config.min_nodes,
                "management": {"autoRepair": True, "autoUpgrade": True},
                "autoscaling": {
                    "minNodeCount": config.min_nodes,
                    "maxNodeCount": config.max_nodes,
                    "locationPolicy": "BALANCED",
                },
                "nodeConfig": {
                    "machineType": config.machine_type,
                    "diskSizeGb": DISK_SIZE_GB,
                    "oauthScopes": OAUTH_SCOPES,
                    "labels": {"node-role": "not-disruptable"},
                    "workloadMetadataConfig": {"mode": "GKE_METADATA"},
                },
            },
        )

        endpoint = ctx.output(cluster, "endpoint")
        kubeconfig = values.combine(
            endpoint,
            ctx.output(cluster, "masterAuth.clusterCaCertificate", secret=True),
            fn=lambda server, ca: render_kubeconfig(name, server, ca),
            secret=True,
        )

        ctx.publish("environment", config.environment)
        ctx.publish("clusterName", name)
        ctx.publish("networkName", ctx.output(network, "name"))
        ctx.publish("subnetworkName", ctx.output(subnetwork, "name"))
        ctx.publish("kubeconfig", kubeconfig)
        ctx.publish("clusterEndpoint", endpoint)
