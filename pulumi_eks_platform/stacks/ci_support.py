"""CI tooling on the cluster: GitHub Actions runners, Tekton and Buildbarn."""

from __future__ import annotations

from ..config.models import CiSupportConfig
from ..core import tokens, values
from ..core.outputs import OutputKind, OutputSpec, StackContract
from ..core.resource import ResourceHandle
from .base import MicroStack, StackContext
from .factories import HelmReleaseDeployer, KubernetesNamespaceFactory

ARC_NAMESPACE = "arc-system"
ARC_CHART_VERSION = "0.9.3"
ARC_CHARTS = "oci://ghcr.io/actions/actions-runner-controller-charts"
ARC_RUNNER_ARCHITECTURES = ("amd64", "arm64")
ARC_MAX_RUNNERS = 10
RUNNER_IMAGE = "ghcr.io/actions/actions-runner:latest"

TEKTON_VERSION = "v0.72.0"
TEKTON_NAMESPACE = "tekton-pipelines"
TEKTON_FILES = [
    f"https://storage.googleapis.com/tekton-releases/operator/previous/{TEKTON_VERSION}/release.yaml",
    "https://raw.githubusercontent.com/tektoncd/operator/"
    f"{TEKTON_VERSION}/config/crs/kubernetes/config/all/operator_v1alpha1_config_cr.yaml",
]

BUILDBARN_NAMESPACE = "buildbarn"

CONTRACT = StackContract(
    stack="ci-support",
    version=1,
    outputs=(
        OutputSpec("clusterName", OutputKind.STRING),
        OutputSpec("enableActionsRunner", OutputKind.BOOL),
        OutputSpec("enableTekton", OutputKind.BOOL),
        OutputSpec("enableBuildbarn", OutputKind.BOOL),
        OutputSpec("arcNamespace", OutputKind.STRING, optional=True),
        OutputSpec("tektonNamespace", OutputKind.STRING, optional=True),
    ),
)


def runner_template(arch: str, resources: dict) -> dict:
    """Pod template for a runner scale set pinned to one CPU architecture.

    Runners prefer spot capacity; they are short-lived and restartable.
    """
    return {
        "spec": {
            "containers": [
                {
                    "name": "runner",
                    "image": RUNNER_IMAGE,
                    "command": ["/home/runner/run.sh"],
                    "resources": resources,
                }
            ],
            "affinity": {
                "nodeAffinity": {
                    "preferredDuringSchedulingIgnoredDuringExecution": [
                        {
                            "weight": 100,
                            "preference": {
                                "matchExpressions": [
                                    {
                                        "key": "eks.amazonaws.com/capacityType",
                                        "operator": "In",
                                        "values": ["SPOT"],
                                    }
                                ]
                            },
                        }
                    ]
                }
            },
            "nodeSelector": {"kubernetes.io/arch": arch, "kubernetes.io/os": "linux"},
            "securityContext": {"fsGroup": 123},
        }
    }


class CiSupport(MicroStack):
    name = "ci-support"
    config_model = CiSupportConfig
    contract = CONTRACT
    requires = ("infra-kube",)

    def upstream(self, config: CiSupportConfig) -> dict[str, str]:
        return {"infra-kube": config.infra_kube_stack_ref}

    def compose(self, ctx: StackContext, config: CiSupportConfig) -> None:
        cluster_name = ctx.upstream_output("infra-kube", "clusterName")
        provider = ctx.kubernetes_provider(
            ctx.upstream_output("infra-kube", "kubeconfig", secret=True)
        )
        namespaces = KubernetesNamespaceFactory(ctx.graph, provider)
        helm = HelmReleaseDeployer(ctx.graph, provider)

        if config.enable_actions_runner_controller:
            self._actions_runner_controller(ctx, provider, namespaces, helm, config)
            ctx.publish("arcNamespace", ARC_NAMESPACE)

        if config.enable_tekton:
            ctx.declare(
                "tekton-operator",
                tokens.K8S_CONFIG_GROUP,
                {"files": list(TEKTON_FILES)},
                provider=provider,
            )
            ctx.publish("tektonNamespace", TEKTON_NAMESPACE)

        if config.enable_buildbarn:
            namespace = namespaces.namespace(BUILDBARN_NAMESPACE)
            ctx.declare(
                "buildbarn",
                tokens.K8S_KUSTOMIZE_DIRECTORY,
                {"directory": config.buildbarn_config_path, "namespace": BUILDBARN_NAMESPACE},
                provider=provider,
                depends_on=[namespace],
            )

        ctx.publish("clusterName", cluster_name)
        ctx.publish("enableActionsRunner", config.enable_actions_runner_controller)
        ctx.publish("enableTekton", config.enable_tekton)
        ctx.publish("enableBuildbarn", config.enable_buildbarn)

    @staticmethod
    def _actions_runner_controller(
        ctx: StackContext,
        provider: ResourceHandle,
        namespaces: KubernetesNamespaceFactory,
        helm: HelmReleaseDeployer,
        config: CiSupportConfig,
    ) -> None:
        namespace = namespaces.namespace(ARC_NAMESPACE)
        controller = helm.release(
            "gha-runner-scale-set-controller",
            f"{ARC_CHARTS}/gha-runner-scale-set-controller",
            ARC_CHART_VERSION,
            "",
            namespace,
            {
                "nameOverride": "arc",
                "fullnameOverride": "arc",
                "serviceAccount": {"name": "arc"},
                "resources": ctx.profiles.as_values("arc-controller"),
            },
        )
        secret = ctx.declare(
            "arc-github-app",
            tokens.K8S_SECRET,
            {
                "metadata": {"name": "arc-github-app", "namespace": ARC_NAMESPACE},
                "stringData": {
                    "github_app_id": values.seal(config.github_app_id),
                    "github_app_installation_id": values.seal(config.github_app_installation_id),
                    "github_app_private_key": values.seal(config.github_app_private_key),
                },
            },
            provider=provider,
            depends_on=[namespace],
        )
        runner_resources = ctx.profiles.as_values("arc-runner")
        for arch in ARC_RUNNER_ARCHITECTURES:
            scale_set = f"arc-runner-set-{arch}"
            helm.release(
                scale_set,
                f"{ARC_CHARTS}/gha-runner-scale-set",
                ARC_CHART_VERSION,
                "",
                namespace,
                {
                    "githubConfigUrl": config.github_config_url,
                    "githubConfigSecret": "arc-github-app",
                    "runnerScaleSetName": scale_set,
                    "minRunners": 0,
                    "maxRunners": ARC_MAX_RUNNERS,
                    "containerMode": {"type": "dind"},
                    "template": runner_template(arch, runner_resources),
                },
                depends_on=[controller, secret],
            )
