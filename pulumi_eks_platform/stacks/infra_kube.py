"""EKS cluster, node groups and the cluster-wide add-ons."""

from __future__ import annotations

import contextlib
import json
from typing import Iterator

from ..config.models import InfraKubeConfig
from ..config.node_pools import NodePoolConfig
from ..core import tokens, values
from ..core.outputs import OutputKind, OutputSpec, StackContract
from ..core.resource import ResourceHandle
from .base import MicroStack, StackContext
from .factories import CLUSTER_ISSUER, HelmReleaseDeployer, KubernetesNamespaceFactory
from .irsa import create_irsa, policy_document

EBS_CSI_DRIVER_VERSION = "2.32.0"
METRICS_SERVER_VERSION = "3.12.2"
NVIDIA_DEVICE_PLUGIN_VERSION = "0.14.4"
INGRESS_NGINX_VERSION = "4.11.1"
CERT_MANAGER_VERSION = "v1.15.1"

EBS_CSI_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonEBSCSIDriverPolicy"
SNAPSHOTTER_CRDS = [
    "https://raw.githubusercontent.com/kubernetes-csi/external-snapshotter/master/client/config/crd/"
    f"snapshot.storage.k8s.io_{kind}.yaml"
    for kind in ("volumesnapshotclasses", "volumesnapshots", "volumesnapshotcontents")
]

NVIDIA_TIME_SLICING = """version: v1
sharing:
  timeSlicing:
    resources:
      - name: nvidia.com/gpu
        replicas: 10
"""

# Annotations the AWS cloud controller reads to provision an NLB
NLB_ANNOTATIONS = {
    "service.beta.kubernetes.io/aws-load-balancer-backend-protocol": "tcp",
    "service.beta.kubernetes.io/aws-load-balancer-connection-idle-timeout": "60",
    "service.beta.kubernetes.io/aws-load-balancer-cross-zone-load-balancing-enabled": "false",
    "service.beta.kubernetes.io/aws-load-balancer-type": "nlb",
    "service.beta.kubernetes.io/aws-load-balancer-attributes": "load_balancing.cross_zone.enabled=false",
}

CONTRACT = StackContract(
    stack="infra-kube",
    version=1,
    outputs=(
        OutputSpec("environment", OutputKind.STRING),
        OutputSpec("clusterName", OutputKind.STRING),
        OutputSpec("kubeconfig", OutputKind.SEALED),
        OutputSpec("kubeconfigJson", OutputKind.SEALED),
        OutputSpec("eksOIDC", OutputKind.STRING),
        OutputSpec("oidcProviderArn", OutputKind.STRING),
        OutputSpec("clusterEndpoint", OutputKind.STRING),
        OutputSpec("clusterSecurityGroupId", OutputKind.STRING),
        OutputSpec("ingressHost", OutputKind.STRING, optional=True),
        OutputSpec("clusterIssuer", OutputKind.STRING, optional=True),
    ),
)


def strip_scheme(issuer: str) -> str:
    return issuer.removeprefix("https://")


class InfraKube(MicroStack):
    name = "infra-kube"
    config_model = InfraKubeConfig
    contract = CONTRACT
    requires = ("infra-aws",)

    def upstream(self, config: InfraKubeConfig) -> dict[str, str]:
        return {"infra-aws": config.infra_aws_stack}

    def compose(self, ctx: StackContext, config: InfraKubeConfig) -> None:
        def aws(key: str):
            return ctx.upstream_output("infra-aws", key)

        private_subnets = aws("privateSubnetIds")

        cluster = ctx.declare(
            config.cluster_name,
            tokens.EKS_CLUSTER,
            {
                "name": config.cluster_name,
                "version": config.k8s_version,
                "createOidcProvider": True,
                "vpcId": aws("vpcId"),
                "publicSubnetIds": aws("publicSubnetIds"),
                "privateSubnetIds": private_subnets,
                "instanceType": config.instance_type,
                # The default node group stays empty; managed groups carry the load
                "minSize": 0,
                "maxSize": 0,
                "desiredCapacity": 0,
                "nodeAssociatePublicIpAddress": False,
                "endpointPrivateAccess": config.endpoint_private_access,
                "endpointPublicAccess": config.endpoint_public_access,
                "enabledClusterLogTypes": list(config.cluster_log_types),
            },
        )

        default_pool = NodePoolConfig(
            name=f"{config.cluster_name}-ng",
            instance_type=config.instance_type,
            min_size=config.min_size,
            max_size=config.max_size,
            desired_size=config.desired_capacity,
        )
        for pool in [default_pool, *config.eks_node_pools]:
            self._node_group(ctx, cluster, pool, aws("instanceRoleArn"), private_subnets)

        kubeconfig_json = ctx.output(cluster, "kubeconfigJson", secret=True)
        provider = ctx.kubernetes_provider(kubeconfig_json)
        oidc_provider_arn = ctx.output(cluster, "oidcProviderArn")
        eks_oidc = values.apply(ctx.output(cluster, "oidcIssuer"), strip_scheme)

        helm = HelmReleaseDeployer(ctx.graph, provider)
        namespaces = KubernetesNamespaceFactory(ctx.graph, provider)

        with self._addon(ctx, config, "ebs-csi", cluster):
            ebs_role = self._ebs_csi_driver(ctx, provider, helm, oidc_provider_arn, eks_oidc)

        with self._addon(ctx, config, "metrics-server", cluster):
            helm.release(
                "metrics-server",
                "metrics-server",
                METRICS_SERVER_VERSION,
                "https://kubernetes-sigs.github.io/metrics-server/",
                "kube-system",
            )

        with self._addon(ctx, config, "storage-classes", cluster, ebs_role):
            self._storage_classes(ctx, provider)

        if config.enable_gpu_plugin:
            with self._addon(ctx, config, "gpu-plugin", cluster):
                self._gpu_plugin(ctx, provider, helm)

        if config.enable_ingress:
            with self._addon(ctx, config, "ingress-nginx", cluster):
                helm.release(
                    "ingress-nginx",
                    "ingress-nginx",
                    INGRESS_NGINX_VERSION,
                    "https://kubernetes.github.io/ingress-nginx",
                    namespaces.namespace("ingress-nginx"),
                    {
                        "controller": {
                            "resources": ctx.profiles.as_values("ingress-nginx"),
                            "service": {
                                "externalTrafficPolicy": "Local",
                                "annotations": NLB_ANNOTATIONS,
                            },
                        }
                    },
                )

        if config.tls is not None:
            with self._addon(ctx, config, "cert-manager", cluster):
                self._cert_manager(ctx, config, provider, helm, namespaces)

        ctx.publish("environment", config.environment)
        ctx.publish("clusterName", config.cluster_name)
        ctx.publish("kubeconfig", ctx.output(cluster, "kubeconfig", secret=True))
        ctx.publish("kubeconfigJson", kubeconfig_json)
        ctx.publish("eksOIDC", eks_oidc)
        ctx.publish("oidcProviderArn", oidc_provider_arn)
        ctx.publish("clusterEndpoint", ctx.output(cluster, "eksCluster.endpoint"))
        ctx.publish(
            "clusterSecurityGroupId",
            ctx.output(cluster, "eksCluster.vpcConfig.clusterSecurityGroupId"),
        )
        if config.enable_ingress and config.tls is not None:
            ctx.publish("ingressHost", config.tls.domain)

    @staticmethod
    @contextlib.contextmanager
    def _addon(
        ctx: StackContext, config: InfraKubeConfig, name: str, *depends_on: ResourceHandle
    ) -> Iterator[None]:
        with ctx.graph.component(
            f"{config.cluster_name}-{name}", tokens.CLUSTER_ADDON, depends_on=depends_on
        ):
            yield

    @staticmethod
    def _node_group(
        ctx: StackContext,
        cluster: ResourceHandle,
        pool: NodePoolConfig,
        node_role_arn,
        subnet_ids,
    ) -> ResourceHandle:
        desired = pool.desired_size if pool.desired_size is not None else pool.min_size
        inputs = {
            "cluster": ctx.graph.ref(cluster),
            "nodeGroupName": pool.name,
            "nodeRoleArn": node_role_arn,
            "subnetIds": subnet_ids,
            "instanceTypes": [pool.instance_type],
            "capacityType": pool.capacity_type,
            "amiType": pool.ami_type,
            "diskSize": pool.disk_size,
            "scalingConfig": {
                "minSize": pool.min_size,
                "maxSize": pool.max_size,
                "desiredSize": desired,
            },
        }
        if pool.labels:
            inputs["labels"] = dict(pool.labels)
        taints = pool.effective_taints
        if taints:
            inputs["taints"] = [taint.to_node_group_taint() for taint in taints]
        return ctx.declare(pool.name, tokens.EKS_MANAGED_NODE_GROUP, inputs, depends_on=[cluster])

    @staticmethod
    def _ebs_csi_driver(ctx, provider, helm, oidc_provider_arn, eks_oidc) -> ResourceHandle:
        kms_policy = policy_document(
            [
                {
                    "Effect": "Allow",
                    "Action": [
                        "kms:Decrypt",
                        "kms:GenerateDataKeyWithoutPlaintext",
                        "kms:CreateGrant",
                    ],
                    "Resource": "*",
                }
            ]
        )
        irsa = create_irsa(
            ctx,
            "ebs-csi-controller",
            role_name="ebs-csi-controller",
            oidc_provider_arn=oidc_provider_arn,
            oidc_issuer=eks_oidc,
            trust_sa_namespace="kube-system",
            trust_sa_name="ebs-csi-controller-sa",
            managed_policy_arns=[EBS_CSI_POLICY_ARN],
            inline_policies={"ebs-csi-kms-policy": kms_policy},
        )
        crds = ctx.declare(
            "snapshotter-crds",
            tokens.K8S_CONFIG_GROUP,
            {"files": SNAPSHOTTER_CRDS},
            provider=provider,
        )
        helm.release(
            "aws-ebs-csi-driver",
            "aws-ebs-csi-driver",
            EBS_CSI_DRIVER_VERSION,
            "https://kubernetes-sigs.github.io/aws-ebs-csi-driver",
            "kube-system",
            {
                "controller": {
                    "replicaCount": 2,
                    "serviceAccount": {"annotations": irsa.annotations},
                },
                "sidecars": {"snapshotter": {"forceEnable": True}},
            },
            depends_on=[irsa.component, crds],
        )
        return irsa.role

    @staticmethod
    def _storage_classes(ctx: StackContext, provider: ResourceHandle) -> None:
        classes = {
            "gp3": ({"type": "gp3"}, "Delete", True),
            "gp3-enc": ({"type": "gp3"}, "Delete", False),
            "gp3-8k-iops-enc": (
                {"type": "gp3", "iops": "8000", "throughput": "1000"},
                "Retain",
                False,
            ),
        }
        for name, (parameters, reclaim_policy, default) in classes.items():
            metadata = {"name": name}
            if default:
                metadata["annotations"] = {"storageclass.kubernetes.io/is-default-class": "true"}
            ctx.declare(
                name,
                tokens.K8S_STORAGE_CLASS,
                {
                    "metadata": metadata,
                    "provisioner": "ebs.csi.aws.com",
                    "parameters": {
                        **parameters,
                        "csi.storage.k8s.io/fstype": "ext4",
                        "encrypted": "true",
                    },
                    "reclaimPolicy": reclaim_policy,
                    "allowVolumeExpansion": True,
                    "volumeBindingMode": "WaitForFirstConsumer",
                },
                provider=provider,
            )

    @staticmethod
    def _gpu_plugin(ctx: StackContext, provider: ResourceHandle, helm: HelmReleaseDeployer) -> None:
        config_map = ctx.declare(
            "nvidia-device-plugin-config",
            tokens.K8S_CONFIG_MAP,
            {
                "metadata": {"name": "nvidia-device-plugin", "namespace": "kube-system"},
                "data": {"default": NVIDIA_TIME_SLICING},
            },
            provider=provider,
        )
        helm.release(
            "nvidia-device-plugin",
            "nvidia-device-plugin",
            NVIDIA_DEVICE_PLUGIN_VERSION,
            "https://nvidia.github.io/k8s-device-plugin",
            "kube-system",
            {
                "nameOverride": "nvidia",
                "fullnameOverride": "nvidia",
                "namespaceOverride": "kube-system",
                "failOnInitError": True,
                "config": {"name": "nvidia-device-plugin"},
                "nodeSelector": {"nvidia.com/gpu": "present"},
            },
            depends_on=[config_map],
        )

    @staticmethod
    def _cert_manager(
        ctx: StackContext,
        config: InfraKubeConfig,
        provider: ResourceHandle,
        helm: HelmReleaseDeployer,
        namespaces: KubernetesNamespaceFactory,
    ) -> None:
        tls = config.tls
        release = helm.release(
            "cert-manager",
            "cert-manager",
            CERT_MANAGER_VERSION,
            "https://charts.jetstack.io",
            namespaces.namespace("cert-manager"),
            {
                "crds": {"enabled": True},
                "resources": ctx.profiles.as_values("cert-manager-controller"),
                "cainjector": {"resources": ctx.profiles.as_values("cert-manager-cainjector")},
                "webhook": {"resources": ctx.profiles.as_values("cert-manager-webhook")},
            },
        )

        solver: dict = {"selector": {"dnsZones": [tls.domain]}}
        issuer_deps = [release]
        if tls.route53_zone_id:
            role_name = f"{config.cluster_name}-cert-manager-route53"
            trust = values.apply(
                ctx.upstream_output("infra-aws", "instanceRoleArn"),
                lambda arn: json.dumps(
                    {
                        "Version": "2012-10-17",
                        "Statement": [
                            {
                                "Effect": "Allow",
                                "Principal": {"AWS": arn},
                                "Action": "sts:AssumeRole",
                            }
                        ],
                    },
                    sort_keys=True,
                ),
            )
            role = ctx.declare(
                role_name, tokens.IAM_ROLE, {"name": role_name, "assumeRolePolicy": trust}
            )
            route53_policy = ctx.declare(
                f"{role_name}-policy",
                tokens.IAM_ROLE_POLICY,
                {
                    "name": f"{role_name}-policy",
                    "role": role_name,
                    "policy": policy_document(
                        [
                            {
                                "Effect": "Allow",
                                "Action": ["route53:GetChange"],
                                "Resource": "arn:aws:route53:::change/*",
                            },
                            {
                                "Effect": "Allow",
                                "Action": [
                                    "route53:ChangeResourceRecordSets",
                                    "route53:ListResourceRecordSets",
                                ],
                                "Resource": f"arn:aws:route53:::hostedzone/{tls.route53_zone_id}",
                            },
                            {
                                "Effect": "Allow",
                                "Action": ["route53:ListHostedZonesByName"],
                                "Resource": "*",
                            },
                        ]
                    ),
                },
                depends_on=[role],
            )
            solver["dns01"] = {
                "route53": {
                    "region": ctx.upstream_output("infra-aws", "awsRegion"),
                    "hostedZoneID": tls.route53_zone_id,
                    "role": ctx.output(role, "arn"),
                }
            }
            issuer_deps.append(route53_policy)
        else:
            solver = {"http01": {"ingress": {"ingressClassName": "nginx"}}}

        ctx.declare(
            CLUSTER_ISSUER,
            tokens.K8S_CLUSTER_ISSUER,
            {
                "apiVersion": "cert-manager.io/v1",
                "kind": "ClusterIssuer",
                "metadata": {"name": CLUSTER_ISSUER},
                "spec": {
                    "acme": {
                        "server": tls.acme_server,
                        "email": tls.email,
                        "privateKeySecretRef": {"name": "letsencrypt-issuer-key"},
                        "solvers": [solver],
                    }
                },
            },
            provider=provider,
            depends_on=issuer_deps,
        )
        ctx.publish("clusterIssuer", CLUSTER_ISSUER)
