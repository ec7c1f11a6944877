"""Self-service API, its data services and Temporal workflows."""

from __future__ import annotations

from ..config.models import ApiConfig
from ..core import tokens
from ..core.outputs import OutputKind, OutputSpec, StackContract
from ..core.resource import ResourceHandle
from ..core.wait import LoadBalancerLookup
from .base import MicroStack, StackContext
from .factories import (
    CLUSTER_ISSUER,
    BasicAuthInjector,
    HelmReleaseDeployer,
    KubernetesNamespaceFactory,
    NginxIngressFactory,
    OAuth2SidecarInjector,
    Protection,
)
from .irsa import create_irsa, policy_document

API_NAMESPACE = "tfm-api"
API_PORT = 8000
API_REPLICAS = 2
API_SERVICE_ACCOUNT = "api"

DRAGONFLY_VERSION = "v1.16.0"
TEMPORAL_VERSION = "0.44.0"
REDIS_VERSION = "19.6.4"
REDIS_CLUSTER_VERSION = "10.3.0"
MONGODB_VERSION = "15.6.26"
NATS_VERSION = "1.2.2"
CROSSPLANE_VERSION = "1.19.0"
GATEWAY_CONTROLLER_VERSION = "v1.1.0"
GATEWAY_API_CRDS = (
    "https://github.com/kubernetes-sigs/gateway-api/releases/download/v1.2.0/experimental-install.yaml"
)

BITNAMI_REPO = "https://charts.bitnami.com/bitnami"
TEMPORAL_REPO = "https://go.temporal.io/helm-charts"
NATS_REPO = "https://nats-io.github.io/k8s/helm/charts"
CROSSPLANE_REPO = "https://charts.crossplane.io/stable"
DRAGONFLY_CHART = "oci://ghcr.io/dragonflydb/dragonfly/helm/dragonfly"
GATEWAY_CONTROLLER_CHART = (
    "oci://public.ecr.aws/aws-application-networking-k8s/aws-gateway-controller-chart"
)

GATEWAY_NAMESPACE = "aws-application-networking-system"
GATEWAY_SERVICE_ACCOUNT = "gateway-api-controller"
CROSSPLANE_NAMESPACE = "crossplane-system"

TEMPORAL_FRONTEND = f"temporal-frontend.{API_NAMESPACE}.svc.cluster.local:7233"

CONTRACT = StackContract(
    stack="api",
    version=1,
    outputs=(
        OutputSpec("clusterName", OutputKind.STRING),
        OutputSpec("apiNamespace", OutputKind.STRING),
        OutputSpec("domain", OutputKind.STRING),
        OutputSpec("apiUrl", OutputKind.STRING, optional=True),
        OutputSpec("temporalFrontend", OutputKind.STRING, optional=True),
    ),
)

API_POLICY = [
    {"Effect": "Allow", "Action": ["ses:SendEmail", "ses:SendRawEmail"], "Resource": "*"},
    {
        "Effect": "Allow",
        "Action": [
            "cognito-idp:ListUsers",
            "cognito-idp:AdminGetUser",
            "cognito-idp:AdminUpdateUserAttributes",
            "cognito-idp:ListUserPoolClients",
            "cognito-idp:DescribeUserPoolClient",
            "cognito-idp:UpdateUserPoolClient",
        ],
        "Resource": "*",
    },
]

GATEWAY_CONTROLLER_POLICY = [
    {
        "Effect": "Allow",
        "Action": [
            "vpc-lattice:*",
            "ec2:DescribeVpcs",
            "ec2:DescribeSubnets",
            "ec2:DescribeTags",
            "ec2:DescribeSecurityGroups",
            "logs:CreateLogDelivery",
            "logs:GetLogDelivery",
            "logs:DescribeLogGroups",
            "logs:PutResourcePolicy",
            "logs:DescribeResourcePolicies",
            "logs:UpdateLogDelivery",
            "logs:DeleteLogDelivery",
            "logs:ListLogDeliveries",
            "tag:GetResources",
            "firehose:TagDeliveryStream",
            "s3:GetBucketPolicy",
            "s3:PutBucketPolicy",
        ],
        "Resource": "*",
    },
    {
        "Effect": "Allow",
        "Action": "iam:CreateServiceLinkedRole",
        "Resource": "arn:aws:iam::*:role/aws-service-role/vpc-lattice.amazonaws.com/"
        "AWSServiceRoleForVpcLattice",
        "Condition": {"StringLike": {"iam:AWSServiceName": "vpc-lattice.amazonaws.com"}},
    },
]


def _secret_env(name: str, secret: str, key: str, optional: bool = False) -> dict:
    selector = {"name": secret, "key": key}
    if optional:
        selector["optional"] = True
    return {"name": name, "valueFrom": {"secretKeyRef": selector}}


class Api(MicroStack):
    name = "api"
    config_model = ApiConfig
    contract = CONTRACT
    requires = ("infra-kube", "sql")

    def upstream(self, config: ApiConfig) -> dict[str, str]:
        upstream = {"infra-kube": config.infra_kube_stack_ref}
        if config.sql_stack_ref:
            upstream["sql"] = config.sql_stack_ref
        return upstream

    def compose(self, ctx: StackContext, config: ApiConfig) -> None:
        cluster_name = ctx.upstream_output("infra-kube", "clusterName")
        provider = ctx.kubernetes_provider(
            ctx.upstream_output("infra-kube", "kubeconfig", secret=True)
        )
        namespaces = KubernetesNamespaceFactory(ctx.graph, provider)
        helm = HelmReleaseDeployer(ctx.graph, provider)
        namespace = namespaces.namespace(API_NAMESPACE)

        postgres = None
        if config.sql_stack_ref:
            postgres = ctx.declare(
                "postgres",
                tokens.K8S_SECRET,
                {
                    "metadata": {"name": "postgres", "namespace": API_NAMESPACE},
                    "stringData": {
                        "password": ctx.upstream_output("sql", "dbPassword", secret=True)
                    },
                },
                provider=provider,
                depends_on=[namespace],
            )

        services: list[ResourceHandle] = []
        if config.enable_dragonfly:
            services.append(self._dragonfly(ctx, provider, helm, namespace))
        if config.enable_redis:
            services.append(
                helm.release(
                    "redis",
                    "redis",
                    REDIS_VERSION,
                    BITNAMI_REPO,
                    namespace,
                    {"fullnameOverride": "redis", "architecture": "standalone"},
                )
            )
        if config.enable_redis_cluster:
            services.append(
                helm.release(
                    "redis-cluster",
                    "redis-cluster",
                    REDIS_CLUSTER_VERSION,
                    BITNAMI_REPO,
                    namespace,
                    {"fullnameOverride": "redis-cluster", "cluster": {"nodes": 6, "replicas": 1}},
                )
            )
        if config.enable_mongo:
            services.append(
                helm.release(
                    "mongo",
                    "mongodb",
                    MONGODB_VERSION,
                    BITNAMI_REPO,
                    namespace,
                    {"fullnameOverride": "mongo", "architecture": "standalone"},
                )
            )
        if config.enable_nats:
            services.append(
                helm.release(
                    "nats",
                    "nats",
                    NATS_VERSION,
                    NATS_REPO,
                    namespace,
                    {"fullnameOverride": "nats", "config": {"jetstream": {"enabled": True}}},
                )
            )
        if config.enable_temporal:
            services.append(self._temporal(ctx, helm, namespace, postgres, config))
            ctx.publish("temporalFrontend", TEMPORAL_FRONTEND)

        if config.enable_crossplane:
            helm.release(
                "crossplane",
                "crossplane",
                CROSSPLANE_VERSION,
                CROSSPLANE_REPO,
                namespaces.namespace(CROSSPLANE_NAMESPACE),
                {
                    "resourcesCrossplane": ctx.profiles.as_values("crossplane"),
                    "resourcesRBACManager": ctx.profiles.as_values("crossplane-rbac"),
                },
            )

        if config.enable_aws_gateway_controller:
            self._gateway_controller(ctx, provider, helm, namespaces)

        if config.api_image:
            self._api(ctx, provider, namespace, postgres, services, config)

        if config.domain and config.route53_zone_id:
            balancer = ctx.declare(
                "ingress-load-balancer",
                tokens.LOAD_BALANCER_LOOKUP,
                {"clusterName": cluster_name},
                kind="data",
                wait_for=LoadBalancerLookup(config.aws_region).gate(),
            )
            ctx.declare(
                "ingress-dns-record",
                tokens.ROUTE53_RECORD,
                {
                    "zoneId": config.route53_zone_id,
                    "name": f"*.{config.domain}",
                    "type": "A",
                    "aliases": [
                        {
                            "name": ctx.output(balancer, "dnsName"),
                            "zoneId": ctx.output(balancer, "canonicalHostedZoneId"),
                            "evaluateTargetHealth": True,
                        }
                    ],
                },
            )

        ctx.publish("clusterName", cluster_name)
        ctx.publish("apiNamespace", API_NAMESPACE)
        ctx.publish("domain", config.domain or "")

    @staticmethod
    def _dragonfly(
        ctx: StackContext, provider: ResourceHandle, helm: HelmReleaseDeployer, namespace
    ) -> ResourceHandle:
        password = ctx.declare(
            "dragonfly-password",
            tokens.RANDOM_PASSWORD,
            {"length": 32, "special": False},
        )
        secret = ctx.declare(
            "dragonfly",
            tokens.K8S_SECRET,
            {
                "metadata": {"name": "dragonfly", "namespace": API_NAMESPACE},
                "stringData": {"dfly_password": ctx.output(password, "result", secret=True)},
            },
            provider=provider,
            depends_on=[namespace],
        )
        return helm.release(
            "dragonfly-release",
            DRAGONFLY_CHART,
            DRAGONFLY_VERSION,
            "",
            namespace,
            {
                "replicaCount": 1,
                "extraArgs": ["--maxmemory=2Gi", "--proactor_threads=8"],
                "nameOverride": "dragonfly",
                "fullnameOverride": "dragonfly",
                "passwordFromSecret": {
                    "enable": True,
                    "existingSecret": {"name": "dragonfly", "key": "dfly_password"},
                },
                "resources": ctx.profiles.as_values("dragonfly"),
            },
            depends_on=[secret],
        )

    @staticmethod
    def _temporal(
        ctx: StackContext,
        helm: HelmReleaseDeployer,
        namespace,
        postgres: ResourceHandle,
        config: ApiConfig,
    ) -> ResourceHandle:
        sql = {
            "driver": "postgres12",
            "host": ctx.upstream_output("sql", "rdsAddress"),
            "port": 5432,
            "user": "tfmdb",
            "existingSecret": "postgres",
            "secretKey": "password",
        }
        profiles = ctx.profiles
        web: dict = {"resources": profiles.as_values("temporal-web")}
        if config.domain:
            host = f"workflows.{config.domain}"
            web["ingress"] = {
                "enabled": True,
                "className": "nginx",
                "annotations": {"cert-manager.io/cluster-issuer": CLUSTER_ISSUER},
                "hosts": [host],
                "tls": [{"hosts": [host], "secretName": "temporal-tls"}],
            }
        return helm.release(
            "temporal",
            "temporal",
            TEMPORAL_VERSION,
            TEMPORAL_REPO,
            namespace,
            {
                "server": {
                    "config": {
                        "persistence": {
                            "default": {"driver": "sql", "sql": {**sql, "database": "temporal"}},
                            "visibility": {
                                "driver": "sql",
                                "sql": {**sql, "database": "temporal_visibility"},
                            },
                        }
                    },
                    "frontend": {"resources": profiles.as_values("temporal-frontend")},
                    "history": {"resources": profiles.as_values("temporal-history")},
                    "matching": {"resources": profiles.as_values("temporal-matching")},
                    "worker": {"resources": profiles.as_values("temporal-worker")},
                },
                "admintools": {"resources": profiles.as_values("temporal-admin-tools")},
                "web": web,
                "cassandra": {"enabled": False},
                "mysql": {"enabled": False},
                "postgresql": {"enabled": False},
                "elasticsearch": {"enabled": False},
                "prometheus": {"enabled": False},
                "grafana": {"enabled": False},
            },
            depends_on=[postgres],
        )

    @staticmethod
    def _gateway_controller(
        ctx: StackContext,
        provider: ResourceHandle,
        helm: HelmReleaseDeployer,
        namespaces: KubernetesNamespaceFactory,
    ) -> None:
        namespace = namespaces.namespace(GATEWAY_NAMESPACE)
        irsa = create_irsa(
            ctx,
            "aws-gateway-api-irsa",
            "aws-gateway-api-irsa",
            ctx.upstream_output("infra-kube", "oidcProviderArn"),
            ctx.upstream_output("infra-kube", "eksOIDC"),
            GATEWAY_NAMESPACE,
            GATEWAY_SERVICE_ACCOUNT,
            inline_policies={"aws-gateway-api-irsa-policy": policy_document(GATEWAY_CONTROLLER_POLICY)},
        )
        crds = ctx.declare(
            "gateway-api-crds",
            tokens.K8S_CONFIG_GROUP,
            {"files": [GATEWAY_API_CRDS]},
            provider=provider,
        )
        helm.release(
            "aws-gateway-controller",
            GATEWAY_CONTROLLER_CHART,
            GATEWAY_CONTROLLER_VERSION,
            "",
            namespace,
            {
                "fullnameOverride": "gateway-api",
                "deployment": {"replicas": 1},
                "serviceAccount": {
                    "name": GATEWAY_SERVICE_ACCOUNT,
                    "annotations": irsa.annotations,
                },
                "resources": ctx.profiles.as_values("gateway-api"),
            },
            depends_on=[irsa.component, crds],
        )

    @staticmethod
    def _protection(
        ctx: StackContext, provider: ResourceHandle, config: ApiConfig
    ) -> Protection:
        if config.oauth is not None:
            injector = OAuth2SidecarInjector(ctx.graph, provider, config.oauth, config.domain)
        elif config.basic_auth is not None:
            injector = BasicAuthInjector(ctx.graph, provider, config.basic_auth)
        else:
            return Protection(port=API_PORT)
        return injector.protect("api", API_NAMESPACE, API_PORT)

    def _api(
        self,
        ctx: StackContext,
        provider: ResourceHandle,
        namespace: ResourceHandle,
        postgres: ResourceHandle | None,
        services: list[ResourceHandle],
        config: ApiConfig,
    ) -> None:
        irsa = create_irsa(
            ctx,
            "api-irsa",
            "cloud-api-irsa",
            ctx.upstream_output("infra-kube", "oidcProviderArn"),
            ctx.upstream_output("infra-kube", "eksOIDC"),
            API_NAMESPACE,
            API_SERVICE_ACCOUNT,
            inline_policies={"cloud-api-irsa-policy": policy_document(API_POLICY)},
        )
        service_account = ctx.declare(
            "api-sa",
            tokens.K8S_SERVICE_ACCOUNT,
            {
                "metadata": {
                    "name": API_SERVICE_ACCOUNT,
                    "namespace": API_NAMESPACE,
                    "annotations": irsa.annotations,
                }
            },
            provider=provider,
            depends_on=[namespace],
        )
        env = {"PORT": str(API_PORT), "NAMESPACE": API_NAMESPACE}
        if config.domain:
            env["DOMAIN"] = config.domain
        if config.enable_temporal:
            env["TEMPORAL_ENABLED"] = "true"
            env["TEMPORAL_ADDRESS"] = TEMPORAL_FRONTEND
        if config.sql_stack_ref:
            env["DB_HOST"] = ctx.upstream_output("sql", "rdsAddress")
            env["DB_NAME"] = ctx.upstream_output("sql", "rdsDbName")
        config_map = ctx.declare(
            "api-env",
            tokens.K8S_CONFIG_MAP,
            {"metadata": {"name": "api-env", "namespace": API_NAMESPACE}, "data": env},
            provider=provider,
            depends_on=[namespace],
        )

        protection = self._protection(ctx, provider, config)
        container_env = [
            {"name": "POD_NAME", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}}
        ]
        depends_on = [service_account, config_map, *services, *protection.depends_on]
        if postgres is not None:
            container_env.append(_secret_env("DB_PASSWORD", "postgres", "password"))
            depends_on.append(postgres)
        probe = {"failureThreshold": 3, "initialDelaySeconds": 2, "periodSeconds": 15}
        api_container = {
            "name": "api",
            "image": config.api_image,
            "imagePullPolicy": "Always",
            "envFrom": [{"configMapRef": {"name": "api-env"}}],
            "env": container_env,
            "ports": [{"name": "api", "protocol": "TCP", "containerPort": API_PORT}],
            "resources": ctx.profiles.as_values("api"),
            "livenessProbe": {"httpGet": {"path": "/live", "port": API_PORT}, **probe},
            "readinessProbe": {"httpGet": {"path": "/ready", "port": API_PORT}, **probe},
        }
        ctx.declare(
            "api",
            tokens.K8S_DEPLOYMENT,
            {
                "metadata": {"name": "api", "namespace": API_NAMESPACE},
                "spec": {
                    "replicas": API_REPLICAS,
                    "selector": {"matchLabels": {"app": "api"}},
                    "template": {
                        "metadata": {
                            "labels": {"app": "api"},
                            "annotations": {"kubectl.kubernetes.io/default-container": "api"},
                        },
                        "spec": {
                            "serviceAccountName": API_SERVICE_ACCOUNT,
                            "containers": [*protection.containers, api_container],
                        },
                    },
                },
            },
            provider=provider,
            depends_on=depends_on,
        )
        ports = [{"name": "api", "port": API_PORT, "protocol": "TCP", "targetPort": API_PORT}]
        if protection.port != API_PORT:
            ports.insert(
                0,
                {
                    "name": "proxy",
                    "port": protection.port,
                    "protocol": "TCP",
                    "targetPort": protection.port,
                },
            )
        service = ctx.declare(
            "api-service",
            tokens.K8S_SERVICE,
            {
                "metadata": {"name": "api", "namespace": API_NAMESPACE},
                "spec": {"selector": {"app": "api"}, "ports": ports},
            },
            provider=provider,
            depends_on=[namespace],
        )

        if config.domain:
            host = f"api.{config.domain}"
            NginxIngressFactory(ctx.graph, provider).ingress(
                "api",
                API_NAMESPACE,
                host,
                "api",
                protection.port,
                annotations={
                    "nginx.ingress.kubernetes.io/proxy-read-timeout": "3600",
                    "nginx.ingress.kubernetes.io/proxy-send-timeout": "3600",
                    **protection.annotations,
                },
                depends_on=[service, *protection.depends_on],
            )
            ctx.publish("apiUrl", f"https://{host}")
