"""Metrics, dashboards and log aggregation in the ``monitoring`` namespace."""

from __future__ import annotations

from ..config.models import MonLogConfig
from ..core import tokens, values
from ..core.outputs import OutputKind, OutputSpec, StackContract
from ..core.resource import ResourceHandle
from .base import MicroStack, StackContext
from .factories import HelmReleaseDeployer, KubernetesNamespaceFactory

MONITORING_NAMESPACE = "monitoring"

KUBE_PROMETHEUS_STACK_VERSION = "58.2.2"
LOKI_VERSION = "6.6.2"
PROMTAIL_VERSION = "6.15.5"
THANOS_VERSION = "15.12.2"
ELASTICSEARCH_VERSION = "21.6.3"
FLUENT_BIT_VERSION = "0.48.9"
OTEL_KUBE_STACK_VERSION = "0.6.0"

GRAFANA_REPO = "https://grafana.github.io/helm-charts"
PROMETHEUS_REPO = "https://prometheus-community.github.io/helm-charts"
BITNAMI_REPO = "https://charts.bitnami.com/bitnami"
FLUENT_REPO = "https://fluent.github.io/helm-charts"
OTEL_REPO = "https://open-telemetry.github.io/opentelemetry-helm-charts"

LOKI_URL = f"http://loki.{MONITORING_NAMESPACE}.svc.cluster.local:3100"
ELASTIC_URL = f"https://elasticsearch.{MONITORING_NAMESPACE}.svc.cluster.local:9200"

THANOS_TRIPPER_CONFIG = """"response_header_timeout": "5m"
"max_idle_conns_per_host": 100
"max_conns_per_host": 100"""
THANOS_CACHE_CONFIG = """type: IN-MEMORY
config:
  max_size: "4096GB"
  validity: "60s\""""

CONTRACT = StackContract(
    stack="mon-log",
    version=1,
    outputs=(
        OutputSpec("monitoringNamespace", OutputKind.STRING),
        OutputSpec("grafanaService", OutputKind.STRING),
        OutputSpec("prometheusService", OutputKind.STRING),
        OutputSpec("alertmanagerService", OutputKind.STRING, optional=True),
        OutputSpec("lokiService", OutputKind.STRING, optional=True),
        OutputSpec("thanosQueryService", OutputKind.STRING, optional=True),
        OutputSpec("elasticsearchService", OutputKind.STRING, optional=True),
        OutputSpec("otelCollectorService", OutputKind.STRING, optional=True),
    ),
)


class MonLog(MicroStack):
    name = "mon-log"
    config_model = MonLogConfig
    contract = CONTRACT
    requires = ("infra-kube",)

    def upstream(self, config: MonLogConfig) -> dict[str, str]:
        return {"infra-kube": config.infra_kube_stack_ref}

    def compose(self, ctx: StackContext, config: MonLogConfig) -> None:
        provider = ctx.kubernetes_provider(
            ctx.upstream_output("infra-kube", "kubeconfig", secret=True)
        )
        namespace = KubernetesNamespaceFactory(ctx.graph, provider).namespace(
            MONITORING_NAMESPACE, labels={"name": MONITORING_NAMESPACE}
        )
        helm = HelmReleaseDeployer(ctx.graph, provider)

        datasources = []
        depends_on: list[ResourceHandle] = []
        if config.enable_loki:
            depends_on += self._loki(helm, namespace, config)
            datasources.append(
                {"name": "Loki", "type": "loki", "url": LOKI_URL, "access": "proxy", "isDefault": False}
            )

        if config.enable_elastic:
            depends_on += self._elastic(ctx, helm, namespace, config)

        prometheus_spec = {
            "retention": config.prometheus_retention,
            "replicas": config.prometheus_replicas,
            "storageSpec": {
                "volumeClaimTemplate": {
                    "spec": {
                        "storageClassName": config.prometheus_storage_class,
                        "accessModes": ["ReadWriteOnce"],
                        "resources": {"requests": {"storage": config.prometheus_storage}},
                    }
                }
            },
            "resources": ctx.profiles.as_values("prometheus"),
        }
        if config.enable_thanos:
            prometheus_spec["thanos"] = {"resources": ctx.profiles.as_values("prom-thanos")}

        prometheus = HelmReleaseDeployer(ctx.graph, provider, timeout=600).release(
            "kube-prometheus-stack",
            "kube-prometheus-stack",
            KUBE_PROMETHEUS_STACK_VERSION,
            PROMETHEUS_REPO,
            namespace,
            {
                "fullnameOverride": "kube-prometheus-stack",
                "prometheus": {
                    "prometheusSpec": prometheus_spec,
                    "thanosService": {"enabled": config.enable_thanos},
                },
                "prometheusOperator": {"resources": ctx.profiles.as_values("prom-operator")},
                "grafana": {
                    "adminPassword": values.seal(config.grafana_admin_password),
                    "persistence": {
                        "enabled": True,
                        "storageClassName": config.grafana_storage_class,
                        "size": config.grafana_storage,
                    },
                    "resources": ctx.profiles.as_values("grafana"),
                    "sidecar": {
                        "dashboards": {"enabled": True},
                        "resources": ctx.profiles.as_values("grafana-sidecars"),
                    },
                    "additionalDataSources": datasources,
                },
                "alertmanager": {"enabled": config.enable_alert_manager},
                "nodeExporter": {"enabled": True},
                "prometheus-node-exporter": {
                    "resources": ctx.profiles.as_values("prom-node-exporter")
                },
                "kubeStateMetrics": {"enabled": True},
                "kube-state-metrics": {"resources": ctx.profiles.as_values("kube-state-metrics")},
                # Control plane components are not reachable on managed clusters
                "kubeEtcd": {"enabled": False},
                "kubeControllerManager": {"enabled": False},
                "kubeScheduler": {"enabled": False},
                "kubeProxy": {"enabled": False},
            },
            depends_on=depends_on,
        )

        if config.enable_thanos:
            self._thanos(ctx, provider, helm, namespace, prometheus)

        if config.enable_otel:
            self._otel(ctx, provider, helm, namespace, config, depends_on)

        ctx.publish("monitoringNamespace", MONITORING_NAMESPACE)
        ctx.publish("grafanaService", "kube-prometheus-stack-grafana")
        ctx.publish("prometheusService", "kube-prometheus-stack-prometheus")
        if config.enable_alert_manager:
            ctx.publish("alertmanagerService", "kube-prometheus-stack-alertmanager")
        if config.enable_loki:
            ctx.publish("lokiService", "loki")
        if config.enable_thanos:
            ctx.publish("thanosQueryService", "thanos-query")
        if config.enable_elastic:
            ctx.publish("elasticsearchService", "elasticsearch")
        if config.enable_otel:
            ctx.publish("otelCollectorService", "otel-kube-stack-gateway-collector")

    @staticmethod
    def _loki(helm: HelmReleaseDeployer, namespace, config: MonLogConfig) -> list[ResourceHandle]:
        loki = helm.release(
            "loki",
            "loki",
            LOKI_VERSION,
            GRAFANA_REPO,
            namespace,
            {
                "fullnameOverride": "loki",
                "deploymentMode": "SingleBinary",
                "singleBinary": {
                    "replicas": 1,
                    "persistence": {
                        "enabled": True,
                        "size": config.loki_storage,
                        "storageClass": config.loki_storage_class,
                    },
                    "resources": {
                        "requests": {"cpu": "100m", "memory": "256Mi"},
                        "limits": {"cpu": "500m", "memory": "512Mi"},
                    },
                },
                "loki": {
                    "auth_enabled": False,
                    "commonConfig": {"replication_factor": 1},
                    "storage": {"type": "filesystem"},
                    "limits_config": {
                        "retention_period": config.loki_retention,
                        "ingestion_rate_mb": 10,
                        "ingestion_burst_size_mb": 20,
                        "max_streams_per_user": 10000,
                    },
                    "schemaConfig": {
                        "configs": [
                            {
                                "from": "2024-01-01",
                                "store": "tsdb",
                                "object_store": "filesystem",
                                "schema": "v13",
                                "index": {"prefix": "index_", "period": "24h"},
                            }
                        ]
                    },
                },
                # SingleBinary runs every target in one pod
                "backend": {"replicas": 0},
                "read": {"replicas": 0},
                "write": {"replicas": 0},
                "gateway": {"enabled": False},
                "monitoring": {
                    "selfMonitoring": {"enabled": False},
                    "lokiCanary": {"enabled": False},
                },
                "test": {"enabled": False},
            },
        )
        promtail = helm.release(
            "promtail",
            "promtail",
            PROMTAIL_VERSION,
            GRAFANA_REPO,
            namespace,
            {
                "fullnameOverride": "promtail",
                "config": {"clients": [{"url": f"{LOKI_URL}/loki/api/v1/push"}]},
                "resources": {
                    "requests": {"cpu": "50m", "memory": "64Mi"},
                    "limits": {"cpu": "200m", "memory": "128Mi"},
                },
                "tolerations": [{"effect": "NoSchedule", "operator": "Exists"}],
            },
            depends_on=[loki],
        )
        return [loki, promtail]

    @staticmethod
    def _elastic(
        ctx: StackContext, helm: HelmReleaseDeployer, namespace, config: MonLogConfig
    ) -> list[ResourceHandle]:
        profiles = ctx.profiles
        persistence = {
            "storageClass": config.elastic_storage_class,
            "size": config.elastic_storage,
        }
        elastic = helm.release(
            "elasticsearch",
            "elasticsearch",
            ELASTICSEARCH_VERSION,
            BITNAMI_REPO,
            namespace,
            {
                "global": {"defaultStorageClass": config.elastic_storage_class, "kibanaEnabled": True},
                "nameOverride": "elasticsearch",
                "fullnameOverride": "elasticsearch",
                "persistence": persistence,
                "security": {
                    "enabled": True,
                    "elasticPassword": values.seal(config.elastic_password),
                    "tls": {"autoGenerated": True},
                },
                "master": {"persistence": persistence},
                "data": {
                    "persistence": persistence,
                    "resourcesPreset": profiles.preset("elastic-data"),
                },
                "ingest": {
                    "resourcesPreset": profiles.preset("elastic-ingest"),
                    "heapSize": profiles.preset("elastic-ingest-heap"),
                },
                "coordinating": {
                    "resourcesPreset": profiles.preset("elastic-coordinating"),
                    "heapSize": profiles.preset("elastic-coordinating-heap"),
                },
                "metrics": {"resources": profiles.as_values("elastic-metrics")},
                "kibana": {"resources": profiles.as_values("kibana")},
            },
        )
        fluent_bit = helm.release(
            "fluent-bit",
            "fluent-bit",
            FLUENT_BIT_VERSION,
            FLUENT_REPO,
            namespace,
            {
                "resources": profiles.as_values("fluent-bit"),
                "env": [
                    {
                        "name": "ELASTIC_PASSWORD",
                        "valueFrom": {
                            "secretKeyRef": {"name": "elasticsearch", "key": "elasticsearch-password"}
                        },
                    }
                ],
                "config": {
                    "outputs": (
                        "[OUTPUT]\n"
                        "    Name es\n"
                        "    Match kube.*\n"
                        "    Host elasticsearch\n"
                        "    Port 9200\n"
                        "    HTTP_User elastic\n"
                        "    HTTP_Passwd ${ELASTIC_PASSWORD}\n"
                        "    tls On\n"
                        "    tls.verify Off\n"
                        "    Logstash_Format On\n"
                        "    Suppress_Type_Name On\n"
                    )
                },
                "tolerations": [{"effect": "NoSchedule", "operator": "Exists"}],
            },
            depends_on=[elastic],
        )
        return [elastic, fluent_bit]

    @staticmethod
    def _thanos(
        ctx: StackContext,
        provider: ResourceHandle,
        helm: HelmReleaseDeployer,
        namespace,
        prometheus: ResourceHandle,
    ) -> None:
        config_map = ctx.declare(
            "queryfrontend-config",
            tokens.K8S_CONFIG_MAP,
            {
                "metadata": {"name": "frontend-config-files", "namespace": MONITORING_NAMESPACE},
                "data": {
                    "tripper-config.yaml": THANOS_TRIPPER_CONFIG,
                    "cache-config.yaml": THANOS_CACHE_CONFIG,
                },
            },
            provider=provider,
            depends_on=[namespace],
        )
        helm.release(
            "thanos",
            "thanos",
            THANOS_VERSION,
            BITNAMI_REPO,
            namespace,
            {
                "nameOverride": "thanos",
                "fullnameOverride": "thanos",
                "query": {
                    "resourcesPreset": ctx.profiles.preset("thanos-query"),
                    "dnsDiscovery": {
                        "sidecarsService": "kube-prometheus-stack-thanos-discovery",
                        "sidecarsNamespace": MONITORING_NAMESPACE,
                    },
                },
                "queryFrontend": {
                    "resourcesPreset": ctx.profiles.preset("thanos-query-frontend"),
                    "extraFlags": [
                        "--query-frontend.compress-responses",
                        "--query-range.split-interval=1h",
                        "--query-range.max-retries-per-request=5",
                        "--query-frontend.log-queries-longer-than=30s",
                        "--query-frontend.downstream-tripper-config-file="
                        "/frontend-config-files/tripper-config.yaml",
                        "--labels.response-cache-config-file=/frontend-config-files/cache-config.yaml",
                    ],
                    "extraVolumeMounts": [
                        {
                            "name": "frontend-config-files",
                            "mountPath": "/frontend-config-files",
                            "readOnly": True,
                        }
                    ],
                    "extraVolumes": [
                        {"name": "frontend-config-files", "configMap": {"name": "frontend-config-files"}}
                    ],
                },
                "metrics": {"enabled": True, "serviceMonitor": {"enabled": True}},
            },
            depends_on=[prometheus, config_map],
        )

    @staticmethod
    def _otel(
        ctx: StackContext,
        provider: ResourceHandle,
        helm: HelmReleaseDeployer,
        namespace,
        config: MonLogConfig,
        depends_on: list[ResourceHandle],
    ) -> None:
        env = [{"name": "GOMEMLIMIT", "value": "1025MiB"}]
        release_deps = list(depends_on)
        if config.enable_elastic:
            secret = ctx.declare(
                "elastic-secret-otel",
                tokens.K8S_SECRET,
                {
                    "metadata": {"name": "elastic-secret-otel", "namespace": MONITORING_NAMESPACE},
                    "stringData": {
                        "elastic_endpoint": ELASTIC_URL,
                        "elastic_user": "elastic",
                        "elastic_password": values.seal(config.elastic_password),
                    },
                },
                provider=provider,
                depends_on=[namespace],
            )
            release_deps.append(secret)
            env += [
                {
                    "name": name,
                    "valueFrom": {"secretKeyRef": {"name": "elastic-secret-otel", "key": key}},
                }
                for name, key in (
                    ("ELASTIC_ENDPOINT", "elastic_endpoint"),
                    ("ELASTIC_USER", "elastic_user"),
                    ("ELASTIC_PASSWORD", "elastic_password"),
                )
            ]
        helm.release(
            "otel-kube-stack",
            "opentelemetry-kube-stack",
            OTEL_KUBE_STACK_VERSION,
            OTEL_REPO,
            namespace,
            {"collectors": {"gateway": {"env": env}}},
            depends_on=release_deps,
        )
