"""Configuration models for every micro-stack.

Field names are snake_case; the configuration keys are their camelCase
aliases (``auto_tags`` is read from ``autoTags``). Fields marked
``secret`` are returned by the loader wrapped in ``Secret``.
"""

from __future__ import annotations

import typing
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .node_pools import NodePoolConfig

Enforcement = typing.Literal["mandatory", "advisory", "disabled"]

DEFAULT_ACME_SERVER = "https://acme-v02.api.letsencrypt.org/directory"


def secret_field(required: bool = False) -> Any:
    if required:
        return Field(json_schema_extra={"secret": True})
    return Field(default=None, json_schema_extra={"secret": True})


class ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        extra="ignore",
    )


class StackConfig(ConfigModel):
    """Keys every stack understands."""

    environment: str = "dev"
    auto_tags: dict[str, str] = Field(default_factory=dict)
    policy_enforcement: dict[str, Enforcement] = Field(default_factory=dict)


class TlsConfig(ConfigModel):
    domain: str
    email: str
    acme_server: str = DEFAULT_ACME_SERVER
    # Only used on AWS, for DNS-01 challenges and external-dns
    route53_zone_id: str | None = None


class OAuthConfig(ConfigModel):
    issuer_url: str
    client_id: str
    client_secret: Any = secret_field(required=True)
    cookie_secret: Any = secret_field(required=True)
    provider: str = "oidc"
    scope: str = "openid email"
    groups_claim: str | None = None


class BasicAuthConfig(ConfigModel):
    username: str
    password: Any = secret_field(required=True)


class InfraAwsConfig(StackConfig):
    project_name: str = "cloud-platform-tfm"
    cluster_name: str = "tfm-dev"
    vpc_name: str | None = None
    vpc_cidr: str = "10.0.0.0/16"
    aws_region: str = "us-east-1"
    aws_account_id: str | None = None
    enable_flow_logs: bool = False
    flow_log_retention: int = Field(default=7, gt=0)

    @model_validator(mode="after")
    def default_vpc_name(self):
        if not self.vpc_name:
            self.vpc_name = f"{self.cluster_name}-vpc"
        return self


class InfraGcpConfig(StackConfig):
    project_name: str = "cloud-platform-tfm"
    cluster_name: str = "tfm-gke"
    gcp_project: str
    region: str = "europe-west1"
    network_cidr: str = "10.10.0.0/16"
    k8s_version: str = Field(default="1.30", alias="k8sVersion")
    machine_type: str = "e2-standard-4"
    min_nodes: int = Field(default=1, ge=0)
    max_nodes: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def validate_node_range(self):
        if self.min_nodes > self.max_nodes:
            raise ValueError(f"minNodes {self.min_nodes} exceeds maxNodes {self.max_nodes}")
        return self


class InfraKubeConfig(StackConfig):
    infra_aws_stack: str
    cluster_name: str
    k8s_version: str = Field(default="1.30", alias="k8sVersion")
    instance_type: str = "m6i.large"
    min_size: int = Field(default=2, ge=0)
    max_size: int = Field(default=4, ge=1)
    desired_capacity: int = Field(default=2, ge=0)
    node_pools: list[dict] = Field(default_factory=list)
    # Empty unless set; the logging policy reports it
    cluster_log_types: list[str] = Field(default_factory=list)
    endpoint_private_access: bool = True
    endpoint_public_access: bool = True
    enable_gpu_plugin: bool = False
    enable_ingress: bool = False
    tls: TlsConfig | None = None

    @property
    def eks_node_pools(self) -> list[NodePoolConfig]:
        return [NodePoolConfig.from_dict(p) for p in self.node_pools]

    @model_validator(mode="after")
    def validate_scaling(self):
        if not self.min_size <= self.desired_capacity <= self.max_size:
            raise ValueError(
                f"desiredCapacity {self.desired_capacity} must lie between "
                f"minSize {self.min_size} and maxSize {self.max_size}"
            )
        names = [p.get("name") for p in self.node_pools]
        if len(names) != len(set(names)):
            raise ValueError(f"Node pool names must be unique. Found duplicates in: {names}")
        return self


class SqlConfig(StackConfig):
    infra_stack_ref: str
    db_name: str
    db_instance_type: str
    zone: str
    db_password: Any = secret_field(required=True)
    db_engine_version: str = "16.3"
    db_storage: int = Field(default=100, gt=0)
    backup_retention: int = Field(default=7, ge=0)
    multi_az: bool = False
    deletion_protection: bool = False


class MonLogConfig(StackConfig):
    infra_kube_stack_ref: str
    grafana_admin_password: Any = secret_field(required=True)
    prometheus_storage: str = "20Gi"
    prometheus_storage_class: str = "gp3-enc"
    prometheus_retention: str = "7d"
    prometheus_replicas: int = Field(default=1, ge=1)
    grafana_storage: str = "10Gi"
    grafana_storage_class: str = "gp3-enc"
    enable_loki: bool = False
    loki_storage: str = "10Gi"
    loki_storage_class: str = "gp3-enc"
    loki_retention: str = "168h"
    enable_alert_manager: bool = False
    enable_thanos: bool = False
    enable_elastic: bool = False
    elastic_password: Any = secret_field()
    elastic_storage: str = "30Gi"
    elastic_storage_class: str = "gp3-enc"
    enable_otel: bool = False

    @model_validator(mode="after")
    def validate_elastic(self):
        if self.enable_elastic and self.elastic_password is None:
            raise ValueError("enableElastic requires elasticPassword")
        return self


class CiSupportConfig(StackConfig):
    infra_kube_stack_ref: str
    enable_actions_runner_controller: bool = False
    github_config_url: str | None = None
    github_app_id: Any = secret_field()
    github_app_installation_id: Any = secret_field()
    github_app_private_key: Any = secret_field()
    enable_tekton: bool = False
    enable_buildbarn: bool = False
    buildbarn_config_path: str = "buildbarn"

    @model_validator(mode="after")
    def validate_actions_runner(self):
        if not self.enable_actions_runner_controller:
            return self
        missing = [
            to_camel(name)
            for name in (
                "github_config_url",
                "github_app_id",
                "github_app_installation_id",
                "github_app_private_key",
            )
            if getattr(self, name) is None
        ]
        if missing:
            raise ValueError(
                f"enableActionsRunnerController requires: {', '.join(missing)}"
            )
        return self


class ApiConfig(StackConfig):
    infra_kube_stack_ref: str
    sql_stack_ref: str | None = None
    aws_region: str | None = None
    domain: str | None = None
    route53_zone_id: str | None = None
    api_image: str | None = None
    oauth: OAuthConfig | None = None
    basic_auth: BasicAuthConfig | None = None
    enable_temporal: bool = False
    enable_dragonfly: bool = False
    enable_redis: bool = False
    enable_redis_cluster: bool = False
    enable_mongo: bool = False
    enable_nats: bool = False
    enable_aws_gateway_controller: bool = False
    enable_crossplane: bool = False

    @model_validator(mode="after")
    def validate_dependencies(self):
        if self.enable_temporal and not self.sql_stack_ref:
            raise ValueError("enableTemporal requires sqlStackRef")
        if self.oauth is not None and self.basic_auth is not None:
            raise ValueError("oauth and basicAuth are mutually exclusive")
        if (self.oauth is not None or self.basic_auth is not None) and not self.domain:
            raise ValueError("Authentication requires a domain to serve the API on")
        return self
