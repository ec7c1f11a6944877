"""Canonical policy catalogue and the pack each stack is validated against."""

from __future__ import annotations

from typing import Iterator, Mapping, Sequence

from ..core import tokens
from .validator import (
    SECRET,
    UNKNOWN,
    Enforcement,
    Policy,
    PolicyResource,
    StackPolicy,
    apply_overrides,
)

MANDATORY = Enforcement.MANDATORY
ADVISORY = Enforcement.ADVISORY

APPROVED_INSTANCE_TYPES = frozenset(
    {
        "m6i.large",
        "m6i.xlarge",
        "m6i.2xlarge",
        "m5.large",
        "m5.xlarge",
        "c6i.large",
        "c6i.xlarge",
        "r6i.large",
        "r6i.xlarge",
        "t3.medium",
        "t3.large",
    }
)
REQUIRED_CLUSTER_LOG_TYPES = ("api", "audit")
MIN_CLUSTER_LOG_TYPES = 3
MIN_BACKUP_RETENTION_DAYS = 7
MIN_POSTGRES_MAJOR = 15
MONITORING_NAMESPACE = "monitoring"
PERSISTENT_COMPONENTS = ("prometheus", "loki", "grafana")

_CLUSTERS = frozenset({tokens.EKS_CLUSTER, "aws:eks/cluster:Cluster"})
_HELM = frozenset({tokens.HELM_RELEASE})
_RDS = frozenset({tokens.RDS_INSTANCE})
_STORAGE_CLASSES = frozenset({tokens.K8S_STORAGE_CLASS})


def _unknown(*items) -> bool:
    return any(item is UNKNOWN for item in items)


def _mapping(value) -> Mapping:
    return value if isinstance(value, Mapping) else {}


# EKS / IAM / storage


def _endpoint_access(r: PolicyResource):
    private = r.get("endpointPrivateAccess")
    if _unknown(private):
        return None
    if private is not True:
        return "EKS cluster must have private endpoint access enabled"


def _cluster_logging(r: PolicyResource):
    log_types = r.get("enabledClusterLogTypes")
    if _unknown(log_types):
        return None
    if not isinstance(log_types, (list, tuple)) or len(log_types) < MIN_CLUSTER_LOG_TYPES:
        return "EKS cluster must have at least 3 log types enabled (api, audit, authenticator)"
    if _unknown(*log_types):
        return None
    if not all(required in log_types for required in REQUIRED_CLUSTER_LOG_TYPES):
        return "EKS cluster must enable 'api' and 'audit' logging"


def _wildcards(document) -> tuple[bool, bool]:
    """Whether an IAM document grants ``Action: *`` and/or ``Resource: *``."""
    if isinstance(document, str):
        compact = document.replace(" ", "")
        return '"Action":"*"' in compact, '"Resource":"*"' in compact
    action = resource = False
    for statement in _mapping(document).get("Statement", ()):
        statement = _mapping(statement)
        actions = statement.get("Action", ())
        resources = statement.get("Resource", ())
        action |= actions == "*" or (isinstance(actions, (list, tuple)) and "*" in actions)
        resource |= resources == "*" or (isinstance(resources, (list, tuple)) and "*" in resources)
    return action, resource


def _least_privilege(r: PolicyResource):
    if r.type_token == tokens.IAM_ROLE:
        document = r.get("assumeRolePolicy")
        if _unknown(document) or document is SECRET:
            return None
        action, resource = _wildcards(document)
        if action and resource:
            return "IAM role contains wildcard permissions in assume role policy"
        return None
    document = r.get("policy")
    if _unknown(document) or document is SECRET:
        return None
    action, _ = _wildcards(document)
    if action:
        kind = "IAM policy" if r.type_token == tokens.IAM_POLICY else "IAM role policy"
        return f"{kind} uses wildcard actions - specify exact permissions"


def _storage_encryption(r: PolicyResource):
    encrypted = r.get("parameters.encrypted")
    if _unknown(encrypted):
        return None
    if str(encrypted).lower() != "true":
        return "StorageClass must have encryption enabled"


def _wait_for_consumer(r: PolicyResource):
    mode = r.get("volumeBindingMode")
    if _unknown(mode):
        return None
    if mode != "WaitForFirstConsumer":
        return "StorageClass should use WaitForFirstConsumer binding mode"


def _oidc_provider(r: PolicyResource):
    if r.type_token != tokens.EKS_CLUSTER:
        return None
    create = r.get("createOidcProvider")
    if _unknown(create):
        return None
    if create is not True:
        return "EKS cluster must have OIDC provider enabled"


def _approved_instance_types(r: PolicyResource):
    if r.type_token in (tokens.EKS_NODE_GROUP, tokens.EKS_MANAGED_NODE_GROUP):
        candidates = r.get("instanceTypes") or ()
    else:
        candidates = (r.get("instanceType"),)
    for instance_type in candidates:
        if isinstance(instance_type, str) and instance_type not in APPROVED_INSTANCE_TYPES:
            yield f"Instance type {instance_type} is not approved"


def _flow_logs(resources: Sequence[PolicyResource]):
    vpcs = [r for r in resources if r.type_token in (tokens.AWSX_VPC, "aws:ec2/vpc:Vpc")]
    if vpcs and not any(r.type_token == tokens.EC2_FLOW_LOG for r in resources):
        return [f"VPC '{vpc.name}' should have flow logs enabled" for vpc in vpcs]


# Helm


def _version_pinned(r: PolicyResource):
    version = r.get("version")
    if _unknown(version):
        return None
    if not version or version == "latest":
        return "Helm release must have explicit version (not 'latest')"


def _namespace_declared(r: PolicyResource):
    namespace = r.get("namespace")
    if _unknown(namespace):
        return None
    if not namespace:
        return "Helm release must declare the namespace it is installed into"


def _monitoring_namespace(r: PolicyResource):
    namespace = r.get("namespace")
    if isinstance(namespace, str) and namespace != MONITORING_NAMESPACE:
        return f"Monitoring Helm releases must be deployed in '{MONITORING_NAMESPACE}' namespace"


def _enabled(persistence) -> bool:
    return _mapping(persistence).get("enabled") is True


def _persistent_storage(r: PolicyResource) -> Iterator[str]:
    chart_values = r.get("values")
    if _unknown(chart_values) or not isinstance(chart_values, Mapping):
        return
    name = r.name.lower()
    has_storage = (
        "storageSpec" in _mapping(_mapping(chart_values.get("prometheus")).get("prometheusSpec"))
        or _enabled(chart_values.get("persistence"))
        or _enabled(_mapping(chart_values.get("singleBinary")).get("persistence"))
    )
    for component in PERSISTENT_COMPONENTS:
        if component in name and not has_storage:
            yield f"Critical component '{component}' must have persistent storage configured"


def _limits(resources) -> bool:
    return bool(_mapping(_mapping(resources).get("limits")))


def _resource_limits(r: PolicyResource):
    chart_values = r.get("values")
    if _unknown(chart_values) or not isinstance(chart_values, Mapping):
        return None
    spec = _mapping(_mapping(chart_values.get("prometheus")).get("prometheusSpec"))
    if not (_limits(chart_values.get("resources")) or _limits(spec.get("resources"))):
        return "Monitoring component should have resource limits defined"


def _prometheus_retention(r: PolicyResource):
    if "prometheus" not in r.name.lower():
        return None
    retention = r.get("values.prometheus.prometheusSpec.retention")
    if _unknown(retention):
        return None
    if not retention:
        return "Prometheus must have explicit retention policy configured"


def _loki_retention(r: PolicyResource):
    if "loki" not in r.name.lower():
        return None
    retention = r.get("values.loki.limits_config.retention_period")
    if _unknown(retention):
        return None
    if not retention:
        return "Loki should have retention policy configured"


def _grafana_auth(r: PolicyResource):
    grafana = r.get("values.grafana")
    if _unknown(grafana) or not isinstance(grafana, Mapping):
        return None
    password = grafana.get("adminPassword")
    if password is UNKNOWN:
        return None
    authenticated = password is SECRET or (password is not None and password != "")
    if _mapping(_mapping(grafana.get("grafana.ini")).get("auth.anonymous")).get("enabled") is True:
        authenticated = False
    if not authenticated:
        return "Grafana must have authentication configured (admin password required)"


# RDS


def _rds_flag(prop: str, message: str, *, missing_violates: bool = True):
    def check(r: PolicyResource):
        value = r.get(prop)
        if _unknown(value):
            return None
        if value is None:
            return message if missing_violates else None
        if value is not True:
            return message

    return check


def _backup_retention(r: PolicyResource):
    retention = r.get("backupRetentionPeriod")
    if _unknown(retention):
        return None
    if not isinstance(retention, int) or retention < MIN_BACKUP_RETENTION_DAYS:
        return f"RDS instance must have backup retention >= {MIN_BACKUP_RETENTION_DAYS} days"


def _public_access(r: PolicyResource):
    if r.get("publiclyAccessible") is True:
        return "RDS instance must not be publicly accessible (publiclyAccessible: false)"


def _engine_version(r: PolicyResource):
    engine, version = r.get("engine"), r.get("engineVersion")
    if engine != "postgres" or not isinstance(version, str):
        return None
    major = version.split(".")[0]
    if major.isdigit() and int(major) < MIN_POSTGRES_MAJOR:
        return f"PostgreSQL version should be {MIN_POSTGRES_MAJOR} or higher (current: {version})"


def _log_exports(r: PolicyResource):
    exports = r.get("enabledCloudwatchLogsExports")
    if _unknown(exports):
        return None
    if not exports:
        return "RDS instance should have CloudWatch logs exports enabled"


def _storage_type(r: PolicyResource):
    storage_type = r.get("storageType")
    if _unknown(storage_type):
        return None
    if storage_type != "gp3":
        return "RDS instance should use gp3 storage type for better cost/performance"


def _security_group_ingress(r: PolicyResource):
    if "rds" not in r.name.lower():
        return None
    for rule in r.get("ingress") or ():
        if "0.0.0.0/0" in (_mapping(rule).get("cidrBlocks") or ()):
            return "RDS security group should not allow ingress from 0.0.0.0/0"


def _alarms(resources: Sequence[PolicyResource]):
    has_database = any(r.type_token == tokens.RDS_INSTANCE for r in resources)
    if has_database and not any(r.type_token == tokens.CLOUDWATCH_METRIC_ALARM for r in resources):
        return "Stack should have CloudWatch alarms configured for RDS monitoring"


CATALOGUE: dict[str, Policy | StackPolicy] = {
    policy.name: policy
    for policy in (
        Policy(
            "eks-cluster-endpoint-access",
            "Validates EKS cluster has appropriate endpoint access configuration",
            MANDATORY,
            _CLUSTERS,
            _endpoint_access,
        ),
        Policy(
            "eks-cluster-logging-enabled",
            "Ensures EKS cluster has CloudWatch logging enabled",
            MANDATORY,
            _CLUSTERS,
            _cluster_logging,
        ),
        Policy(
            "eks-oidc-provider-required",
            "Ensures EKS cluster has OIDC provider enabled for IRSA",
            MANDATORY,
            _CLUSTERS,
            _oidc_provider,
        ),
        Policy(
            "eks-nodegroup-approved-instance-types",
            "Validates node groups use approved instance types",
            MANDATORY,
            frozenset({tokens.EKS_CLUSTER, tokens.EKS_NODE_GROUP, tokens.EKS_MANAGED_NODE_GROUP}),
            _approved_instance_types,
        ),
        Policy(
            "iam-role-least-privilege",
            "Validates IAM roles follow least privilege principle",
            MANDATORY,
            frozenset({tokens.IAM_ROLE, tokens.IAM_ROLE_POLICY, tokens.IAM_POLICY}),
            _least_privilege,
        ),
        Policy(
            "storageclass-encryption-required",
            "Ensures all StorageClasses have encryption enabled",
            MANDATORY,
            _STORAGE_CLASSES,
            _storage_encryption,
        ),
        Policy(
            "storageclass-wait-for-consumer",
            "Ensures StorageClasses use WaitForFirstConsumer for better pod scheduling",
            ADVISORY,
            _STORAGE_CLASSES,
            _wait_for_consumer,
        ),
        Policy(
            "helm-release-version-pinned",
            "Ensures Helm releases pin an explicit chart version",
            MANDATORY,
            _HELM,
            _version_pinned,
        ),
        Policy(
            "helm-release-namespace-declared",
            "Ensures Helm releases declare their target namespace",
            ADVISORY,
            _HELM,
            _namespace_declared,
        ),
        Policy(
            "rds-storage-encryption-required",
            "Ensures RDS storage is encrypted",
            MANDATORY,
            _RDS,
            _rds_flag(
                "storageEncrypted", "RDS instance must have encrypted storage (storageEncrypted: true)"
            ),
        ),
        Policy(
            "rds-backup-retention-required",
            "Ensures RDS keeps automated backups",
            MANDATORY,
            _RDS,
            _backup_retention,
        ),
        Policy(
            "rds-public-access-forbidden",
            "Ensures RDS is not publicly accessible",
            MANDATORY,
            _RDS,
            _public_access,
        ),
        Policy(
            "rds-auto-minor-version-upgrade",
            "Ensures RDS has automatic minor version upgrades enabled",
            MANDATORY,
            _RDS,
            _rds_flag(
                "autoMinorVersionUpgrade",
                "RDS instance should have automatic minor version upgrades enabled",
                missing_violates=False,
            ),
        ),
        Policy(
            "rds-engine-version-current",
            "Ensures RDS uses a current PostgreSQL version",
            MANDATORY,
            _RDS,
            _engine_version,
        ),
        Policy(
            "rds-multi-az-recommended",
            "Recommends Multi-AZ deployment",
            ADVISORY,
            _RDS,
            _rds_flag("multiAz", "RDS instance should use Multi-AZ deployment for high availability"),
        ),
        Policy(
            "rds-deletion-protection-recommended",
            "Recommends deletion protection",
            ADVISORY,
            _RDS,
            _rds_flag(
                "deletionProtection",
                "RDS instance should have deletion protection enabled for production",
            ),
        ),
        Policy(
            "rds-performance-insights-enabled",
            "Ensures RDS has Performance Insights enabled",
            ADVISORY,
            _RDS,
            _rds_flag(
                "performanceInsightsEnabled",
                "RDS instance should have Performance Insights enabled for monitoring",
            ),
        ),
        Policy(
            "rds-enhanced-monitoring-enabled",
            "Ensures RDS has enhanced monitoring enabled",
            ADVISORY,
            _RDS,
            _log_exports,
        ),
        Policy(
            "rds-storage-type-recommended",
            "Recommends gp3 storage for RDS",
            ADVISORY,
            _RDS,
            _storage_type,
        ),
        Policy(
            "security-group-ingress-restricted",
            "Ensures RDS security group has restricted ingress (VPC only)",
            MANDATORY,
            frozenset({tokens.EC2_SECURITY_GROUP}),
            _security_group_ingress,
        ),
        StackPolicy(
            "cloudwatch-alarms-configured",
            "Ensures CloudWatch alarms are configured for RDS monitoring",
            ADVISORY,
            _alarms,
        ),
        Policy(
            "monitoring-namespace-required",
            "Ensures monitoring resources are deployed in 'monitoring' namespace",
            MANDATORY,
            _HELM,
            _monitoring_namespace,
        ),
        Policy(
            "persistent-storage-required",
            "Ensures critical monitoring components have persistent storage",
            MANDATORY,
            _HELM,
            _persistent_storage,
        ),
        Policy(
            "prometheus-retention-configured",
            "Ensures Prometheus has explicit retention policy",
            MANDATORY,
            _HELM,
            _prometheus_retention,
        ),
        Policy(
            "loki-retention-configured",
            "Ensures Loki has retention policy configured",
            MANDATORY,
            _HELM,
            _loki_retention,
        ),
        Policy(
            "grafana-auth-configured",
            "Ensures Grafana has authentication configured",
            MANDATORY,
            _HELM,
            _grafana_auth,
        ),
        Policy(
            "resource-limits-required",
            "Ensures monitoring components have resource limits defined",
            ADVISORY,
            _HELM,
            _resource_limits,
        ),
        StackPolicy(
            "vpc-flow-logs-recommended",
            "Recommends VPC flow logs",
            ADVISORY,
            _flow_logs,
        ),
    )
}

_COMMON = ("helm-release-version-pinned", "helm-release-namespace-declared", "iam-role-least-privilege")

PACKS: dict[str, tuple[str, ...]] = {
    "infra-aws": ("iam-role-least-privilege", "vpc-flow-logs-recommended"),
    "infra-gcp": (),
    "infra-kube": _COMMON
    + (
        "eks-cluster-endpoint-access",
        "eks-cluster-logging-enabled",
        "eks-oidc-provider-required",
        "eks-nodegroup-approved-instance-types",
        "storageclass-encryption-required",
        "storageclass-wait-for-consumer",
    ),
    "sql": (
        "rds-storage-encryption-required",
        "rds-backup-retention-required",
        "rds-public-access-forbidden",
        "rds-auto-minor-version-upgrade",
        "rds-engine-version-current",
        "rds-multi-az-recommended",
        "rds-deletion-protection-recommended",
        "rds-performance-insights-enabled",
        "rds-enhanced-monitoring-enabled",
        "rds-storage-type-recommended",
        "security-group-ingress-restricted",
        "cloudwatch-alarms-configured",
    ),
    "mon-log": _COMMON
    + (
        "monitoring-namespace-required",
        "persistent-storage-required",
        "prometheus-retention-configured",
        "loki-retention-configured",
        "grafana-auth-configured",
        "resource-limits-required",
    ),
    "ci-support": _COMMON,
    "api": _COMMON,
}


def policies_for(
    stack: str, overrides: Mapping[str, str] | None = None
) -> list[Policy | StackPolicy]:
    """Policy pack for ``stack`` with operator enforcement overrides applied."""
    try:
        names = PACKS[stack]
    except KeyError:
        raise KeyError(f"No policy pack for stack '{stack}'") from None
    return apply_overrides([CATALOGUE[name] for name in names], overrides or {})
