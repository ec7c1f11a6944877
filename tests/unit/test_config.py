from __future__ import annotations

import pytest

from pulumi_eks_platform.config import (
    ApiConfig,
    CiSupportConfig,
    ConfigLoader,
    InfraAwsConfig,
    InfraGcpConfig,
    InfraKubeConfig,
    MonLogConfig,
    NodePoolConfig,
    SqlConfig,
    TaintConfig,
)
from pulumi_eks_platform.core.values import Secret
from pulumi_eks_platform.errors import ConfigMissingError, ConfigTypeMismatchError


class TestConfigLoader:
    @staticmethod
    def test_scalar_accessors():
        loader = ConfigLoader({"enabled": "yes", "count": "3", "name": "", "flag": False})
        assert loader.get_bool("enabled") is True
        assert loader.get_bool("flag") is False
        assert loader.get_int("count") == 3
        assert loader.get("name", "default") == "default"
        assert loader.get("missing") == ""
        assert loader.get("count") == "3"
        assert loader.get_bool("missing", True) is True

    @staticmethod
    def test_type_mismatches():
        loader = ConfigLoader({"enabled": "maybe", "count": "three", "blob": "{not json"})
        with pytest.raises(ConfigTypeMismatchError):
            loader.get_bool("enabled")
        with pytest.raises(ConfigTypeMismatchError):
            loader.get_int("count")
        with pytest.raises(ConfigTypeMismatchError):
            loader.get_object("blob")

    @staticmethod
    def test_require_reports_missing_key():
        with pytest.raises(ConfigMissingError) as exc_info:
            ConfigLoader({}).require("clusterName")
        assert exc_info.value.key == "clusterName"
        assert exc_info.value.stage == "config"

    @staticmethod
    def test_secrets_are_wrapped():
        loader = ConfigLoader({"dbPassword": "hunter2"})
        assert loader.require_secret("dbPassword") == Secret("hunter2")
        assert loader.get_secret("other") is None

    @staticmethod
    def test_objects_parse_json_strings():
        loader = ConfigLoader({"autoTags": '{"Environment": "dev"}', "pools": [{"name": "a"}]})
        assert loader.get_object("autoTags") == {"Environment": "dev"}
        assert loader.require_object("pools", list) == [{"name": "a"}]
        with pytest.raises(ConfigTypeMismatchError):
            loader.get_object("pools", dict)


class TestLoadModels:
    @staticmethod
    def test_infra_aws_defaults():
        config = ConfigLoader({"clusterName": "dev", "autoTags": {"Environment": "dev"}}).load(InfraAwsConfig)
        assert config.vpc_name == "dev-vpc"
        assert config.aws_region == "us-east-1"
        assert config.auto_tags == {"Environment": "dev"}
        assert config.enable_flow_logs is False

    @staticmethod
    def test_infra_gcp_requires_project():
        with pytest.raises(ConfigMissingError, match="gcpProject"):
            ConfigLoader({}).load(InfraGcpConfig)

    @staticmethod
    def test_infra_gcp_node_range():
        with pytest.raises(ConfigTypeMismatchError):
            ConfigLoader({"gcpProject": "p", "minNodes": "5", "maxNodes": "2"}).load(InfraGcpConfig)

    @staticmethod
    def test_infra_kube_required_keys():
        with pytest.raises(ConfigMissingError, match="infraAwsStack"):
            ConfigLoader({"clusterName": "dev"}).load(InfraKubeConfig)

    @staticmethod
    def test_infra_kube_nested_models():
        config = ConfigLoader(
            {
                "infraAwsStack": "org/infra-aws/dev",
                "clusterName": "dev",
                "tls": {"domain": "example.com", "email": "ops@example.com"},
                "nodePools": '[{"name": "gpu", "instanceType": "g5.xlarge"}]',
            }
        ).load(InfraKubeConfig)
        assert config.tls.domain == "example.com"
        assert config.cluster_log_types == []
        assert [pool.name for pool in config.eks_node_pools] == ["gpu"]

    @staticmethod
    def test_infra_kube_scaling_bounds():
        with pytest.raises(ConfigTypeMismatchError):
            ConfigLoader(
                {"infraAwsStack": "a/b", "clusterName": "dev", "minSize": 3, "maxSize": 4, "desiredCapacity": 1}
            ).load(InfraKubeConfig)

    @staticmethod
    def test_infra_kube_duplicate_node_pools():
        with pytest.raises(ConfigTypeMismatchError):
            ConfigLoader(
                {
                    "infraAwsStack": "a/b",
                    "clusterName": "dev",
                    "nodePools": [
                        {"name": "a", "instanceType": "m6i.large"},
                        {"name": "a", "instanceType": "m6i.large"},
                    ],
                }
            ).load(InfraKubeConfig)

    @staticmethod
    def test_sql_password_is_secret():
        config = ConfigLoader(
            {
                "infraStackRef": "org/infra-aws/dev",
                "dbName": "app",
                "dbInstanceType": "db.t3.medium",
                "zone": "us-east-1a",
                "dbPassword": "hunter2",
            }
        ).load(SqlConfig)
        assert isinstance(config.db_password, Secret)
        assert config.db_password.inner == "hunter2"

    @staticmethod
    def test_sql_missing_password():
        with pytest.raises(ConfigMissingError, match="dbPassword"):
            ConfigLoader(
                {"infraStackRef": "a/b", "dbName": "app", "dbInstanceType": "db.t3.medium", "zone": "z"}
            ).load(SqlConfig)

    @staticmethod
    def test_mon_log_elastic_needs_password():
        with pytest.raises(ConfigTypeMismatchError):
            ConfigLoader(
                {"infraKubeStackRef": "a/b", "grafanaAdminPassword": "pw", "enableElastic": "true"}
            ).load(MonLogConfig)

    @staticmethod
    def test_ci_support_runner_controller_needs_github_app():
        with pytest.raises(ConfigTypeMismatchError, match="githubAppId"):
            ConfigLoader(
                {
                    "infraKubeStackRef": "a/b",
                    "enableActionsRunnerController": True,
                    "githubConfigUrl": "https://github.com/org",
                }
            ).load(CiSupportConfig)

    @staticmethod
    def test_api_nested_secrets_are_sealed():
        config = ConfigLoader(
            {
                "infraKubeStackRef": "a/b",
                "domain": "example.com",
                "oauth": {
                    "issuerUrl": "https://accounts.example.com",
                    "clientId": "id",
                    "clientSecret": "s3cret",
                    "cookieSecret": "c00kie",
                },
            }
        ).load(ApiConfig)
        assert isinstance(config.oauth.client_secret, Secret)
        assert isinstance(config.oauth.cookie_secret, Secret)

    @staticmethod
    @pytest.mark.parametrize(
        "extra",
        [
            {"enableTemporal": True},
            {"basicAuth": {"username": "u", "password": "p"}},
            {
                "domain": "example.com",
                "basicAuth": {"username": "u", "password": "p"},
                "oauth": {"issuerUrl": "i", "clientId": "c", "clientSecret": "s", "cookieSecret": "k"},
            },
        ],
    )
    def test_api_invalid_combinations(extra):
        with pytest.raises(ConfigTypeMismatchError):
            ConfigLoader({"infraKubeStackRef": "a/b", **extra}).load(ApiConfig)

    @staticmethod
    def test_invalid_policy_enforcement():
        with pytest.raises(ConfigTypeMismatchError):
            ConfigLoader({"clusterName": "dev", "policyEnforcement": {"x": "sometimes"}}).load(InfraAwsConfig)


class TestNodePools:
    @staticmethod
    def test_gpu_pool_gets_nvidia_taint():
        pool = NodePoolConfig.from_dict({"name": "gpu", "instanceType": "g5.xlarge"})
        assert pool.gpu
        assert pool.ami_type == "AL2_x86_64_GPU"
        assert [t.to_node_group_taint() for t in pool.effective_taints] == [
            {"key": "nvidia.com/gpu", "effect": "NO_SCHEDULE", "value": "true"}
        ]

    @staticmethod
    def test_min_above_max_rejected():
        with pytest.raises(ValueError):
            NodePoolConfig(name="a", instance_type="m6i.large", min_size=3, max_size=1)

    @staticmethod
    def test_toleration_exists_drops_value():
        taint = TaintConfig(key="dedicated", value="ci")
        assert taint.to_toleration("Exists") == {"key": "dedicated", "operator": "Exists", "effect": "NoSchedule"}
        assert taint.to_toleration()["value"] == "ci"
