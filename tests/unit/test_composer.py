from __future__ import annotations

import pytest

from pulumi_eks_platform.config import InfraAwsConfig, InfraKubeConfig
from pulumi_eks_platform.core import tokens, values
from pulumi_eks_platform.core.orchestrator import Orchestrator
from pulumi_eks_platform.core.references import (
    InMemoryOutputSource,
    StackPointer,
    StackReferenceRegistry,
)
from pulumi_eks_platform.errors import MandatoryPolicyViolationError, ReferenceNotFoundError
from pulumi_eks_platform.stacks import STACKS, InfraAws, InfraKube, StackComposer, blast_radius, stack_order

_INFRA_AWS = StackPointer.parse("infra-aws/dev")
_CLUSTER_OUTPUTS = {
    "kubeconfig": "apiVersion: v1",
    "kubeconfigJson": '{"apiVersion": "v1"}',
    "oidcProviderArn": "arn:aws:iam::123456789012:oidc-provider/oidc.eks.us-east-1.amazonaws.com/id/X",
    "oidcIssuer": "https://oidc.eks.us-east-1.amazonaws.com/id/X",
    "eksCluster": {"endpoint": "https://x.eks.amazonaws.com", "vpcConfig": {"clusterSecurityGroupId": "sg-1"}},
}


class RecordingProvisioner:
    def __init__(self, outputs=None):
        self.outputs = outputs or {}
        self.inputs: dict[str, dict] = {}
        self.failing: set[str] = set()

    async def create(self, name, type_token, inputs):
        self.inputs[name] = dict(inputs)
        if name in self.failing:
            raise RuntimeError("AccessDenied")
        return {"id": f"{name}-id", "arn": f"arn:aws:::{name}", **self.outputs.get(name, {})}

    async def update(self, name, type_token, inputs, outputs):
        self.inputs[name] = dict(inputs)
        return outputs

    async def delete(self, name, type_token, outputs):
        return None


def _aws_config(**overrides) -> InfraAwsConfig:
    return InfraAwsConfig.model_validate({"clusterName": "dev", **overrides})


def _kube_config(**overrides) -> InfraKubeConfig:
    return InfraKubeConfig.model_validate(
        {
            "infraAwsStack": "infra-aws/dev",
            "clusterName": "dev",
            "clusterLogTypes": ["api", "audit", "authenticator"],
            **overrides,
        }
    )


class TestPlan:
    @staticmethod
    def test_stack_without_references_opens_none():
        registry = StackReferenceRegistry(InMemoryOutputSource())
        stack_plan = StackComposer(registry).plan(InfraAws(), _aws_config())
        assert registry.opened == ()
        assert stack_plan.committable
        assert stack_plan.plan["infra-aws"].type_token == tokens.STACK_ROOT

    @staticmethod
    def test_every_resource_sits_under_the_stack_root():
        stack_plan = StackComposer(StackReferenceRegistry(InMemoryOutputSource())).plan(
            InfraAws(), _aws_config()
        )
        plan = stack_plan.plan
        assert plan.creation_order[0] == "infra-aws"
        assert set(plan.descendants("infra-aws")) == set(plan.creation_order[1:])

    @staticmethod
    def test_missing_upstream_stack():
        composer = StackComposer(StackReferenceRegistry(InMemoryOutputSource()))
        with pytest.raises(ReferenceNotFoundError, match="organization/infra-aws/dev"):
            composer.plan(InfraKube(), _kube_config())

    @staticmethod
    def test_mandatory_violation_blocks_commit(run):
        source = InMemoryOutputSource({_INFRA_AWS: {}})
        composer = StackComposer(StackReferenceRegistry(source))
        stack_plan = composer.plan(InfraKube(), _kube_config(clusterLogTypes=[]))
        assert not stack_plan.committable
        provisioner = RecordingProvisioner()
        with pytest.raises(MandatoryPolicyViolationError, match="eks-cluster-logging-enabled"):
            run(composer.commit(stack_plan, Orchestrator(provisioner)))
        assert provisioner.inputs == {}

    @staticmethod
    def test_operator_can_downgrade_a_policy():
        source = InMemoryOutputSource({_INFRA_AWS: {}})
        composer = StackComposer(StackReferenceRegistry(source))
        stack_plan = composer.plan(
            InfraKube(),
            _kube_config(
                clusterLogTypes=[],
                policyEnforcement={"eks-cluster-logging-enabled": "advisory"},
            ),
        )
        assert stack_plan.committable


class TestCommit:
    @staticmethod
    def test_reference_chain_carries_vpc_id(run):
        source = InMemoryOutputSource()
        registry = StackReferenceRegistry(source)
        composer = StackComposer(registry)

        aws_plan = composer.plan(InfraAws(), _aws_config())
        aws_provisioner = RecordingProvisioner(
            {
                "dev-vpc": {
                    "vpcId": "vpc-123",
                    "privateSubnetIds": ["subnet-a", "subnet-b"],
                    "publicSubnetIds": ["subnet-c"],
                }
            }
        )
        aws_result = run(composer.commit(aws_plan, Orchestrator(aws_provisioner)))
        assert aws_result.summary.succeeded
        assert aws_result.outputs["vpcId"] == "vpc-123"
        assert aws_result.outputs["instanceRoleArn"] == "arn:aws:::dev-instance-role"
        source.publish(_INFRA_AWS, aws_result.outputs)

        kube_plan = composer.plan(InfraKube(), _kube_config())
        kube_provisioner = RecordingProvisioner({"dev": _CLUSTER_OUTPUTS})
        kube_result = run(composer.commit(kube_plan, Orchestrator(kube_provisioner)))
        assert kube_result.summary.succeeded
        assert kube_provisioner.inputs["dev"]["vpcId"] == "vpc-123"
        assert kube_provisioner.inputs["dev"]["privateSubnetIds"] == ["subnet-a", "subnet-b"]
        assert kube_result.outputs["eksOIDC"] == "oidc.eks.us-east-1.amazonaws.com/id/X"
        assert kube_result.outputs["clusterSecurityGroupId"] == "sg-1"
        assert isinstance(kube_result.outputs["kubeconfig"], values.Secret)
        assert registry.opened == (_INFRA_AWS,)

    @staticmethod
    def test_auto_tags_reach_the_provisioner(run):
        composer = StackComposer(StackReferenceRegistry(InMemoryOutputSource()))
        stack_plan = composer.plan(
            InfraAws(), _aws_config(autoTags={"Environment": "dev", "Name": "ignored"})
        )
        provisioner = RecordingProvisioner(
            {"dev-vpc": {"vpcId": "v", "privateSubnetIds": [], "publicSubnetIds": []}}
        )
        run(composer.commit(stack_plan, Orchestrator(provisioner)))
        assert provisioner.inputs["dev-vpc"]["tags"] == {"Name": "dev-vpc", "Environment": "dev"}
        assert provisioner.inputs["dev-instance-role"]["tags"]["Environment"] == "dev"

    @staticmethod
    def test_failed_run_publishes_nothing(run):
        composer = StackComposer(StackReferenceRegistry(InMemoryOutputSource()))
        stack_plan = composer.plan(InfraAws(), _aws_config())
        provisioner = RecordingProvisioner(
            {"dev-vpc": {"vpcId": "v", "privateSubnetIds": [], "publicSubnetIds": []}}
        )
        provisioner.failing = {"dev-instance-role"}
        result = run(composer.commit(stack_plan, Orchestrator(provisioner)))
        assert not result.summary.succeeded
        assert result.outputs == {}


class TestStackOrder:
    @staticmethod
    def test_layers_deploy_bottom_up():
        order = stack_order(STACKS.values())
        assert order == ["infra-aws", "infra-gcp", "infra-kube", "ci-support", "mon-log", "sql", "api"]

    @staticmethod
    def test_requirements_outside_the_set_are_ignored():
        assert stack_order([STACKS["api"], STACKS["mon-log"]]) == ["api", "mon-log"]


class TestBlastRadius:
    @staticmethod
    def test_related_stacks_within_limits():
        result = blast_radius({"infra-aws": 20, "infra-kube": 15, "api": 25})
        assert all(radius.ok for radius in result.values())
        assert result["api"].share == pytest.approx(25 / 60)

    @staticmethod
    def test_oversized_stack_is_flagged():
        result = blast_radius({"big": 60, "small": 10})
        assert not result["big"].within_count
        assert not result["big"].within_share
        assert result["small"].ok
