from __future__ import annotations

import pulumi.automation as auto
import pytest

from tests.integration.conftest import micro_stack_factory

pytestmark = pytest.mark.integration


class TestInfraAws:
    @staticmethod
    def test_creates_vpc_and_node_role(ec2_client, iam_client):
        with micro_stack_factory() as create_stack:
            stack = create_stack("infra-aws", {"clusterName": "it", "vpcCidr": "10.42.0.0/16"})
            result = stack.up(on_output=None)

            vpc_id = result.outputs["vpcId"].value
            vpcs = ec2_client.describe_vpcs(VpcIds=[vpc_id])["Vpcs"]
            assert vpcs[0]["CidrBlock"] == "10.42.0.0/16"

            private_subnets = result.outputs["privateSubnetIds"].value
            subnets = ec2_client.describe_subnets(SubnetIds=private_subnets)["Subnets"]
            assert {subnet["VpcId"] for subnet in subnets} == {vpc_id}

            assert result.outputs["instanceRoleName"].value == "it-instance-role"
            role = iam_client.get_role(RoleName="it-instance-role")["Role"]
            statement = role["AssumeRolePolicyDocument"]["Statement"][0]
            assert statement["Principal"] == {"Service": "ec2.amazonaws.com"}


class TestPolicyGate:
    @staticmethod
    def test_mandatory_violation_fails_before_registration():
        with micro_stack_factory() as create_stack:
            stack = create_stack(
                "infra-kube",
                {"infraAwsStack": "organization/infra-aws/missing", "clusterName": "it"},
            )
            with pytest.raises(auto.CommandError, match="eks-cluster-logging-enabled"):
                stack.up(on_output=None)
