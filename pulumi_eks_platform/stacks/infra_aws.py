"""Network foundation on AWS: VPC, optional flow logs and the node role."""

from __future__ import annotations

from ..config.models import InfraAwsConfig
from ..config.node_pools import EKS_NODE_POLICIES
from ..core import tokens
from ..core.outputs import OutputKind, OutputSpec, StackContract
from .base import MicroStack, StackContext
from .irsa import policy_document, service_principal_policy

CONTRACT = StackContract(
    stack="infra-aws",
    version=1,
    outputs=(
        OutputSpec("environment", OutputKind.STRING),
        OutputSpec("clusterName", OutputKind.STRING),
        OutputSpec("awsRegion", OutputKind.STRING),
        OutputSpec("vpcId", OutputKind.STRING),
        OutputSpec("vpcCidr", OutputKind.STRING),
        OutputSpec("privateSubnetIds", OutputKind.STRING_LIST),
        OutputSpec("publicSubnetIds", OutputKind.STRING_LIST),
        OutputSpec("instanceRoleName", OutputKind.STRING),
        OutputSpec("instanceRoleArn", OutputKind.STRING),
        OutputSpec("enableFlowLogs", OutputKind.BOOL),
        OutputSpec("flowLogGroupName", OutputKind.STRING, optional=True),
    ),
)


class InfraAws(MicroStack):
    name = "infra-aws"
    config_model = InfraAwsConfig
    contract = CONTRACT

    def compose(self, ctx: StackContext, config: InfraAwsConfig) -> None:
        vpc = ctx.declare(
            config.vpc_name,
            tokens.AWSX_VPC,
            {
                "cidrBlock": config.vpc_cidr,
                "numberOfAvailabilityZones": 3,
                "natGateways": {"strategy": "Single"},
                "enableDnsHostnames": True,
                "tags": {"Name": config.vpc_name},
            },
        )

        if config.enable_flow_logs:
            self._flow_logs(ctx, config, vpc)

        role_name = f"{config.cluster_name}-instance-role"
        instance_role = ctx.declare(
            role_name,
            tokens.IAM_ROLE,
            {
                "name": role_name,
                "assumeRolePolicy": service_principal_policy("ec2.amazonaws.com"),
            },
        )
        for index, policy_arn in enumerate(EKS_NODE_POLICIES):
            ctx.declare(
                f"{role_name}-policy-{index}",
                tokens.IAM_ROLE_POLICY_ATTACHMENT,
                {"role": role_name, "policyArn": policy_arn},
                depends_on=[instance_role],
            )

        ctx.publish("environment", config.environment)
        ctx.publish("clusterName", config.cluster_name)
        ctx.publish("awsRegion", config.aws_region)
        ctx.publish("vpcId", ctx.output(vpc, "vpcId"))
        ctx.publish("vpcCidr", config.vpc_cidr)
        ctx.publish("privateSubnetIds", ctx.output(vpc, "privateSubnetIds"))
        ctx.publish("publicSubnetIds", ctx.output(vpc, "publicSubnetIds"))
        ctx.publish("instanceRoleName", role_name)
        ctx.publish("instanceRoleArn", ctx.output(instance_role, "arn"))
        ctx.publish("enableFlowLogs", config.enable_flow_logs)

    @staticmethod
    def _flow_logs(ctx: StackContext, config: InfraAwsConfig, vpc) -> None:
        group_name = f"{config.vpc_name}-flow-logs"
        log_group = ctx.declare(
            group_name,
            tokens.CLOUDWATCH_LOG_GROUP,
            {
                "name": group_name,
                "retentionInDays": config.flow_log_retention,
                "tags": {"VpcName": config.vpc_name, "ClusterName": config.cluster_name},
            },
        )
        role = ctx.declare(
            f"{group_name}-role",
            tokens.IAM_ROLE,
            {
                "name": f"{group_name}-role",
                "assumeRolePolicy": service_principal_policy("vpc-flow-logs.amazonaws.com"),
            },
        )
        ctx.declare(
            f"{group_name}-policy",
            tokens.IAM_ROLE_POLICY,
            {
                "name": f"{group_name}-policy",
                "role": f"{group_name}-role",
                "policy": policy_document(
                    [
                        {
                            "Effect": "Allow",
                            "Action": [
                                "logs:CreateLogStream",
                                "logs:PutLogEvents",
                                "logs:DescribeLogGroups",
                                "logs:DescribeLogStreams",
                            ],
                            "Resource": ctx.output(log_group, "arn"),
                        }
                    ]
                ),
            },
            depends_on=[role],
        )
        ctx.declare(
            group_name.replace("-logs", "-log"),
            tokens.EC2_FLOW_LOG,
            {
                "iamRoleArn": ctx.output(role, "arn"),
                "logDestination": ctx.output(log_group, "arn"),
                "trafficType": "ALL",
                "vpcId": ctx.output(vpc, "vpcId"),
            },
        )
        ctx.publish("flowLogGroupName", group_name)
