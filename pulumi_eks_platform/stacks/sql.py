"""PostgreSQL on RDS inside the platform VPC."""

from __future__ import annotations

from ..config.models import SqlConfig
from ..core import tokens, values
from ..core.outputs import OutputKind, OutputSpec, StackContract
from .base import MicroStack, StackContext

POSTGRES_PORT = 5432
DB_NAME = "tfmdb"
DB_USERNAME = "tfmdb"
# gp3 only accepts a provisioned IOPS value from this size up
GP3_IOPS_MIN_STORAGE = 400
LOW_STORAGE_BYTES = 10 * 1024**3

CONTRACT = StackContract(
    stack="sql",
    version=1,
    outputs=(
        OutputSpec("dbName", OutputKind.STRING),
        OutputSpec("rdsEndpoint", OutputKind.STRING),
        OutputSpec("rdsAddress", OutputKind.STRING),
        OutputSpec("rdsPort", OutputKind.INT),
        OutputSpec("rdsDbName", OutputKind.STRING),
        OutputSpec("rdsArn", OutputKind.STRING),
        OutputSpec("rdsAvailabilityZone", OutputKind.STRING),
        OutputSpec("dbPassword", OutputKind.SEALED),
    ),
)


def parameter_group_family(engine_version: str) -> str:
    return f"postgres{engine_version.split('.')[0]}"


class Sql(MicroStack):
    name = "sql"
    config_model = SqlConfig
    contract = CONTRACT
    requires = ("infra-aws",)

    def upstream(self, config: SqlConfig) -> dict[str, str]:
        return {"infra-aws": config.infra_stack_ref}

    def compose(self, ctx: StackContext, config: SqlConfig) -> None:
        name = config.db_name

        security_group = ctx.declare(
            f"{name}-rds-sg",
            tokens.EC2_SECURITY_GROUP,
            {
                "name": f"{name}-rds-sg",
                "description": "Security group for RDS PostgreSQL",
                "vpcId": ctx.upstream_output("infra-aws", "vpcId"),
                "ingress": [
                    {
                        "description": "PostgreSQL from VPC",
                        "fromPort": POSTGRES_PORT,
                        "toPort": POSTGRES_PORT,
                        "protocol": "tcp",
                        "cidrBlocks": [ctx.upstream_output("infra-aws", "vpcCidr")],
                    }
                ],
                "egress": [
                    {"fromPort": 0, "toPort": 0, "protocol": "-1", "cidrBlocks": ["0.0.0.0/0"]}
                ],
                "tags": {"Name": f"{name}-rds-sg"},
            },
        )
        subnet_group = ctx.declare(
            f"{name}-rds-subnets",
            tokens.RDS_SUBNET_GROUP,
            {
                "name": f"{name}-rds-subnets",
                "description": f"Subnet group for {name} RDS instance",
                "subnetIds": ctx.upstream_output("infra-aws", "privateSubnetIds"),
                "tags": {"Name": f"{name}-rds-subnets"},
            },
        )
        parameter_group = ctx.declare(
            f"{name}-pg-params",
            tokens.RDS_PARAMETER_GROUP,
            {
                "name": f"{name}-pg-params",
                "family": parameter_group_family(config.db_engine_version),
                "description": f"Parameter group for {name}",
                "parameters": [
                    {"name": "log_connections", "value": "1"},
                    {"name": "log_disconnections", "value": "1"},
                ],
                "tags": {"Name": f"{name}-pg-params"},
            },
        )

        inputs = {
            "identifier": name,
            "allocatedStorage": config.db_storage,
            "maxAllocatedStorage": config.db_storage * 2,
            "allowMajorVersionUpgrade": False,
            "autoMinorVersionUpgrade": True,
            "backupRetentionPeriod": config.backup_retention,
            "backupWindow": "03:00-04:00",
            "maintenanceWindow": "Mon:04:00-Mon:05:00",
            "engine": "postgres",
            "engineVersion": config.db_engine_version,
            "instanceClass": config.db_instance_type,
            "dbName": DB_NAME,
            "username": DB_USERNAME,
            "password": values.seal(config.db_password),
            "parameterGroupName": ctx.output(parameter_group, "name"),
            "applyImmediately": True,
            "storageEncrypted": True,
            "storageType": "gp3",
            "vpcSecurityGroupIds": [ctx.output(security_group, "id")],
            "dbSubnetGroupName": ctx.output(subnet_group, "name"),
            "publiclyAccessible": False,
            "multiAz": config.multi_az,
            "deletionProtection": config.deletion_protection,
            "skipFinalSnapshot": True,
            "finalSnapshotIdentifier": f"{name}-final-snapshot",
            "copyTagsToSnapshot": True,
            "enabledCloudwatchLogsExports": ["postgresql", "upgrade"],
            "performanceInsightsEnabled": True,
            "performanceInsightsRetentionPeriod": 7,
            "tags": {"Name": name, "Environment": config.environment},
        }
        # A Multi-AZ instance picks its own zones
        if not config.multi_az:
            inputs["availabilityZone"] = config.zone
        if config.db_storage >= GP3_IOPS_MIN_STORAGE:
            inputs["iops"] = 3000
        instance = ctx.declare(f"{name}-rds", tokens.RDS_INSTANCE, inputs)

        identifier = ctx.output(instance, "identifier")
        alarms = {
            "cpu": ("high-cpu", "GreaterThanThreshold", "CPUUtilization", 80, "CPU utilization is high"),
            "storage": (
                "low-storage",
                "LessThanThreshold",
                "FreeStorageSpace",
                LOW_STORAGE_BYTES,
                "Free storage space is low",
            ),
        }
        for key, (suffix, operator, metric, threshold, description) in alarms.items():
            ctx.declare(
                f"{name}-{key}-alarm",
                tokens.CLOUDWATCH_METRIC_ALARM,
                {
                    "name": f"{name}-rds-{suffix}",
                    "comparisonOperator": operator,
                    "evaluationPeriods": 2,
                    "metricName": metric,
                    "namespace": "AWS/RDS",
                    "period": 300,
                    "statistic": "Average",
                    "threshold": threshold,
                    "alarmDescription": f"{description} for {name}",
                    "dimensions": {"DBInstanceIdentifier": identifier},
                    "tags": {"Name": f"{name}-{key}-alarm"},
                },
            )

        ctx.publish("dbName", name)
        ctx.publish("rdsEndpoint", ctx.output(instance, "endpoint"))
        ctx.publish("rdsAddress", ctx.output(instance, "address"))
        ctx.publish("rdsPort", ctx.output(instance, "port"))
        ctx.publish("rdsDbName", ctx.output(instance, "dbName"))
        ctx.publish("rdsArn", ctx.output(instance, "arn"))
        ctx.publish("rdsAvailabilityZone", ctx.output(instance, "availabilityZone"))
        ctx.publish("dbPassword", config.db_password)
