from __future__ import annotations

import os
import tempfile
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

import boto3
import pulumi.automation as auto
import pytest
from testcontainers.localstack import LocalStackContainer

from pulumi_eks_platform.runtime import run_stack

AWS_REGION = "us-east-1"
AWS_ACCESS_KEY_ID = "test"
AWS_SECRET_ACCESS_KEY = "test"
PULUMI_PROJECT_NAME = "pulumi-eks-platform-integration-tests"
LOCALSTACK_SERVICES = ("ec2", "iam", "sts", "logs")

# Provider settings LocalStack needs on every stack
AWS_PROVIDER_CONFIG = {
    "aws:region": AWS_REGION,
    "aws:accessKey": AWS_ACCESS_KEY_ID,
    "aws:secretKey": AWS_SECRET_ACCESS_KEY,
    "aws:skipCredentialsValidation": "true",
    "aws:skipMetadataApiCheck": "true",
    "aws:skipRequestingAccountId": "true",
}


@pytest.fixture(scope="session", autouse=True)
def localstack_container() -> Iterator[LocalStackContainer]:
    with LocalStackContainer("localstack/localstack:latest").with_services(
        *LOCALSTACK_SERVICES
    ) as localstack:
        yield localstack


@pytest.fixture(scope="session")
def localstack_endpoint(localstack_container: LocalStackContainer) -> str:
    return localstack_container.get_url()


@pytest.fixture(scope="session")
def aws_client(localstack_endpoint: str) -> Callable[[str], object]:
    def _client(service: str):
        return boto3.client(
            service,
            endpoint_url=localstack_endpoint,
            region_name=AWS_REGION,
            aws_access_key_id=AWS_ACCESS_KEY_ID,
            aws_secret_access_key=AWS_SECRET_ACCESS_KEY,
        )

    return _client


@pytest.fixture(scope="session")
def ec2_client(aws_client):
    return aws_client("ec2")


@pytest.fixture(scope="session")
def iam_client(aws_client):
    return aws_client("iam")


@pytest.fixture(scope="session", autouse=True)
def localstack_env(localstack_endpoint: str) -> Iterator[None]:
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("AWS_ACCESS_KEY_ID", AWS_ACCESS_KEY_ID)
        mp.setenv("AWS_SECRET_ACCESS_KEY", AWS_SECRET_ACCESS_KEY)
        mp.setenv("AWS_REGION", AWS_REGION)
        mp.setenv("AWS_DEFAULT_REGION", AWS_REGION)
        mp.setenv("AWS_ENDPOINT_URL", localstack_endpoint)
        mp.setenv("PULUMI_CONFIG_PASSPHRASE", "localstack")
        mp.setenv("PULUMI_SKIP_UPDATE_CHECK", "true")
        yield


def stack_config(**values: str) -> dict[str, str]:
    """Namespace micro-stack configuration keys under the test project."""
    return {f"{PULUMI_PROJECT_NAME}:{key}": value for key, value in values.items()}


@contextmanager
def micro_stack_factory():
    """Create throwaway stacks that run a micro-stack program on a file backend.

    Every stack created through the factory is destroyed and removed on exit.
    """
    with tempfile.TemporaryDirectory() as temp_dir:
        tmp_path = Path(temp_dir)
        backend_dir = tmp_path / "pulumi-backend"
        backend_dir.mkdir(parents=True, exist_ok=True)
        pulumi_home = tmp_path / "pulumi-home"
        pulumi_home.mkdir(parents=True, exist_ok=True)
        env_vars = {
            **os.environ.copy(),
            "PULUMI_BACKEND_URL": f"file://{backend_dir}",
            "PULUMI_HOME": str(pulumi_home),
        }

        created_stacks: list[auto.Stack] = []

        def _create_stack(micro_stack: str, config: dict[str, str] | None = None) -> auto.Stack:
            stack = auto.create_or_select_stack(
                stack_name=f"{micro_stack}-{uuid.uuid4().hex[:8]}",
                project_name=PULUMI_PROJECT_NAME,
                program=lambda: run_stack(micro_stack),
                opts=auto.LocalWorkspaceOptions(env_vars=env_vars),
            )
            for key, value in {**AWS_PROVIDER_CONFIG, **stack_config(**(config or {}))}.items():
                stack.set_config(key, auto.ConfigValue(value=value))

            created_stacks.append(stack)
            return stack

        try:
            yield _create_stack
        finally:
            for stack in created_stacks:
                try:
                    stack.destroy(on_output=None)
                finally:
                    stack.workspace.remove_stack(stack.name)
