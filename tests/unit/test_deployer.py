from __future__ import annotations

from types import SimpleNamespace

import pulumi.automation as auto
import pytest

from pulumi_eks_platform.core import tokens
from pulumi_eks_platform.core.orchestrator import ResourceState, RetryPolicy
from pulumi_eks_platform.core.values import Secret
from pulumi_eks_platform.errors import TerminalMaterialisationError, TransientMaterialisationError
from pulumi_eks_platform.stacks import deployer
from pulumi_eks_platform.stacks.deployer import AutomationStackProvisioner, StackDeployer


class StackRecorder:
    def __init__(self, failing=()):
        self.calls: list[tuple[str, str]] = []
        self.failing = set(failing)

    async def create(self, name, type_token, inputs):
        assert type_token == tokens.PULUMI_STACK
        self.calls.append(("up", name))
        if name in self.failing:
            raise TerminalMaterialisationError(f"{name} failed", resource=name)
        return {"project": inputs["project"]}

    async def update(self, name, type_token, inputs, outputs):
        return outputs

    async def delete(self, name, type_token, outputs):
        self.calls.append(("destroy", name))


class FakeStack:
    def __init__(self, outputs=None, error=None):
        self.config: dict[str, auto.ConfigValue] = {}
        self.outputs = outputs or {}
        self.error = error
        self.destroyed = False

    def set_config(self, key, value):
        self.config[key] = value

    def up(self, on_output=None):
        if self.error is not None:
            raise self.error
        return SimpleNamespace(outputs=self.outputs)

    def destroy(self, on_output=None):
        if self.error is not None:
            raise self.error
        self.destroyed = True


@pytest.fixture
def select(monkeypatch):
    stacks: dict[str, FakeStack] = {}

    def create_or_select_stack(stack_name, work_dir, opts):
        return stacks.setdefault(work_dir, FakeStack())

    monkeypatch.setattr(deployer.auto, "create_or_select_stack", create_or_select_stack)
    return stacks


def _command_result(stderr: str) -> auto.CommandResult:
    return auto.CommandResult(stdout="", stderr=stderr, code=255)


class TestStackDeployer:
    @staticmethod
    def test_plan_follows_requirements():
        plan = StackDeployer.plan(["api", "sql", "infra-kube", "infra-aws"])
        assert plan.creation_order == ("infra-aws", "infra-kube", "sql", "api")
        assert plan.dependencies("api") == frozenset({"infra-kube", "sql"})

    @staticmethod
    def test_requirements_outside_the_selection_are_assumed_deployed():
        plan = StackDeployer.plan(["mon-log"])
        assert plan.dependencies("mon-log") == frozenset()

    @staticmethod
    def test_deploy_in_order(run):
        recorder = StackRecorder()
        summary = run(StackDeployer(recorder, parallelism=1).deploy(["mon-log", "infra-kube", "infra-aws"]))
        assert summary.succeeded
        assert recorder.calls == [("up", "infra-aws"), ("up", "infra-kube"), ("up", "mon-log")]

    @staticmethod
    def test_failed_stack_blocks_the_layers_above(run):
        recorder = StackRecorder(failing={"infra-kube"})
        summary = run(StackDeployer(recorder).deploy(["infra-aws", "infra-kube", "api", "infra-gcp"]))
        assert summary.states["infra-kube"] == ResourceState.FAILED
        assert summary.states["api"] == ResourceState.PENDING
        assert summary.states["infra-gcp"] == ResourceState.CREATED
        assert ("up", "api") not in recorder.calls

    @staticmethod
    def test_destroy_in_reverse(run):
        recorder = StackRecorder()
        summary = run(StackDeployer(recorder).destroy(["infra-aws", "infra-kube", "sql"]))
        assert summary.succeeded
        destroyed = [name for _, name in recorder.calls]
        assert destroyed.index("infra-kube") < destroyed.index("infra-aws")
        assert destroyed.index("sql") < destroyed.index("infra-aws")

    @staticmethod
    def test_default_retry_backs_off_for_minutes():
        retry = StackDeployer(StackRecorder()).orchestrator.retry
        assert isinstance(retry, RetryPolicy)
        assert retry.delay(1) == 30.0


class TestAutomationStackProvisioner:
    @staticmethod
    def test_config_and_outputs(run, select, tmp_path):
        provisioner = AutomationStackProvisioner(
            tmp_path, "dev", config={"sql": {"dbName": "app", "dbPassword": Secret("hunter2")}}
        )
        stack = select.setdefault(
            str(tmp_path / "sql"),
            FakeStack(
                outputs={
                    "rdsAddress": auto.OutputValue("db.internal", False),
                    "dbPassword": auto.OutputValue("hunter2", True),
                }
            ),
        )
        outputs = run(provisioner.create("sql", tokens.PULUMI_STACK, {"project": "sql"}))
        assert outputs["rdsAddress"] == "db.internal"
        assert outputs["dbPassword"] == Secret("hunter2")
        assert stack.config["dbPassword"].secret
        assert stack.config["dbPassword"].value == "hunter2"
        assert not stack.config["dbName"].secret

    @staticmethod
    def test_concurrent_update_is_transient(run, select, tmp_path):
        select[str(tmp_path / "api")] = FakeStack(
            error=auto.ConcurrentUpdateError(_command_result("conflict: another update is in progress"))
        )
        provisioner = AutomationStackProvisioner(tmp_path, "dev")
        with pytest.raises(TransientMaterialisationError):
            run(provisioner.create("api", tokens.PULUMI_STACK, {}))

    @staticmethod
    def test_command_error_is_terminal(run, select, tmp_path):
        select[str(tmp_path / "api")] = FakeStack(error=auto.CommandError(_command_result("error: boom")))
        provisioner = AutomationStackProvisioner(tmp_path, "dev")
        with pytest.raises(TerminalMaterialisationError):
            run(provisioner.delete("api", tokens.PULUMI_STACK, {}))
