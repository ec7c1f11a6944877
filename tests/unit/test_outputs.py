from __future__ import annotations

import pulumi.automation as auto
import pytest

from pulumi_eks_platform.core import references, values
from pulumi_eks_platform.core.outputs import OutputKind, OutputPublisher, OutputSpec, StackContract
from pulumi_eks_platform.core.references import (
    AutomationOutputSource,
    DeferredOutputSource,
    InMemoryOutputSource,
    StackPointer,
    StackReferenceRegistry,
)
from pulumi_eks_platform.core.report import RunReport
from pulumi_eks_platform.errors import (
    ConfigMissingError,
    ContractBreakError,
    DuplicateOutputError,
    OutputMissingError,
    ReferenceNotFoundError,
    SecretLeakError,
    TerminalMaterialisationError,
)

CONTRACT = StackContract(
    stack="sql",
    version=2,
    outputs=(
        OutputSpec("rdsAddress", OutputKind.STRING),
        OutputSpec("rdsPort", OutputKind.INT),
        OutputSpec("dbPassword", OutputKind.SEALED),
        OutputSpec("alarmNames", OutputKind.STRING_LIST, optional=True),
    ),
)


class _Resolution:
    def __init__(self, outputs):
        self.outputs = outputs

    def output(self, resource, attribute):
        return self.outputs[resource][attribute]

    def resource(self, resource):
        return self.outputs[resource]

    def reference(self, pointer, key):
        raise AssertionError("no references expected")


class TestContract:
    @staticmethod
    def test_duplicate_names_rejected():
        with pytest.raises(ValueError):
            StackContract("x", 1, (OutputSpec("a", OutputKind.STRING), OutputSpec("a", OutputKind.INT)))

    @staticmethod
    def test_removing_an_output_needs_a_version_bump():
        trimmed = StackContract("sql", 2, CONTRACT.outputs[:2])
        with pytest.raises(ContractBreakError, match="dbPassword"):
            trimmed.check_compatible(CONTRACT)
        StackContract("sql", 3, CONTRACT.outputs[:2]).check_compatible(CONTRACT)

    @staticmethod
    def test_retyping_an_output_needs_a_version_bump():
        retyped = StackContract(
            "sql", 2, (OutputSpec("rdsAddress", OutputKind.STRING), OutputSpec("rdsPort", OutputKind.STRING), *CONTRACT.outputs[2:])
        )
        with pytest.raises(ContractBreakError, match="rdsPort"):
            retyped.check_compatible(CONTRACT)

    @staticmethod
    def test_version_cannot_go_back():
        with pytest.raises(ContractBreakError):
            StackContract("sql", 1, CONTRACT.outputs).check_compatible(CONTRACT)


class TestPublisher:
    @staticmethod
    def test_unknown_and_duplicate_outputs():
        publisher = OutputPublisher(CONTRACT)
        with pytest.raises(ContractBreakError):
            publisher.publish("endpoint", "x")
        publisher.publish("rdsAddress", "db.internal")
        with pytest.raises(DuplicateOutputError):
            publisher.publish("rdsAddress", "db.internal")

    @staticmethod
    def test_secrets_only_reach_sealed_outputs():
        publisher = OutputPublisher(CONTRACT)
        with pytest.raises(SecretLeakError):
            publisher.publish("rdsAddress", values.OutputRef("db", "address", secret=True))
        publisher.publish("dbPassword", "hunter2")
        assert publisher.values["dbPassword"] == values.Secret("hunter2")
        assert "hunter2" not in publisher.to_text()

    @staticmethod
    def test_known_values_are_type_checked():
        publisher = OutputPublisher(CONTRACT)
        with pytest.raises(ContractBreakError, match="int"):
            publisher.publish("rdsPort", "5432")
        with pytest.raises(ContractBreakError):
            publisher.publish("rdsPort", True)

    @staticmethod
    def test_required_outputs_must_be_published():
        publisher = OutputPublisher(CONTRACT)
        publisher.publish("rdsAddress", "db.internal")
        assert publisher.missing() == ["dbPassword", "rdsPort"]
        with pytest.raises(ContractBreakError, match="dbPassword, rdsPort"):
            publisher.check_complete()

    @staticmethod
    def test_resolve_after_materialisation():
        publisher = OutputPublisher(CONTRACT)
        publisher.publish("rdsAddress", values.OutputRef("db", "address"))
        publisher.publish("rdsPort", values.OutputRef("db", "port"))
        publisher.publish("dbPassword", values.Secret("hunter2"))
        resolved = publisher.resolve(_Resolution({"db": {"address": "db.internal", "port": 5432}}))
        assert resolved == {"rdsAddress": "db.internal", "rdsPort": 5432, "dbPassword": values.Secret("hunter2")}

    @staticmethod
    def test_resolved_values_are_type_checked():
        publisher = OutputPublisher(CONTRACT)
        publisher.publish("rdsPort", values.OutputRef("db", "port"))
        with pytest.raises(ContractBreakError):
            publisher.resolve(_Resolution({"db": {"port": "5432"}}))


class TestReferences:
    @staticmethod
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("infra-aws/dev", StackPointer("organization", "infra-aws", "dev")),
            ("acme/infra-aws/prod", StackPointer("acme", "infra-aws", "prod")),
        ],
    )
    def test_parse(value, expected):
        assert StackPointer.parse(value) == expected
        assert str(StackPointer.parse(value)) == str(expected)

    @staticmethod
    @pytest.mark.parametrize("value", ["dev", "a/b/c/d", "a//c"])
    def test_parse_rejects_malformed(value):
        with pytest.raises(ValueError):
            StackPointer.parse(value)

    @staticmethod
    def test_each_stack_is_opened_once():
        fetched = []

        class CountingSource(InMemoryOutputSource):
            def fetch(self, pointer):
                fetched.append(pointer)
                return super().fetch(pointer)

        pointer = StackPointer.parse("infra-aws/dev")
        registry = StackReferenceRegistry(CountingSource({pointer: {"vpcId": "vpc-1"}}))
        handle = registry.open_reference("infra-aws/dev")
        assert registry.open_reference(pointer) == handle
        assert fetched == [pointer]
        assert registry.get_output(handle, "vpcId") == values.ReferenceOutput(pointer, "vpcId")
        assert registry.lookup(pointer, "vpcId") == "vpc-1"

    @staticmethod
    def test_missing_stack_and_output():
        pointer = StackPointer.parse("infra-aws/dev")
        registry = StackReferenceRegistry(InMemoryOutputSource({pointer: {}}))
        with pytest.raises(ReferenceNotFoundError, match="has not been materialised"):
            registry.open_reference("sql/dev")
        with pytest.raises(OutputMissingError, match="does not export 'vpcId'"):
            registry.lookup(pointer, "vpcId")

    @staticmethod
    def test_deferred_source_accepts_every_pointer():
        registry = StackReferenceRegistry(DeferredOutputSource())
        assert registry.open_reference("anything/dev").deferred

    @staticmethod
    def test_automation_source_reads_backend_outputs(monkeypatch):
        class BackendStack:
            def info(self):
                return object()

            def outputs(self):
                return {
                    "vpcId": auto.OutputValue("vpc-1", False),
                    "kubeconfig": auto.OutputValue("{}", True),
                }

        selected = []

        def select_stack(stack_name, project_name, program, opts):
            selected.append((stack_name, project_name))
            if project_name == "sql":
                raise auto.StackNotFoundError(auto.CommandResult(stdout="", stderr="no stack", code=255))
            return BackendStack()

        monkeypatch.setattr(references.auto, "select_stack", select_stack)
        source = AutomationOutputSource()
        outputs = source.fetch(StackPointer.parse("acme/infra-kube/dev"))
        assert outputs == {"vpcId": "vpc-1", "kubeconfig": values.Secret("{}")}
        assert selected == [("acme/infra-kube/dev", "infra-kube")]
        assert source.fetch(StackPointer.parse("acme/sql/dev")) is None


class TestRunReport:
    @staticmethod
    def test_collects_errors():
        report = RunReport("sql")
        assert report.ok
        assert "no errors" in report.to_text()
        report.add_error(ConfigMissingError("dbPassword"))
        report.add_error(TerminalMaterialisationError("AccessDenied", resource="app-rds"))
        assert not report.ok
        assert report.to_dict()["entries"][0] == {
            "stage": "config",
            "kind": "config-missing",
            "message": "Missing required configuration key 'dbPassword'",
        }
        assert "[app-rds]" in report.to_text()
