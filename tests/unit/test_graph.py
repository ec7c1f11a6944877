from __future__ import annotations

import pytest

from pulumi_eks_platform.core import tokens, values
from pulumi_eks_platform.core.graph import ResourceGraph, topological_order
from pulumi_eks_platform.core.resource import ResourceDeclaration, validate_type_token
from pulumi_eks_platform.errors import (
    ComponentScopeError,
    CycleDetectedError,
    DuplicateResourceNameError,
    UnknownDependencyError,
)


def _graph() -> ResourceGraph:
    return ResourceGraph("test")


class TestTypeTokens:
    @staticmethod
    @pytest.mark.parametrize("token", ["aws:ec2/vpc:Vpc", "pulumi:providers:aws", tokens.STACK_ROOT])
    def test_accepts_three_part_tokens(token):
        assert validate_type_token(token) == token

    @staticmethod
    @pytest.mark.parametrize("token", ["aws:ec2/vpc", "", "aws::Vpc", "a b:c:d"])
    def test_rejects_malformed_tokens(token):
        with pytest.raises(ValueError):
            validate_type_token(token)

    @staticmethod
    def test_declaration_requires_name():
        with pytest.raises(ValueError):
            ResourceDeclaration("", tokens.IAM_ROLE)


class TestTopologicalOrder:
    @staticmethod
    def test_ties_broken_by_name():
        assert topological_order({"c": [], "b": [], "a": []}) == ["a", "b", "c"]

    @staticmethod
    def test_dependencies_come_first():
        order = topological_order({"app": ["db", "net"], "db": ["net"], "net": []})
        assert order == ["net", "db", "app"]

    @staticmethod
    def test_cycle_names_every_blocked_node():
        with pytest.raises(CycleDetectedError) as exc_info:
            topological_order({"a": ["b"], "b": ["a"], "c": []})
        assert exc_info.value.nodes == ["a", "b"]
        assert exc_info.value.kind == "cycle-detected"


class TestResourceGraph:
    @staticmethod
    def test_duplicate_names_rejected():
        graph = _graph()
        graph.declare("role", tokens.IAM_ROLE)
        with pytest.raises(DuplicateResourceNameError):
            graph.declare("role", tokens.IAM_ROLE)

    @staticmethod
    def test_unknown_dependency_rejected_at_freeze():
        graph = _graph()
        graph.declare("role", tokens.IAM_ROLE, depends_on=["missing"])
        with pytest.raises(UnknownDependencyError):
            graph.freeze()

    @staticmethod
    def test_output_reference_creates_edge():
        graph = _graph()
        vpc = graph.declare("vpc", tokens.AWSX_VPC)
        graph.declare("sg", tokens.EC2_SECURITY_GROUP, {"vpcId": graph.resolve(vpc, "vpcId")})
        plan = graph.freeze()
        assert plan.dependencies("sg") == frozenset({"vpc"})
        assert plan.creation_order == ("vpc", "sg")
        assert plan.requested_outputs["vpc"] == frozenset({"vpcId"})

    @staticmethod
    def test_provider_is_a_dependency():
        graph = _graph()
        provider = graph.declare("k8s", tokens.KUBERNETES_PROVIDER)
        graph.declare("ns", tokens.K8S_NAMESPACE, provider=provider)
        assert graph.freeze().dependencies("ns") == frozenset({"k8s"})

    @staticmethod
    def test_cycle_detected_at_freeze():
        graph = _graph()
        graph.declare("a", tokens.IAM_ROLE, {"x": values.OutputRef("b", "arn")})
        graph.declare("b", tokens.IAM_ROLE, {"x": values.OutputRef("a", "arn")})
        with pytest.raises(CycleDetectedError):
            graph.freeze()

    @staticmethod
    def test_frozen_graph_rejects_new_declarations():
        graph = _graph()
        graph.freeze()
        with pytest.raises(RuntimeError):
            graph.declare("late", tokens.IAM_ROLE)

    @staticmethod
    def test_order_is_stable_across_runs():
        def build():
            graph = _graph()
            net = graph.declare("net", tokens.AWSX_VPC)
            for name in ("zeta", "alpha", "mid"):
                graph.declare(name, tokens.EC2_SECURITY_GROUP, {"vpcId": graph.resolve(net, "vpcId")})
            return graph.freeze().creation_order

        assert build() == build() == ("net", "alpha", "mid", "zeta")


class TestComponents:
    @staticmethod
    def test_closing_an_outer_scope_first_is_rejected():
        graph = _graph()
        outer = graph.component("outer", tokens.CLUSTER_ADDON).__enter__()
        inner = graph.component("inner", tokens.CLUSTER_ADDON).__enter__()
        with pytest.raises(ComponentScopeError, match="outer"):
            outer.__exit__(None, None, None)
        inner.__exit__(None, None, None)
        outer.__exit__(None, None, None)
        assert graph.freeze().children("outer") == ("inner",)

    @staticmethod
    def test_children_are_parented_and_inherit_depends_on():
        graph = _graph()
        cluster = graph.declare("cluster", tokens.EKS_CLUSTER)
        with graph.component("addon", tokens.CLUSTER_ADDON, depends_on=[cluster]) as scope:
            scope.depends_on("cluster")
            graph.declare("release", tokens.HELM_RELEASE)
        plan = graph.freeze()
        assert plan["release"].options.parent == "addon"
        assert "cluster" in plan["release"].options.depends_on
        assert plan.children("addon") == ("release",)

    @staticmethod
    def test_depending_on_component_waits_for_children():
        graph = _graph()
        with graph.component("irsa", tokens.IRSA) as irsa:
            graph.declare("irsa-role", tokens.IAM_ROLE)
            graph.declare("irsa-policy", tokens.IAM_ROLE_POLICY)
        graph.declare("release", tokens.HELM_RELEASE, depends_on=[irsa.handle])
        plan = graph.freeze()
        assert {"irsa", "irsa-role", "irsa-policy"} <= plan.dependencies("release")
        assert plan.creation_order.index("release") > plan.creation_order.index("irsa-policy")

    @staticmethod
    def test_component_records_outbound_dependencies():
        graph = _graph()
        vpc = graph.declare("vpc", tokens.AWSX_VPC)
        with graph.component("db", tokens.CLUSTER_ADDON) as scope:
            graph.declare("sg", tokens.EC2_SECURITY_GROUP, {"vpcId": graph.resolve(vpc, "vpcId")})
        assert scope.component.outbound == frozenset({"vpc"})
        assert scope.component.children == ("sg",)

    @staticmethod
    def test_open_scope_blocks_freeze():
        graph = _graph()
        scope = graph.component("open", tokens.CLUSTER_ADDON)
        scope.__enter__()
        with pytest.raises(RuntimeError):
            graph.freeze()


class TestPlan:
    @staticmethod
    def test_counts_skip_components_and_data():
        graph = _graph()
        with graph.component("root", tokens.STACK_ROOT):
            graph.declare("role", tokens.IAM_ROLE)
            graph.declare("lb", tokens.LOAD_BALANCER_LOOKUP, kind="data")
        plan = graph.freeze()
        assert len(plan) == 3
        assert plan.concrete_count == 1
        assert plan.type_counts()[tokens.IAM_ROLE] == 1
        assert [decl.logical_name for decl in plan.of_type(tokens.IAM_ROLE)] == ["role"]

    @staticmethod
    def test_plan_text_masks_secrets():
        graph = _graph()
        graph.declare("db", tokens.RDS_INSTANCE, {"password": values.Secret("hunter2")})
        text = graph.freeze().to_text()
        assert "hunter2" not in text
        assert values.MASK in text

    @staticmethod
    def test_deletion_order_reverses_creation():
        graph = _graph()
        vpc = graph.declare("vpc", tokens.AWSX_VPC)
        graph.declare("sg", tokens.EC2_SECURITY_GROUP, {"vpcId": graph.resolve(vpc, "vpcId")})
        plan = graph.freeze()
        assert plan.deletion_order == ("sg", "vpc")
