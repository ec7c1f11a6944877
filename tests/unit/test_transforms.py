from __future__ import annotations

import pulumi
import pytest

from pulumi_eks_platform.core import tokens, values
from pulumi_eks_platform.core.graph import ResourceGraph
from pulumi_eks_platform.core.resource import ResourceDeclaration
from pulumi_eks_platform.core.transforms import (
    TransformationPipeline,
    auto_tag_transformation,
    merge_tags,
    to_pulumi_transformation,
)
from pulumi_eks_platform.errors import TransformationError

_VPC = "aws:ec2/vpc:Vpc"
_TAGS = {"Environment": "dev", "Owner": "team-x"}


def _apply(transformation, decl: ResourceDeclaration) -> ResourceDeclaration:
    return TransformationPipeline([transformation]).apply(decl)


class TestAutoTag:
    @staticmethod
    def test_injects_tags_into_taggable_resource():
        transformation = auto_tag_transformation(_TAGS, taggable={_VPC: "tags"})
        decl = _apply(transformation, ResourceDeclaration("main", _VPC, {"tags": {"Name": "main"}}))
        assert decl.inputs["tags"] == {"Name": "main", "Environment": "dev", "Owner": "team-x"}

    @staticmethod
    def test_existing_key_wins():
        transformation = auto_tag_transformation({"Environment": "dev"}, taggable={_VPC: "tags"})
        decl = _apply(
            transformation, ResourceDeclaration("main", _VPC, {"tags": {"Environment": "staging"}})
        )
        assert decl.inputs["tags"]["Environment"] == "staging"

    @staticmethod
    def test_empty_tag_map_leaves_resource_untouched():
        decl = ResourceDeclaration("main", _VPC, {"tags": {"Name": "main"}})
        assert _apply(auto_tag_transformation({}, taggable={_VPC: "tags"}), decl) is decl

    @staticmethod
    def test_non_taggable_token_never_mutated():
        decl = ResourceDeclaration("ns", tokens.K8S_NAMESPACE, {"metadata": {"name": "x"}})
        assert _apply(auto_tag_transformation(_TAGS), decl) is decl

    @staticmethod
    def test_idempotent():
        transformation = auto_tag_transformation(_TAGS, taggable={_VPC: "tags"})
        once = _apply(transformation, ResourceDeclaration("main", _VPC, {"tags": {"Name": "main"}}))
        twice = _apply(transformation, once)
        assert twice.inputs == once.inputs

    @staticmethod
    def test_gcp_labels_attribute():
        transformation = auto_tag_transformation({"env": "dev"})
        decl = _apply(transformation, ResourceDeclaration("gke", tokens.GKE_CLUSTER, {}))
        assert decl.inputs["resourceLabels"] == {"env": "dev"}

    @staticmethod
    def test_pending_tags_stay_pending():
        merged = merge_tags(values.OutputRef("vpc", "tags"), {"Environment": "dev"})
        assert isinstance(merged, values.Derived)

    @staticmethod
    def test_applied_at_registration():
        graph = ResourceGraph("test", [auto_tag_transformation(_TAGS)])
        graph.declare("role", tokens.IAM_ROLE, {"name": "role"})
        assert graph.freeze()["role"].inputs["tags"] == _TAGS


class TestPipeline:
    @staticmethod
    def test_failure_is_wrapped_with_resource_name():
        def broken(args):
            raise RuntimeError("boom")

        with pytest.raises(TransformationError) as exc_info:
            _apply(broken, ResourceDeclaration("role", tokens.IAM_ROLE))
        assert exc_info.value.resource == "role"
        assert "boom" in exc_info.value.message

    @staticmethod
    def test_transformations_run_in_registration_order():
        seen = []
        pipeline = TransformationPipeline()
        pipeline.register(lambda args: seen.append("first"))
        pipeline.register(lambda args: seen.append("second"))
        pipeline.apply(ResourceDeclaration("role", tokens.IAM_ROLE))
        assert seen == ["first", "second"]
        assert len(pipeline) == 2


class TestPulumiAdapter:
    @staticmethod
    def _args(type_: str, props: dict) -> pulumi.ResourceTransformationArgs:
        return pulumi.ResourceTransformationArgs(
            resource=None, type_=type_, name="main", props=props, opts=pulumi.ResourceOptions()
        )

    @staticmethod
    def test_rewrites_props_and_keeps_options():
        adapted = to_pulumi_transformation(auto_tag_transformation(_TAGS, taggable={_VPC: "tags"}))
        args = TestPulumiAdapter._args(_VPC, {"cidrBlock": "10.0.0.0/16"})
        result = adapted(args)
        assert result.props == {"cidrBlock": "10.0.0.0/16", "tags": _TAGS}
        assert result.opts is args.opts

    @staticmethod
    def test_unchanged_resource_returns_none():
        adapted = to_pulumi_transformation(auto_tag_transformation(_TAGS, taggable={_VPC: "tags"}))
        assert adapted(TestPulumiAdapter._args("aws:s3/bucket:Bucket", {})) is None
