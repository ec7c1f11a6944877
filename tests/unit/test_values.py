from __future__ import annotations

import pytest

from pulumi_eks_platform.core import values
from pulumi_eks_platform.core.references import StackPointer

_POINTER = StackPointer("organization", "infra-aws", "dev")


class _Resolution:
    def __init__(self, outputs=None, references=None):
        self.outputs = outputs or {}
        self.references = references or {}

    def output(self, resource, attribute):
        return self.outputs[(resource, attribute)]

    def resource(self, resource):
        return f"{resource}-id"

    def reference(self, pointer, key):
        return self.references[(pointer, key)]


class TestSecretTaint:
    @staticmethod
    def test_literal_is_not_secret():
        assert not values.is_secret({"a": 1, "b": ["x", values.Literal("y")]})

    @staticmethod
    def test_nested_secret_taints_container():
        assert values.is_secret({"stringData": {"password": values.Secret("hunter2")}})

    @staticmethod
    def test_apply_preserves_taint():
        derived = values.apply(values.Secret("abc"), str.upper)
        assert isinstance(derived, values.Secret)
        assert derived.inner == "ABC"

    @staticmethod
    def test_combine_of_pending_and_secret_is_secret_derived():
        ref = values.OutputRef("cluster", "endpoint")
        derived = values.combine(ref, values.Secret("ca"), fn=lambda a, b: f"{a}/{b}")
        assert isinstance(derived, values.Derived)
        assert derived.is_secret

    @staticmethod
    def test_secret_flag_on_output_ref():
        assert values.OutputRef("cluster", "kubeconfig", secret=True).is_secret
        assert not values.OutputRef("cluster", "endpoint").is_secret

    @staticmethod
    def test_seal_is_idempotent():
        sealed = values.seal("x")
        assert values.seal(sealed) is sealed


class TestPending:
    @staticmethod
    def test_dependencies_collects_resource_names():
        inputs = {
            "vpcId": values.OutputRef("vpc", "vpcId"),
            "cluster": values.ResourceRef("cluster"),
            "nested": [values.Derived((values.OutputRef("role", "arn"),), str)],
        }
        assert values.dependencies(inputs) == {"vpc", "cluster", "role"}

    @staticmethod
    def test_references_collects_stack_outputs():
        inputs = {"vpcId": values.ReferenceOutput(_POINTER, "vpcId")}
        assert values.references(inputs) == {(_POINTER, "vpcId")}

    @staticmethod
    def test_combine_known_values_is_eager():
        assert values.combine("a", "b", fn=lambda x, y: x + y) == "ab"

    @staticmethod
    def test_unseal_rejects_pending():
        with pytest.raises(ValueError):
            values.unseal(values.OutputRef("vpc", "vpcId"))


class TestMask:
    @staticmethod
    def test_secrets_are_masked():
        masked = values.mask({"password": values.Secret("hunter2"), "user": "admin"})
        assert masked == {"password": values.MASK, "user": "admin"}

    @staticmethod
    def test_pending_rendered_by_name():
        assert values.mask(values.OutputRef("vpc", "vpcId")) == "<vpc.vpcId>"

    @staticmethod
    def test_secret_str_never_shows_plaintext():
        secret = values.Secret("hunter2")
        assert "hunter2" not in str(secret)
        assert "hunter2" not in repr(secret)


class TestResolve:
    @staticmethod
    def test_resolves_nested_pendings():
        resolution = _Resolution(
            outputs={("vpc", "vpcId"): "vpc-123"},
            references={(_POINTER, "vpcCidr"): "10.0.0.0/16"},
        )
        inputs = {
            "vpcId": values.OutputRef("vpc", "vpcId"),
            "cidrs": [values.ReferenceOutput(_POINTER, "vpcCidr")],
            "cluster": values.ResourceRef("cluster"),
            "label": values.apply(values.OutputRef("vpc", "vpcId"), lambda v: f"net-{v}"),
        }
        assert values.resolve(inputs, resolution) == {
            "vpcId": "vpc-123",
            "cidrs": ["10.0.0.0/16"],
            "cluster": "cluster-id",
            "label": "net-vpc-123",
        }

    @staticmethod
    def test_keep_secrets_rewraps_sealed_values():
        resolution = _Resolution(outputs={("cluster", "kubeconfig"): "apiVersion: v1"})
        resolved = values.resolve(
            values.OutputRef("cluster", "kubeconfig", secret=True), resolution, keep_secrets=True
        )
        assert resolved == values.Secret("apiVersion: v1")

    @staticmethod
    def test_plaintext_for_provisioner():
        resolution = _Resolution(references={(_POINTER, "dbPassword"): values.Secret("pw")})
        assert values.resolve(values.ReferenceOutput(_POINTER, "dbPassword", secret=True), resolution) == "pw"
