from __future__ import annotations

from unittest import mock

import pytest

from pulumi_eks_platform.core.wait import CancellationToken, LoadBalancerLookup, wait_for
from pulumi_eks_platform.errors import PlanCancelledError, TimeoutExceededError


def test_times_out_after_exactly_two_polls(run, no_sleep):
    calls = []

    def predicate():
        calls.append(1)
        return None

    with pytest.raises(TimeoutExceededError) as exc_info:
        run(wait_for(predicate, deadline=2, interval=1, sleep=no_sleep))
    assert len(calls) == 2
    assert no_sleep.delays == [1]
    assert exc_info.value.stage == "wait"


def test_returns_first_truthy_result(run, no_sleep):
    results = iter([None, {}, {"dnsName": "lb.example.com"}])
    found = run(wait_for(lambda: next(results), deadline=10, interval=1, sleep=no_sleep))
    assert found == {"dnsName": "lb.example.com"}
    assert no_sleep.delays == [1, 1]


def test_awaitable_predicates_are_awaited(run, no_sleep):
    async def predicate():
        return "ready"

    assert run(wait_for(predicate, deadline=1, interval=1, sleep=no_sleep)) == "ready"


def test_cancellation_stops_polling(run, no_sleep):
    token = CancellationToken()
    calls = []

    def predicate():
        calls.append(1)
        token.cancel("operator abort")
        return None

    with pytest.raises(PlanCancelledError, match="operator abort"):
        run(wait_for(predicate, deadline=5, interval=1, cancel=token, sleep=no_sleep))
    assert len(calls) == 1


def test_rejects_non_positive_interval(run):
    with pytest.raises(ValueError):
        run(wait_for(lambda: True, deadline=1, interval=0))


class TestLoadBalancerLookup:
    @staticmethod
    def _client(balancers, tags):
        client = mock.Mock()
        client.get_paginator.return_value.paginate.return_value = [{"LoadBalancers": balancers}]
        client.describe_tags.return_value = {
            "TagDescriptions": [
                {"ResourceArn": arn, "Tags": [{"Key": k, "Value": v} for k, v in tag_map.items()]}
                for arn, tag_map in tags.items()
            ]
        }
        return client

    def test_finds_active_owned_balancer(self):
        balancers = [
            {
                "LoadBalancerArn": "arn:lb/other",
                "DNSName": "other.elb.amazonaws.com",
                "CanonicalHostedZoneId": "Z1",
                "State": {"Code": "active"},
            },
            {
                "LoadBalancerArn": "arn:lb/mine",
                "DNSName": "mine.elb.amazonaws.com",
                "CanonicalHostedZoneId": "Z2",
                "State": {"Code": "active"},
            },
        ]
        tags = {
            "arn:lb/other": {"kubernetes.io/cluster/other": "owned"},
            "arn:lb/mine": {"kubernetes.io/cluster/dev": "owned"},
        }
        lookup = LoadBalancerLookup(client=self._client(balancers, tags))
        assert lookup("dev") == {
            "arn": "arn:lb/mine",
            "dnsName": "mine.elb.amazonaws.com",
            "canonicalHostedZoneId": "Z2",
        }

    def test_provisioning_balancer_is_not_ready(self):
        balancers = [
            {
                "LoadBalancerArn": "arn:lb/mine",
                "DNSName": "mine.elb.amazonaws.com",
                "CanonicalHostedZoneId": "Z2",
                "State": {"Code": "provisioning"},
            }
        ]
        tags = {"arn:lb/mine": {"kubernetes.io/cluster/dev": "owned"}}
        lookup = LoadBalancerLookup(client=self._client(balancers, tags))
        assert lookup("dev") is None

    def test_gate_reads_cluster_name_input(self):
        lookup = mock.Mock(spec=LoadBalancerLookup)
        lookup.return_value = {"dnsName": "x"}
        gate = LoadBalancerLookup.gate(lookup, deadline=60, interval=10)
        assert gate.predicate({"clusterName": "dev"}) == {"dnsName": "x"}
        lookup.assert_called_once_with("dev")
        assert gate.deadline == 60
        assert gate.interval == 10
