"""Polling for resources that something other than the engine creates.

A typical case is the network load balancer AWS provisions in response to
a ``Service`` of type ``LoadBalancer``. ``wait_for`` polls a read-only
predicate at a fixed interval until it yields a truthy value or the
deadline runs out.
"""

from __future__ import annotations

import asyncio
import inspect
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import boto3
import pulumi

from ..errors import PlanCancelledError, TimeoutExceededError

DEFAULT_INTERVAL = 30.0
DEFAULT_DEADLINE = 15 * 60.0


class CancellationToken:
    """Plan-level cancellation signal checked at every suspension point."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, resource: str | None = None) -> None:
        if self._cancelled:
            raise PlanCancelledError(f"Plan cancelled: {self._reason}", resource=resource)


@dataclass(frozen=True)
class WaitGate:
    """A wait attached to a declaration.

    ``predicate`` receives the declaration's resolved inputs. Its first
    truthy result becomes the outputs of a data declaration.
    """

    predicate: Callable[[Mapping[str, Any]], Any]
    description: str
    deadline: float = DEFAULT_DEADLINE
    interval: float = DEFAULT_INTERVAL


async def wait_for(
    predicate: Callable[[], Any | Awaitable[Any]],
    deadline: float = DEFAULT_DEADLINE,
    interval: float = DEFAULT_INTERVAL,
    cancel: CancellationToken | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "condition",
) -> Any:
    """Poll ``predicate`` until it returns something truthy.

    The predicate is called once per interval, ``ceil(deadline / interval)``
    times at most, so a deadline of two intervals means exactly two polls.
    Raises ``TimeoutExceededError`` once the deadline elapses and
    ``PlanCancelledError`` when ``cancel`` fires between polls.
    """
    if interval <= 0 or deadline <= 0:
        raise ValueError("interval and deadline must be positive")
    polls = max(1, math.ceil(deadline / interval))
    for attempt in range(1, polls + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            pulumi.log.debug(f"Wait for {description} satisfied after {attempt} poll(s)")
            return result
        if attempt < polls:
            pulumi.log.debug(
                f"Waiting for {description}: poll {attempt}/{polls}, next in {interval:g}s"
            )
            await sleep(interval)
    raise TimeoutExceededError(
        f"Timed out after {deadline:g}s waiting for {description}"
    )


class LoadBalancerLookup:
    """Find the load balancer the AWS controller created for a cluster.

    Matches load balancers tagged ``kubernetes.io/cluster/<name>=owned`` and
    returns their DNS name and hosted zone once the balancer is active.
    """

    def __init__(self, region: str | None = None, client=None):
        self._region = region
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("elbv2", region_name=self._region)
        return self._client

    def __call__(self, cluster_name: str) -> dict | None:
        tag_key = f"kubernetes.io/cluster/{cluster_name}"
        paginator = self.client.get_paginator("describe_load_balancers")
        for page in paginator.paginate():
            balancers = {lb["LoadBalancerArn"]: lb for lb in page["LoadBalancers"]}
            arns = list(balancers)
            # describe_tags accepts at most 20 ARNs per call
            for start in range(0, len(arns), 20):
                response = self.client.describe_tags(ResourceArns=arns[start : start + 20])
                for description in response["TagDescriptions"]:
                    tags = {tag["Key"]: tag["Value"] for tag in description["Tags"]}
                    if tags.get(tag_key) != "owned":
                        continue
                    balancer = balancers[description["ResourceArn"]]
                    if balancer.get("State", {}).get("Code") != "active":
                        continue
                    return {
                        "arn": balancer["LoadBalancerArn"],
                        "dnsName": balancer["DNSName"],
                        "canonicalHostedZoneId": balancer["CanonicalHostedZoneId"],
                    }
        return None

    def gate(
        self,
        deadline: float = DEFAULT_DEADLINE,
        interval: float = DEFAULT_INTERVAL,
    ) -> WaitGate:
        """Wait gate whose declaration carries a ``clusterName`` input."""
        return WaitGate(
            predicate=lambda inputs: self(inputs["clusterName"]),
            description="cluster load balancer",
            deadline=deadline,
            interval=interval,
        )
