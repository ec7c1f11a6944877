"""IAM roles for Kubernetes service accounts (IRSA)."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from ..core import tokens, values
from ..core.resource import ResourceHandle
from .base import StackContext


def policy_document(statements: Sequence[Mapping[str, Any]]) -> Any:
    """IAM policy JSON; stays pending while any statement field is pending."""
    return values.apply(
        {"Version": "2012-10-17", "Statement": list(statements)},
        lambda document: json.dumps(document, sort_keys=True),
    )


def service_principal_policy(service: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        },
        sort_keys=True,
    )


def web_identity_policy(
    oidc_provider_arn: Any,
    oidc_issuer: Any,
    namespace: str,
    service_account: str,
) -> Any:
    """Trust policy letting one service account assume the role.

    ``oidc_issuer`` is the issuer host and path, without ``https://``.
    """

    def render(provider_arn: str, issuer: str) -> str:
        issuer = issuer.removeprefix("https://")
        return json.dumps(
            {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Principal": {"Federated": provider_arn},
                        "Action": "sts:AssumeRoleWithWebIdentity",
                        "Condition": {
                            "StringEquals": {
                                f"{issuer}:sub": f"system:serviceaccount:{namespace}:{service_account}",
                                f"{issuer}:aud": "sts.amazonaws.com",
                            }
                        },
                    }
                ],
            },
            sort_keys=True,
        )

    return values.combine(oidc_provider_arn, oidc_issuer, fn=render)


@dataclass(frozen=True)
class IRSA:
    """Handles of an IRSA role and the pending values stacks read from it."""

    component: ResourceHandle
    role: ResourceHandle
    arn: values.OutputRef
    role_name: str

    @property
    def annotations(self) -> dict:
        return {"eks.amazonaws.com/role-arn": self.arn}


def create_irsa(
    ctx: StackContext,
    name: str,
    role_name: str,
    oidc_provider_arn: Any,
    oidc_issuer: Any,
    trust_sa_namespace: str,
    trust_sa_name: str,
    managed_policy_arns: Iterable[str] = (),
    inline_policies: Mapping[str, Any] | None = None,
    depends_on: Sequence = (),
) -> IRSA:
    """Declare a role trusted by ``trust_sa_namespace/trust_sa_name``.

    ``inline_policies`` maps a policy name to its JSON document; each
    becomes a separate role policy so that it is validated on its own.
    """
    with ctx.graph.component(name, tokens.IRSA, depends_on=depends_on) as scope:
        role = ctx.declare(
            f"{name}-role",
            tokens.IAM_ROLE,
            {
                "name": role_name,
                "assumeRolePolicy": web_identity_policy(
                    oidc_provider_arn, oidc_issuer, trust_sa_namespace, trust_sa_name
                ),
            },
        )
        for index, policy_arn in enumerate(managed_policy_arns):
            ctx.declare(
                f"{name}-attachment-{index}",
                tokens.IAM_ROLE_POLICY_ATTACHMENT,
                {"role": role_name, "policyArn": policy_arn},
                depends_on=[role],
            )
        for policy_name, document in (inline_policies or {}).items():
            ctx.declare(
                f"{name}-{policy_name}",
                tokens.IAM_ROLE_POLICY,
                {"name": policy_name, "role": role_name, "policy": document},
                depends_on=[role],
            )
    return IRSA(scope.handle, role, ctx.output(role, "arn"), role_name)
