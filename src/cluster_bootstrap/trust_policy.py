# ABOUTME: Builds the IAM assume-role trust document for a service account role
# ABOUTME: Pure function with a canonical JSON encoding so output is byte-stable

"""IRSA trust policy generation."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cluster_bootstrap.models import RoleSpec

POLICY_VERSION = "2012-10-17"
ASSUME_ROLE_ACTION = "sts:AssumeRoleWithWebIdentity"


def canonical_json(document: Any) -> str:
    """Serialize a policy document with sorted keys and no whitespace.

    The same encoder is used for generated documents and for documents read
    back from IAM, so equal documents compare equal as strings.
    """
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def oidc_issuer(provider_arn: str) -> str:
    """Issuer host/path used in IAM condition keys.

    ``arn:aws:iam::123:oidc-provider/oidc.eks.eu-west-1.amazonaws.com/id/ABC``
    becomes ``oidc.eks.eu-west-1.amazonaws.com/id/ABC``. Values that are not
    provider ARNs are returned unchanged.
    """
    _, sep, issuer = provider_arn.partition(":oidc-provider/")
    return issuer if sep else provider_arn


def generate_trust_policy(spec: RoleSpec) -> str:
    """Return the trust document allowing ``spec.service_account`` to assume the role.

    Raises:
        InputValidationError: if the service account is not namespace:name.
    """
    spec.split_service_account()
    provider = spec.oidc_provider_arn
    issuer = oidc_issuer(provider)
    trust = {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": provider},
                "Action": ASSUME_ROLE_ACTION,
                "Condition": {
                    "StringEquals": {
                        f"{issuer}:sub": f"system:serviceaccount:{spec.service_account}",
                        f"{issuer}:aud": spec.audience,
                    },
                },
            },
        ],
    }
    return canonical_json(trust)
