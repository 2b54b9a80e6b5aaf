# ABOUTME: Narrow IAM capability interface and its boto3 implementation
# ABOUTME: Translates botocore failures into transient or permanent backend errors

"""
IAM backend used by the role reconciler.

The reconciler only needs a handful of IAM operations, so it depends on the
``IamBackend`` protocol below rather than on boto3 directly. Tests provide
an in-memory fake; production uses ``Boto3IamBackend``.

Error translation:

    NoSuchEntity on GetRole          -> None (role absent)
    throttling / connection problems -> TransientBackendError
    anything else from botocore      -> IamError
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import unquote

import boto3
import structlog
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from cluster_bootstrap.errors import TransientBackendError
from cluster_bootstrap.trust_policy import canonical_json

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger = structlog.get_logger(__name__)

TRANSIENT_ERROR_CODES = frozenset(
    [
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "ServiceFailure",
    ]
)


class IamError(Exception):
    """Non-transient IAM failure."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"IAM error ({self.code}): {self.message}"


@dataclass
class IamRole:
    """Role as stored in IAM. ``trust_document`` is canonical JSON text."""

    name: str
    arn: str = ""
    trust_document: str | None = None


@dataclass
class RolePage:
    """One page of a ``ListRoles`` scan."""

    names: list[str] = field(default_factory=list)
    marker: str | None = None


class IamBackend(Protocol):
    def get_role(self, name: str) -> IamRole | None: ...

    def create_role(self, name: str, trust_document: str, tags: Sequence[dict[str, str]]) -> None: ...

    def update_assume_role_policy(self, name: str, trust_document: str) -> None: ...

    def tag_role(self, name: str, tags: Sequence[dict[str, str]]) -> None: ...

    def attach_role_policy(self, name: str, policy_arn: str) -> None: ...

    def put_role_policy(self, name: str, policy_name: str, document: str) -> None: ...

    def list_roles(self, marker: str | None = None) -> RolePage: ...

    def list_role_tags(self, name: str) -> list[dict[str, str]]: ...

    def delete_role(self, name: str) -> None: ...


def normalize_trust_document(document: Any) -> str | None:
    """Bring a stored trust document into the generator's canonical form.

    boto3 hands back the decoded document as a dict; the raw API returns
    URL-encoded JSON text.
    """
    if document is None:
        return None
    if isinstance(document, str):
        text = unquote(document)
        try:
            return canonical_json(json.loads(text))
        except ValueError:
            return text
    return canonical_json(document)


class Boto3IamBackend:
    """``IamBackend`` backed by a boto3 IAM client."""

    def __init__(self, client: Any | None = None) -> None:
        self._client = client if client is not None else boto3.client("iam")

    def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        log = logger.bind(operation=operation)
        log.debug("Calling IAM")
        try:
            return func(**kwargs)
        except ClientError as e:
            error = e.response.get("Error", {})
            code = error.get("Code", "Unknown")
            message = error.get("Message", str(e))
            if code in TRANSIENT_ERROR_CODES:
                log.warning("IAM temporarily unavailable", code=code)
                raise TransientBackendError(f"IAM {operation}: {code}: {message}") from e
            raise IamError(code, message) from e
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            log.warning("IAM not reachable", error=str(e))
            raise TransientBackendError(f"IAM {operation}: {e}") from e
        except BotoCoreError as e:
            raise IamError(type(e).__name__, str(e)) from e

    def get_role(self, name: str) -> IamRole | None:
        try:
            out = self._call("GetRole", self._client.get_role, RoleName=name)
        except IamError as e:
            if e.code == "NoSuchEntity":
                return None
            raise
        role = out["Role"]
        return IamRole(
            name=role["RoleName"],
            arn=role.get("Arn", ""),
            trust_document=normalize_trust_document(role.get("AssumeRolePolicyDocument")),
        )

    def create_role(self, name: str, trust_document: str, tags: Sequence[dict[str, str]]) -> None:
        self._call(
            "CreateRole",
            self._client.create_role,
            RoleName=name,
            AssumeRolePolicyDocument=trust_document,
            Tags=list(tags),
        )

    def update_assume_role_policy(self, name: str, trust_document: str) -> None:
        self._call(
            "UpdateAssumeRolePolicy",
            self._client.update_assume_role_policy,
            RoleName=name,
            PolicyDocument=trust_document,
        )

    def tag_role(self, name: str, tags: Sequence[dict[str, str]]) -> None:
        self._call("TagRole", self._client.tag_role, RoleName=name, Tags=list(tags))

    def attach_role_policy(self, name: str, policy_arn: str) -> None:
        self._call(
            "AttachRolePolicy",
            self._client.attach_role_policy,
            RoleName=name,
            PolicyArn=policy_arn,
        )

    def put_role_policy(self, name: str, policy_name: str, document: str) -> None:
        self._call(
            "PutRolePolicy",
            self._client.put_role_policy,
            RoleName=name,
            PolicyName=policy_name,
            PolicyDocument=document,
        )

    def list_roles(self, marker: str | None = None) -> RolePage:
        kwargs: dict[str, Any] = {}
        if marker:
            kwargs["Marker"] = marker
        out = self._call("ListRoles", self._client.list_roles, **kwargs)
        return RolePage(
            names=[role["RoleName"] for role in out.get("Roles", [])],
            marker=out.get("Marker") if out.get("IsTruncated") else None,
        )

    def list_role_tags(self, name: str) -> list[dict[str, str]]:
        tags: list[dict[str, str]] = []
        kwargs: dict[str, Any] = {"RoleName": name}
        while True:
            out = self._call("ListRoleTags", self._client.list_role_tags, **kwargs)
            tags.extend(out.get("Tags", []))
            if not out.get("IsTruncated"):
                return tags
            kwargs["Marker"] = out["Marker"]

    def delete_role(self, name: str) -> None:
        self._call("DeleteRole", self._client.delete_role, RoleName=name)
