# ABOUTME: Desired-state models for IAM roles, Vault auth/policies and cluster metadata
# ABOUTME: Pydantic models validated on construction, serialized for backend payloads

"""
Desired-state data model.

These models describe WHAT should exist; the reconcilers decide what to
change. They are plain pydantic models so they validate on construction and
serialize predictably:

    RoleSpec        -> one IAM role bound to a Kubernetes service account
    RoleBinding     -> one Vault Kubernetes auth role
    AuthConfig      -> a Vault Kubernetes auth mount and its roles
    Policy          -> one Vault ACL policy (compared as exact text)
    ImageOverride   -> one kustomize ``images:`` entry
    ClusterMetadata -> facts discovered about the cluster and cloud account
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from cluster_bootstrap.errors import InputValidationError


class RoleSpec(BaseModel):
    """IAM role for a Kubernetes service account (IRSA)."""

    model_config = {"frozen": True}

    name: str = Field(description="IAM role name")
    policy_arns: tuple[str, ...] = Field(
        default=(),
        description="Managed policies to attach, in order",
    )
    inline_policy_name: str | None = Field(default=None)
    inline_policy_document: str | None = Field(default=None)
    oidc_provider_arn: str = Field(description="Federated OIDC identity provider ARN")
    service_account: str = Field(description="Bound subject as namespace:serviceaccount")
    audience: str = Field(default="sts.amazonaws.com")

    @field_validator("policy_arns", mode="before")
    @classmethod
    def dedupe_policy_arns(cls, v: Any) -> tuple[str, ...]:
        """Keep the first occurrence of each ARN, preserving order."""
        return tuple(dict.fromkeys(v or ()))

    @property
    def has_inline_policy(self) -> bool:
        return bool(self.inline_policy_name and self.inline_policy_document)

    def split_service_account(self) -> tuple[str, str]:
        """Return ``(namespace, serviceaccount)`` or raise InputValidationError."""
        parts = self.service_account.split(":")
        if len(parts) != 2 or not all(parts):
            raise InputValidationError(
                f"role {self.name}: invalid service account {self.service_account!r}, "
                "expected namespace:serviceaccount"
            )
        return parts[0], parts[1]


class RoleBinding(BaseModel):
    """Vault Kubernetes auth role."""

    name: str
    bound_service_account_names: list[str] = Field(default_factory=list)
    bound_service_account_namespaces: list[str] = Field(default_factory=list)
    policies: list[str] = Field(default_factory=list)
    ttl: str = ""
    period: str = ""

    def payload(self) -> dict[str, Any]:
        """Body written to ``auth/<mount>/role/<name>``."""
        return {
            "bound_service_account_names": list(self.bound_service_account_names),
            "bound_service_account_namespaces": list(self.bound_service_account_namespaces),
            "policies": ",".join(self.policies),
            "ttl": self.ttl,
            "period": self.period,
        }


class AuthConfig(BaseModel):
    """Vault Kubernetes auth method configuration."""

    mount_path: str = "kubernetes"
    kubernetes_host: str
    kubernetes_ca_cert: str
    token_reviewer_jwt: str
    roles: list[RoleBinding] = Field(default_factory=list)

    @field_validator("mount_path")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        v = v.strip().strip("/")
        if not v:
            raise ValueError("mount_path must not be empty")
        return v

    def config_payload(self) -> dict[str, Any]:
        """Body written to ``auth/<mount>/config``."""
        return {
            "kubernetes_host": self.kubernetes_host,
            "kubernetes_ca_cert": self.kubernetes_ca_cert,
            "token_reviewer_jwt": self.token_reviewer_jwt,
        }


class Policy(BaseModel):
    """Vault ACL policy. Documents are compared byte-for-byte."""

    name: str
    document: str


class ImageOverride(BaseModel):
    """kustomize ``images:`` entry rewriting an image name."""

    name: str
    new_name: str | None = None
    new_tag: str | None = None
    digest: str | None = None

    @classmethod
    def from_kustomization(cls, entry: dict[str, Any]) -> ImageOverride:
        return cls(
            name=entry.get("name", ""),
            new_name=entry.get("newName"),
            new_tag=entry.get("newTag"),
            digest=entry.get("digest"),
        )

    def to_kustomization(self) -> dict[str, str]:
        entry = {"name": self.name}
        if self.new_name:
            entry["newName"] = self.new_name
        if self.new_tag:
            entry["newTag"] = self.new_tag
        if self.digest:
            entry["digest"] = self.digest
        return entry


class ClusterMetadata(BaseModel):
    """Facts about the cluster and the cloud account it runs in."""

    account_id: str = ""
    region: str = ""
    cluster_name: str = ""
    oidc_provider_arn: str = ""
    kube_version: str = ""
    host: str = ""
    ca_cert_base64: str = ""
    cluster_dns_domain: str = "cluster.local"

    def to_config_map_data(self) -> dict[str, str]:
        """Cloud facts exported to the cluster-config ConfigMap."""
        return {
            "aws_account_id": self.account_id,
            "aws_region": self.region,
            "cluster_name": self.cluster_name,
            "oidc_provider_arn": self.oidc_provider_arn,
        }
