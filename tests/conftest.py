# ABOUTME: Pytest fixtures and in-memory backend fakes for cluster-bootstrap tests
# ABOUTME: Provides fake IAM, Vault and Kubernetes backends recording every call

from __future__ import annotations

import copy
from typing import Any

import pytest
from kubernetes.client.rest import ApiException
from pydantic import SecretStr

from cluster_bootstrap.backends.iam import IamError, IamRole, RolePage
from cluster_bootstrap.backends.vault import VaultError
from cluster_bootstrap.config import BootstrapSettings, VaultSettings
from cluster_bootstrap.models import ClusterMetadata, RoleSpec
from cluster_bootstrap.ownership import ownership_tags
from cluster_bootstrap.utils.logging import AuditLogger

OIDC_ARN = "arn:aws:iam::123456789012:oidc-provider/oidc.eks.eu-west-1.amazonaws.com/id/ABC123"


class FakeIamBackend:
    """In-memory IAM. ``fail`` maps an operation name to the error it raises."""

    def __init__(self, page_size: int = 2) -> None:
        self.roles: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail: dict[str, Exception] = {}
        self.page_size = page_size

    def add_role(self, name: str, trust_document: str = "{}", owned: bool = False) -> None:
        self.roles[name] = {
            "trust": trust_document,
            "tags": ownership_tags() if owned else [{"Key": "team", "Value": "other"}],
            "attached": [],
            "inline": {},
        }

    def _record(self, op: str, *args: Any) -> None:
        self.calls.append((op, args))
        if op in self.fail:
            raise self.fail[op]

    @property
    def writes(self) -> list[str]:
        reads = {"get_role", "list_roles", "list_role_tags"}
        return [op for op, _ in self.calls if op not in reads]

    def get_role(self, name: str) -> IamRole | None:
        self._record("get_role", name)
        role = self.roles.get(name)
        if role is None:
            return None
        return IamRole(name=name, arn=f"arn:aws:iam::123456789012:role/{name}", trust_document=role["trust"])

    def create_role(self, name: str, trust_document: str, tags: Any) -> None:
        self._record("create_role", name, trust_document, list(tags))
        if name in self.roles:
            raise IamError("EntityAlreadyExists", f"Role with name {name} already exists.")
        self.roles[name] = {"trust": trust_document, "tags": list(tags), "attached": [], "inline": {}}

    def update_assume_role_policy(self, name: str, trust_document: str) -> None:
        self._record("update_assume_role_policy", name, trust_document)
        self.roles[name]["trust"] = trust_document

    def tag_role(self, name: str, tags: Any) -> None:
        self._record("tag_role", name, list(tags))
        existing = {t["Key"]: t for t in self.roles[name]["tags"]}
        existing.update({t["Key"]: t for t in tags})
        self.roles[name]["tags"] = list(existing.values())

    def attach_role_policy(self, name: str, policy_arn: str) -> None:
        self._record("attach_role_policy", name, policy_arn)
        if policy_arn not in self.roles[name]["attached"]:
            self.roles[name]["attached"].append(policy_arn)

    def put_role_policy(self, name: str, policy_name: str, document: str) -> None:
        self._record("put_role_policy", name, policy_name, document)
        self.roles[name]["inline"][policy_name] = document

    def list_roles(self, marker: str | None = None) -> RolePage:
        self._record("list_roles", marker)
        names = sorted(self.roles)
        start = int(marker) if marker else 0
        end = start + self.page_size
        return RolePage(names=names[start:end], marker=str(end) if end < len(names) else None)

    def list_role_tags(self, name: str) -> list[dict[str, str]]:
        self._record("list_role_tags", name)
        return list(self.roles[name]["tags"])

    def delete_role(self, name: str) -> None:
        self._record("delete_role", name)
        if self.roles[name]["attached"]:
            raise IamError("DeleteConflict", "Cannot delete entity, must detach all policies first.")
        del self.roles[name]


class FakeVault:
    """In-memory Vault with the same shapes the HTTP client returns."""

    def __init__(self) -> None:
        self.auth_methods: dict[str, Any] = {"token/": {"type": "token"}}
        self.mounts: dict[str, Any] = {"sys/": {"type": "system"}}
        self.paths: dict[str, dict[str, Any]] = {}
        self.policies: dict[str, str] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail: dict[str, Exception] = {}

    def _record(self, op: str, *args: Any) -> None:
        self.calls.append((op, args))
        if op in self.fail:
            raise self.fail[op]

    @property
    def writes(self) -> list[tuple[str, tuple[Any, ...]]]:
        mutating = {"enable_auth_method", "write", "put_policy", "enable_secrets_engine"}
        return [call for call in self.calls if call[0] in mutating]

    def list_auth_methods(self) -> dict[str, Any]:
        self._record("list_auth_methods")
        return copy.deepcopy(self.auth_methods)

    def enable_auth_method(self, path: str, method_type: str) -> None:
        self._record("enable_auth_method", path, method_type)
        if f"{path}/" in self.auth_methods:
            raise VaultError(400, f"path is already in use at {path}/")
        self.auth_methods[f"{path}/"] = {"type": method_type}

    def read(self, path: str) -> dict[str, Any] | None:
        self._record("read", path)
        data = self.paths.get(path)
        return copy.deepcopy(data) if data is not None else None

    def write(self, path: str, data: dict[str, Any]) -> None:
        self._record("write", path, copy.deepcopy(data))
        self.paths[path] = copy.deepcopy(data)

    def read_policy(self, name: str) -> str | None:
        self._record("read_policy", name)
        return self.policies.get(name)

    def put_policy(self, name: str, policy: str) -> None:
        self._record("put_policy", name, policy)
        self.policies[name] = policy

    def list_mounts(self) -> dict[str, Any]:
        self._record("list_mounts")
        return copy.deepcopy(self.mounts)

    def enable_secrets_engine(self, path: str, engine_type: str, options: dict[str, str] | None = None) -> None:
        self._record("enable_secrets_engine", path, engine_type, options)
        self.mounts[f"{path}/"] = {"type": engine_type, "options": dict(options or {})}


class FakeKube:
    """Stand-in for KubeClient."""

    def __init__(self) -> None:
        self.host = "https://ABC123.gr7.eu-west-1.eks.amazonaws.com"
        self.version = "v1.32.3-eks-bc803b4"
        self.secrets: dict[tuple[str, str], dict[str, bytes]] = {
            ("vault", "root-token"): {"token": b"hvs.root\n"},
            ("vault", "vault-token-reviewer"): {"token": b"reviewer-jwt"},
        }
        self.config_maps: dict[tuple[str, str], dict[str, str]] = {
            ("kube-system", "aws-auth"): {"mapRoles": "- rolearn: x\n  groups: [sts.amazonaws.com]\n"},
        }
        self.nodes: list[dict[str, Any]] = []
        self.applied: list[bytes] = []

    def ca_cert_base64(self) -> str:
        return "LS0tLS1CRUdJTiBDRVJUSUZJQ0FURS0tLS0tCg=="

    def server_version(self) -> str:
        return self.version

    def get_secret_data(self, namespace: str, name: str) -> dict[str, bytes]:
        try:
            return dict(self.secrets[(namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def get_config_map_data(self, namespace: str, name: str) -> dict[str, str] | None:
        return self.config_maps.get((namespace, name))

    def list_nodes(self) -> list[dict[str, Any]]:
        return list(self.nodes)

    def apply_manifests(self, stream: bytes) -> int:
        self.applied.append(stream)
        return stream.count(b"kind:")


@pytest.fixture
def fake_iam() -> FakeIamBackend:
    """In-memory IAM backend."""
    return FakeIamBackend()


@pytest.fixture
def fake_vault() -> FakeVault:
    """In-memory Vault backend."""
    return FakeVault()


@pytest.fixture
def fake_kube() -> FakeKube:
    """In-memory Kubernetes client."""
    return FakeKube()


@pytest.fixture
def audit() -> AuditLogger:
    """Audit logger keeping entries in memory only."""
    return AuditLogger()


@pytest.fixture
def role_spec() -> RoleSpec:
    """IRSA role for the Flux source-controller."""
    return RoleSpec(
        name="demo-flux-source-controller",
        policy_arns=["arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly"],
        oidc_provider_arn=OIDC_ARN,
        service_account="flux-system:source-controller",
    )


@pytest.fixture
def cluster_metadata() -> ClusterMetadata:
    """Discovered facts of a demo cluster."""
    return ClusterMetadata(
        account_id="123456789012",
        region="eu-west-1",
        cluster_name="demo",
        oidc_provider_arn=OIDC_ARN,
        kube_version="v1.32.3-eks-bc803b4",
        host="https://ABC123.gr7.eu-west-1.eks.amazonaws.com",
        ca_cert_base64="LS0tLS1CRUdJTiBDRVJUSUZJQ0FURS0tLS0tCg==",
    )


@pytest.fixture
def vault_settings() -> VaultSettings:
    """Vault settings pointing at a test address."""
    return VaultSettings(addr="https://vault.example.com", token=SecretStr("test-token"), timeout=5.0)


@pytest.fixture
def bootstrap_settings(vault_settings: VaultSettings) -> BootstrapSettings:
    """Installer settings without retry delay."""
    return BootstrapSettings(retry_delay=0, vault=vault_settings)
