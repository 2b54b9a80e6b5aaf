# ABOUTME: Converges a Vault Kubernetes auth mount, its config and its roles
# ABOUTME: Additive only; writes happen when the serialized payload differs

"""Vault Kubernetes auth reconciler."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog

from cluster_bootstrap.backends.vault import VaultError, mask_secrets
from cluster_bootstrap.errors import ConvergenceError

if TYPE_CHECKING:
    from collections.abc import Callable

    from cluster_bootstrap.backends.vault import VaultBackend
    from cluster_bootstrap.models import AuthConfig, RoleBinding
    from cluster_bootstrap.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

AUTH_METHOD_TYPE = "kubernetes"


def serialized_equal(desired: dict[str, Any], existing: dict[str, Any] | None) -> bool:
    """Compare two payloads by their JSON text.

    This is syntactic equality: fields Vault adds on read, or a different
    list order, make the payloads unequal and cause a rewrite.
    """
    if existing is None:
        return False
    return json.dumps(desired, sort_keys=True) == json.dumps(existing, sort_keys=True)


class VaultAuthReconciler:
    """Enables a Kubernetes auth mount and writes its config and roles.

    Nothing outside the desired config is ever deleted.
    """

    def __init__(self, vault: VaultBackend, audit: AuditLogger | None = None) -> None:
        self._vault = vault
        self._audit = audit
        self.mount: str | None = None

    def reconcile(self, cfg: AuthConfig) -> None:
        """Converge mount, config and every role of ``cfg``, stopping at the first failure."""
        self.mount = cfg.mount_path
        self.ensure_mount(cfg.mount_path)
        self.ensure_config(cfg)
        for role in cfg.roles:
            self.ensure_role(role)

    def ensure_mount(self, mount_path: str) -> None:
        try:
            auths = self._vault.list_auth_methods()
        except VaultError as e:
            raise ConvergenceError("auth methods", "list", e) from e

        if f"{mount_path}/" in auths:
            logger.debug("Auth method already enabled", mount=mount_path)
            return

        logger.info("Enabling auth method", mount=mount_path, type=AUTH_METHOD_TYPE)
        self._write(
            "enable_auth_method",
            f"sys/auth/{mount_path}",
            lambda: self._vault.enable_auth_method(mount_path, AUTH_METHOD_TYPE),
        )

    def ensure_config(self, cfg: AuthConfig) -> None:
        path = f"auth/{cfg.mount_path}/config"
        self._ensure_path(path, cfg.config_payload())

    def ensure_role(self, role: RoleBinding) -> None:
        if self.mount is None:
            raise RuntimeError("auth mount not configured; call reconcile() first")
        path = f"auth/{self.mount}/role/{role.name}"
        self._ensure_path(path, role.payload())

    def _ensure_path(self, path: str, desired: dict[str, Any]) -> None:
        log = logger.bind(path=path)
        try:
            existing = self._vault.read(path)
        except VaultError as e:
            raise ConvergenceError(path, "read", e) from e

        if serialized_equal(desired, existing):
            log.debug("Vault path up to date")
            return

        log.info("Writing Vault path", desired=mask_secrets(desired))
        self._write("write", path, lambda: self._vault.write(path, desired))

    def _write(self, action: str, target: str, call: Callable[[], None]) -> None:
        try:
            call()
        except VaultError as e:
            if self._audit:
                self._audit.log_error("vault", action, target, str(e))
            raise ConvergenceError(target, action.replace("_", " "), e) from e
        if self._audit:
            self._audit.log_change("vault", action, target)
