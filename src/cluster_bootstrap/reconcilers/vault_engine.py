# ABOUTME: Ensures a versioned key/value secrets engine is mounted in Vault
# ABOUTME: Mounts KV v2 when the path is free, refuses to touch a foreign engine

"""Vault KV secrets engine reconciler."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from cluster_bootstrap.backends.vault import VaultError
from cluster_bootstrap.errors import ConvergenceError

if TYPE_CHECKING:
    from cluster_bootstrap.backends.vault import VaultBackend
    from cluster_bootstrap.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

KV_ENGINE_TYPE = "kv"
KV_VERSION = "2"


class VaultEngineReconciler:
    def __init__(self, vault: VaultBackend, audit: AuditLogger | None = None) -> None:
        self._vault = vault
        self._audit = audit

    def ensure_kv(self, path: str) -> None:
        """Mount a KV v2 engine at ``path`` unless one is already there.

        Raises:
            ConvergenceError: listing or mounting failed, or ``path`` holds an
                engine of another type or KV version.
        """
        path = path.strip("/")
        try:
            mounts = self._vault.list_mounts()
        except VaultError as e:
            raise ConvergenceError("secrets engines", "list", e) from e

        current = mounts.get(f"{path}/")
        if isinstance(current, dict):
            version = (current.get("options") or {}).get("version")
            if current.get("type") != KV_ENGINE_TYPE or version != KV_VERSION:
                raise ConvergenceError(
                    f"secrets engine {path}/",
                    "mount",
                    ValueError(
                        f"path already mounted as type={current.get('type')} version={version}"
                    ),
                )
            logger.debug("KV engine already mounted", path=path)
            return

        logger.info("Mounting KV engine", path=path, version=KV_VERSION)
        try:
            self._vault.enable_secrets_engine(path, KV_ENGINE_TYPE, {"version": KV_VERSION})
        except VaultError as e:
            if self._audit:
                self._audit.log_error("vault", "enable_secrets_engine", path, str(e))
            raise ConvergenceError(f"secrets engine {path}/", "mount", e) from e
        if self._audit:
            self._audit.log_change("vault", "enable_secrets_engine", path, {"version": KV_VERSION})
