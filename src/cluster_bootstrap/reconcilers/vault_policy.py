# ABOUTME: Converges named Vault ACL policies
# ABOUTME: Writes a policy only when the stored text differs byte-for-byte

"""Vault ACL policy reconciler."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from cluster_bootstrap.backends.vault import VaultError
from cluster_bootstrap.errors import ConvergenceError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cluster_bootstrap.backends.vault import VaultBackend
    from cluster_bootstrap.models import Policy
    from cluster_bootstrap.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


class VaultPolicyReconciler:
    def __init__(self, vault: VaultBackend, audit: AuditLogger | None = None) -> None:
        self._vault = vault
        self._audit = audit

    def reconcile(self, policies: Sequence[Policy]) -> None:
        """Write each policy whose stored text differs (whitespace included)."""
        for policy in policies:
            try:
                existing = self._vault.read_policy(policy.name)
            except VaultError as e:
                raise ConvergenceError(f"policy {policy.name}", "get", e) from e

            if existing == policy.document:
                logger.debug("Policy up to date", policy=policy.name)
                continue

            logger.info("Writing policy", policy=policy.name, created=existing is None)
            try:
                self._vault.put_policy(policy.name, policy.document)
            except VaultError as e:
                if self._audit:
                    self._audit.log_error("vault", "put_policy", policy.name, str(e))
                raise ConvergenceError(f"policy {policy.name}", "write", e) from e
            if self._audit:
                self._audit.log_change("vault", "put_policy", policy.name)
