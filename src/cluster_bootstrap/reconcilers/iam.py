# ABOUTME: Converges IAM roles for service accounts to a desired set
# ABOUTME: Creates/updates tagged roles and garbage-collects tagged roles no longer desired

"""IAM role reconciler with ownership-scoped garbage collection."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from cluster_bootstrap.backends.iam import IamError
from cluster_bootstrap.errors import ConvergenceError
from cluster_bootstrap.ownership import OWNERSHIP_TAG_KEY, OWNERSHIP_TAG_VALUE, is_owned, ownership_tags
from cluster_bootstrap.trust_policy import generate_trust_policy

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from cluster_bootstrap.backends.iam import IamBackend
    from cluster_bootstrap.models import RoleSpec
    from cluster_bootstrap.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class IamRoleReconciler:
    """Converges IAM roles and their policy attachments.

    Creates and updates are keyed by role name only. The ownership tag is
    consulted exclusively by ``garbage_collect``.
    """

    def __init__(self, backend: IamBackend, audit: AuditLogger | None = None) -> None:
        self._backend = backend
        self._audit = audit

    def reconcile(self, desired: Sequence[RoleSpec]) -> None:
        """Converge every role in ``desired``; stop at the first failure.

        Raises:
            InputValidationError: a spec has a malformed service account.
                Raised before any backend call.
            ConvergenceError: a backend call failed for a role.
            TransientBackendError: IAM is not reachable.
        """
        # Every spec is validated before the first backend call
        documents = [(spec, generate_trust_policy(spec)) for spec in desired]
        for spec, trust_document in documents:
            self._ensure_role(spec, trust_document)

    def garbage_collect(self, desired: Sequence[RoleSpec]) -> list[str]:
        """Delete tagged roles whose names are not in ``desired``.

        Roles without the ownership tag are never touched. Deleting a role
        that still has policies attached fails; nothing is detached.

        Returns:
            Names of the deleted roles.
        """
        desired_names = {spec.name for spec in desired}
        tagged = self.list_owned_roles()
        logger.debug(
            "Found owned roles",
            count=len(tagged),
            tag=f"{OWNERSHIP_TAG_KEY}={OWNERSHIP_TAG_VALUE}",
        )

        deleted = []
        for name in tagged:
            if name in desired_names:
                continue
            logger.info("Deleting IAM role not in desired set", role=name)
            self._write("delete_role", name, self._backend.delete_role, name)
            deleted.append(name)
        return deleted

    def list_owned_roles(self) -> list[str]:
        """Scan all roles page by page and keep those carrying the ownership tag."""
        owned: list[str] = []
        marker: str | None = None
        while True:
            page = self._read("list", "roles", self._backend.list_roles, marker)
            for name in page.names:
                tags = self._read("list tags for role", name, self._backend.list_role_tags, name)
                if is_owned(tags):
                    owned.append(name)
            if not page.marker:
                return owned
            marker = page.marker

    def _ensure_role(self, spec: RoleSpec, trust_document: str) -> None:
        log = logger.bind(role=spec.name)
        log.debug("Ensuring IAM role", trust_policy=trust_document)

        existing = self._read("get role", spec.name, self._backend.get_role, spec.name)
        if existing is None:
            log.info("Creating IAM role")
            self._write(
                "create_role",
                spec.name,
                self._backend.create_role,
                spec.name,
                trust_document,
                ownership_tags(),
            )
        elif existing.trust_document != trust_document:
            log.info("Updating IAM role trust policy")
            self._write(
                "update_assume_role_policy",
                spec.name,
                self._backend.update_assume_role_policy,
                spec.name,
                trust_document,
            )
            self._write("tag_role", spec.name, self._backend.tag_role, spec.name, ownership_tags())
        else:
            log.debug("IAM role trust policy up to date")

        for policy_arn in spec.policy_arns:
            log.debug("Attaching policy", policy_arn=policy_arn)
            self._write(
                "attach_role_policy",
                spec.name,
                self._backend.attach_role_policy,
                spec.name,
                policy_arn,
                details={"policy_arn": policy_arn},
            )

        if spec.has_inline_policy:
            log.debug("Putting inline policy", policy_name=spec.inline_policy_name)
            self._write(
                "put_role_policy",
                spec.name,
                self._backend.put_role_policy,
                spec.name,
                spec.inline_policy_name,
                spec.inline_policy_document,
                details={"policy_name": spec.inline_policy_name},
            )

    def _read(self, operation: str, resource: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return func(*args)
        except IamError as e:
            raise ConvergenceError(resource, operation, e) from e

    def _write(
        self,
        action: str,
        resource: str,
        func: Callable[..., object],
        *args: Any,
        details: dict[str, Any] | None = None,
    ) -> None:
        try:
            func(*args)
        except IamError as e:
            if self._audit:
                self._audit.log_error("iam", action, resource, str(e))
            raise ConvergenceError(resource, action.replace("_", " "), e) from e
        if self._audit:
            self._audit.log_change("iam", action, resource, details)
