# ABOUTME: Structured logging with run IDs for cluster-bootstrap
# ABOUTME: Configures structlog and records every backend write in an audit trail

"""
Structured logging with run IDs and a change audit trail.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Two observability features live here:

1. STRUCTURED LOGGING: every log line is an event name plus key/value pairs,
   rendered as colored text for terminals or JSON for log collectors.

2. CHANGE AUDIT: every write the installer makes against a backend
   (create a role, write a Vault path, apply a manifest) is recorded with the
   resource it touched. Reads and "already up to date" decisions are not
   audited.

=============================================================================
RUN IDs
=============================================================================

An installer invocation walks through discovery, IAM, manifests and Vault.
Each step logs on its own. The RUN ID ties all lines of one invocation
together, including lines written by retries of the infrastructure step:

    {"run_id": "5c1e9a02", "event": "Reconciling IAM role", "role": "..."}
    {"run_id": "5c1e9a02", "event": "audit", "action": "create_role", ...}

The ID lives in a ContextVar so nested helpers never need to pass it along.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# RUN ID MANAGEMENT
# =============================================================================

run_id: ContextVar[str] = ContextVar("run_id", default="")


def get_run_id() -> str:
    """
    Get the current run ID, generating one on first use.

    Returns:
        8-character hex run ID.
    """
    rid = run_id.get()
    if not rid:
        rid = uuid.uuid4().hex[:8]
        run_id.set(rid)
    return rid


def set_run_id(rid: str) -> None:
    """Set the run ID for the current context ("" regenerates on next access)."""
    run_id.set(rid)


def add_run_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor adding ``run_id`` to every event."""
    event_dict["run_id"] = get_run_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structlog. Call once at startup; calling again reconfigures.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: values bound with bind_contextvars()
    2. add_log_level: "level" field
    3. TimeStamper: ISO 8601 timestamp
    4. add_run_id: the invocation's run ID
    5. Renderer: JSON (json_output=True) or colored console text

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL. Unknown values
               fall back to INFO.
        json_output: Emit one JSON object per line instead of console text.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_run_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        # stderr keeps stdout free for the composed manifest stream
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Records every change the installer makes to a backend.

    ENTRY STRUCTURE:
    ----------------
    {
        "timestamp": "2026-01-15T10:30:00.000000+00:00",
        "run_id": "5c1e9a02",
        "backend": "iam",
        "action": "create_role",
        "target": "prod-flux-source-controller",
        "result": "success",
        "details": {...}  // optional
    }

    OUTPUT:
    -------
    With a path, entries are appended to that file as JSON lines (the file
    is never truncated). Without one, entries go through structlog under the
    "audit" logger name.

    Entries are also kept in memory (``entries``) so callers can report a
    summary of what one run changed.
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")
        self.entries: list[dict[str, Any]] = []

    def log(
        self,
        backend: str,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Record one backend operation.

        Args:
            backend: "iam", "vault" or "kubernetes"
            action: Operation performed, e.g. "update_assume_role_policy"
            target: Resource identifier, e.g. a role name or Vault path
            result: "success" or "error"
            details: Extra context (error text, policy ARN, ...)
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "run_id": get_run_id(),
            "backend": backend,
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details
        self.entries.append(entry)

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                backend=backend,
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_change(
        self,
        backend: str,
        action: str,
        target: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record a successful write."""
        self.log(backend, action, target, "success", details)

    def log_error(self, backend: str, action: str, target: str, error: str) -> None:
        """Record a failed write."""
        self.log(backend, action, target, "error", {"error": error})

    @property
    def change_count(self) -> int:
        return sum(1 for e in self.entries if e["result"] == "success")
