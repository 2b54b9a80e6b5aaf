# ABOUTME: Vault HTTP API client with retry logic and structured errors
# ABOUTME: Covers auth methods, logical read/write, ACL policies and secrets engines

"""
Vault API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The Vault reconcilers talk to Vault through this small client. It handles:

1. HTTP COMMUNICATION: requests against Vault's /v1 API
2. AUTHENTICATION: the X-Vault-Token header
3. ERROR HANDLING: HTTP errors become VaultError, unreachable servers become
   TransientBackendError
4. RETRY LOGIC: timeouts are retried with exponential backoff
5. SECRET MASKING: helper to hide credentials before payloads are logged

=============================================================================
VAULT API OVERVIEW
=============================================================================

Only these endpoints are used:

    GET    /v1/sys/auth                  - List enabled auth methods
    POST   /v1/sys/auth/{path}           - Enable an auth method
    GET    /v1/{path}                    - Read any logical path
    POST   /v1/{path}                    - Write any logical path
    GET    /v1/sys/policies/acl/{name}   - Read an ACL policy
    PUT    /v1/sys/policies/acl/{name}   - Create or update an ACL policy
    GET    /v1/sys/mounts                - List secrets engines
    POST   /v1/sys/mounts/{path}         - Mount a secrets engine
    DELETE /v1/sys/mounts/{path}         - Unmount a secrets engine

Responses wrap their payload in a "data" envelope:
    {"request_id": "...", "lease_id": "", "data": {...}, ...}

Errors look like:
    {"errors": ["permission denied"]}

A 404 on a logical read or policy read means "does not exist" and is
returned as None rather than raised.

=============================================================================
CONTEXT MANAGER
=============================================================================

    with VaultClient(settings) as vault:
        mounts = vault.list_auth_methods()

__enter__ creates the httpx connection pool, __exit__ closes it, even when
the body raises.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cluster_bootstrap.errors import TransientBackendError

if TYPE_CHECKING:
    from cluster_bootstrap.config import VaultSettings

logger = structlog.get_logger(__name__)


# =============================================================================
# SECRET MASKING
# =============================================================================

# Keys whose values never appear in logs. Compared case-insensitively.
SENSITIVE_KEYS = frozenset(
    [
        "token",
        "token_reviewer_jwt",
        "password",
        "secret",
        "secret_id",
        "client_token",
        "private_key",
    ]
)

MASK = "***MASKED***"


def mask_secrets(data: Any) -> Any:
    """
    Return a copy of ``data`` with sensitive values replaced by a mask.

    Recurses through dicts and lists so nested payloads are covered:

        {"auth": {"client_token": "s.abc"}} -> {"auth": {"client_token": "***MASKED***"}}

    Only used for logging. Payloads sent to or compared against Vault are
    never masked.
    """
    if isinstance(data, dict):
        return {
            k: MASK if str(k).lower() in SENSITIVE_KEYS else mask_secrets(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [mask_secrets(item) for item in data]
    return data


# =============================================================================
# VAULT ERROR CLASS
# =============================================================================


class VaultError(Exception):
    """
    Structured Vault API error.

    USAGE:
    ------
    try:
        vault.write("auth/kubernetes/config", payload)
    except VaultError as e:
        print(f"Error {e.code}: {e.message}")  # Error 403: permission denied
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        """
        Args:
            code: HTTP status code
            message: First error reported by Vault
            details: Remaining errors or the raw body
        """
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Vault API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class VaultBackend(Protocol):
    """Vault operations the reconcilers depend on."""

    def list_auth_methods(self) -> dict[str, Any]: ...

    def enable_auth_method(self, path: str, method_type: str) -> None: ...

    def read(self, path: str) -> dict[str, Any] | None: ...

    def write(self, path: str, data: dict[str, Any]) -> None: ...

    def read_policy(self, name: str) -> str | None: ...

    def put_policy(self, name: str, policy: str) -> None: ...

    def list_mounts(self) -> dict[str, Any]: ...

    def enable_secrets_engine(
        self,
        path: str,
        engine_type: str,
        options: dict[str, str] | None = None,
    ) -> None: ...


def unwrap(response: dict[str, Any]) -> dict[str, Any]:
    """
    Extract the "data" payload from a Vault response.

    Some endpoints (``sys/auth``, ``sys/mounts``) also repeat the payload at
    the top level; the "data" envelope is preferred when present.
    """
    data = response.get("data")
    if isinstance(data, dict):
        return data
    return response


# =============================================================================
# VAULT CLIENT
# =============================================================================


class VaultClient:
    """
    Synchronous Vault API client with retry logic.

    LIFECYCLE:
    ----------
    1. Create: vault = VaultClient(settings, token)
    2. Enter:  with vault: ...
    3. Use:    vault.read("auth/kubernetes/config")
    4. Exit:   connection pool closed

    RETRY LOGIC:
    ------------
    Timeouts are retried: 3 attempts, exponential backoff between 1 and 10
    seconds. A timeout on the last attempt and connection failures both
    surface as TransientBackendError naming the method and path.
    """

    def __init__(
        self,
        settings: VaultSettings,
        token: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Args:
            settings: Vault address, timeout and default token.
            token: Token overriding ``settings.token``, e.g. one discovered
                   from a Kubernetes secret.
            transport: Optional httpx transport (tests, proxies).
        """
        self._settings = settings
        self._token = token if token is not None else settings.token.get_secret_value()
        self._transport = transport
        self._client: httpx.Client | None = None

    def __enter__(self) -> VaultClient:
        self._client = httpx.Client(
            base_url=f"{self._settings.addr}/v1",
            headers={
                "X-Vault-Token": self._token,
                "Content-Type": "application/json",
            },
            timeout=self._settings.timeout,
            verify=not self._settings.insecure,
            transport=self._transport,
        )
        return self

    def __exit__(self, *args: object) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def _request(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        """
        Make a request against the Vault API.

        Args:
            method: HTTP method
            path: Path below /v1, without leading slash
            json_data: JSON body
            allow_missing: Return None on 404 instead of raising

        Returns:
            Decoded JSON body ({} for 204 No Content), or None for an
            allowed 404.

        Raises:
            VaultError: On 4xx/5xx responses
            TransientBackendError: When Vault cannot be reached, or still
                times out after the last retry
            RuntimeError: If the client is used outside ``with``
        """
        try:
            return self._send(method, path, json_data, allow_missing)
        except httpx.TimeoutException as e:
            logger.warning("Vault request timed out", method=method, path=path, error=str(e))
            raise TransientBackendError(f"Vault {method} {path}: timed out") from e

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    def _send(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None,
        allow_missing: bool,
    ) -> dict[str, Any] | None:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'with' context manager.")

        log = logger.bind(method=method, path=path)
        log.debug("Making Vault API request")

        try:
            response = self._client.request(method, f"/{path.lstrip('/')}", json=json_data)
        except httpx.ConnectError as e:
            log.warning("Vault not reachable", error=str(e))
            raise TransientBackendError(f"Vault {method} {path}: {e}") from e

        if response.status_code == 404 and allow_missing:
            return None

        if response.status_code >= 400:
            body = response.text
            log.warning("Vault API error", status=response.status_code, body=body[:200])

            message = f"HTTP {response.status_code}"
            details = None
            try:
                errors = response.json().get("errors") or []
                if errors:
                    message = str(errors[0])
                    details = "; ".join(str(e) for e in errors[1:]) or None
            except ValueError:
                details = body[:200] if body else None

            raise VaultError(code=response.status_code, message=message, details=details)

        return response.json() if response.content else {}

    # =========================================================================
    # AUTH METHODS
    # =========================================================================

    def list_auth_methods(self) -> dict[str, Any]:
        """Enabled auth methods keyed by mount path with trailing slash."""
        return unwrap(self._request("GET", "sys/auth") or {})

    def enable_auth_method(self, path: str, method_type: str) -> None:
        self._request("POST", f"sys/auth/{path}", json_data={"type": method_type})

    # =========================================================================
    # LOGICAL PATHS
    # =========================================================================

    def read(self, path: str) -> dict[str, Any] | None:
        """Read a logical path. Returns the "data" payload, or None when absent."""
        response = self._request("GET", path, allow_missing=True)
        if response is None:
            return None
        return unwrap(response)

    def write(self, path: str, data: dict[str, Any]) -> None:
        self._request("POST", path, json_data=data)

    # =========================================================================
    # ACL POLICIES
    # =========================================================================

    def read_policy(self, name: str) -> str | None:
        """Stored policy text, or None when the policy does not exist."""
        response = self._request("GET", f"sys/policies/acl/{name}", allow_missing=True)
        if response is None:
            return None
        return unwrap(response).get("policy")

    def put_policy(self, name: str, policy: str) -> None:
        self._request("PUT", f"sys/policies/acl/{name}", json_data={"policy": policy})

    # =========================================================================
    # SECRETS ENGINES
    # =========================================================================

    def list_mounts(self) -> dict[str, Any]:
        """Mounted secrets engines keyed by path with trailing slash."""
        return unwrap(self._request("GET", "sys/mounts") or {})

    def enable_secrets_engine(
        self,
        path: str,
        engine_type: str,
        options: dict[str, str] | None = None,
    ) -> None:
        body: dict[str, Any] = {"type": engine_type}
        if options:
            body["options"] = options
        self._request("POST", f"sys/mounts/{path}", json_data=body)

    def disable_secrets_engine(self, path: str) -> None:
        """Unmount an engine. The installer never removes engines; this is for operators."""
        self._request("DELETE", f"sys/mounts/{path}")
