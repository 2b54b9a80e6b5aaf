# ABOUTME: Configuration management for the cluster bootstrap installer
# ABOUTME: Handles environment variables for Vault access, rendering and retries

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the installer. It:

1. READS environment variables (like VAULT_ADDR, BOOTSTRAP_IMAGE_REGISTRY)
2. VALIDATES them (log levels, durations, paths)
3. PROVIDES typed access to settings throughout the application

Facts about the cluster itself (account, region, OIDC provider, ...) are
NOT configuration: they are discovered at runtime by discovery.py.

=============================================================================
ARCHITECTURE: TWO CONFIGURATION CLASSES
=============================================================================

1. VaultSettings: How to reach the in-cluster Vault (VAULT_* prefix)
   - Address, token, where to find the token when it is not given
   - Mount names for Kubernetes auth and the KV engine

2. BootstrapSettings: Main configuration container (BOOTSTRAP_* prefix)
   - Logging and audit
   - Overlay rendering (registry rewrite, CA patch, manifest source)
   - Infrastructure retry delay, apply field manager
   - Contains VaultSettings as nested object

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Vault settings (VAULT_ prefix):
    VAULT_ADDR                   -> Vault address
    VAULT_TOKEN                  -> Token (skips the secret lookup)
    VAULT_TOKEN_SECRET_NAMESPACE -> Namespace of the root token secret
    VAULT_TOKEN_SECRET_NAME      -> Name of the root token secret
    VAULT_TOKEN_SECRET_KEY       -> Key inside that secret
    VAULT_INSECURE               -> Skip TLS certificate verification

Installer settings (BOOTSTRAP_ prefix):
    BOOTSTRAP_LOG_LEVEL          -> DEBUG, INFO, WARNING, ERROR, CRITICAL
    BOOTSTRAP_JSON_LOGS          -> Emit JSON log lines
    BOOTSTRAP_AUDIT_LOG          -> Path to audit log file
    BOOTSTRAP_IMAGE_REGISTRY     -> Move every image under this registry
    BOOTSTRAP_CA_CERT_SECRET     -> Secret with a CA bundle for source-controller
    BOOTSTRAP_MANIFESTS_DIR      -> Base manifest tree (default: packaged tree)
    BOOTSTRAP_RETRY_DELAY        -> Seconds between infrastructure attempts
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# VAULT SETTINGS
# =============================================================================


class VaultSettings(BaseSettings):
    """
    How the installer reaches Vault.

    TOKEN RESOLUTION:
    -----------------
    If VAULT_TOKEN is set it is used as is. Otherwise the installer reads
    the token from a Kubernetes secret (vault/root-token, key "token" by
    default), which is where the Vault deployment stores it after init.
    """

    model_config = SettingsConfigDict(env_prefix="VAULT_", extra="ignore")

    addr: str = Field(
        default="http://vault.vault.svc.cluster.local.:8200",
        description="Vault address",
    )
    # The trailing dot makes the cluster DNS name fully qualified so the
    # resolver does not walk the search domains.

    token: SecretStr = Field(default=SecretStr(""), description="Vault token")

    token_secret_namespace: str = Field(default="vault")
    token_secret_name: str = Field(default="root-token")
    token_secret_key: str = Field(default="token")

    insecure: bool = Field(default=False, description="Skip TLS verification")

    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    auth_mount: str = Field(default="kubernetes", description="Kubernetes auth mount path")
    token_reviewer: str = Field(
        default="vault-token-reviewer",
        description="Service account whose token Vault uses for TokenReview calls",
    )
    kv_mount: str = Field(default="secret", description="Mount path of the KV v2 engine")

    @field_validator("addr")
    @classmethod
    def validate_addr(cls, v: str) -> str:
        """Default to http:// (in-cluster Vault) and drop trailing slashes."""
        if not v.startswith(("http://", "https://")):
            v = f"http://{v}"
        return v.rstrip("/")

    @field_validator("auth_mount", "kv_mount")
    @classmethod
    def validate_mount(cls, v: str) -> str:
        v = v.strip("/")
        if not v:
            raise ValueError("mount path must not be empty")
        return v


# =============================================================================
# MAIN INSTALLER SETTINGS
# =============================================================================


class BootstrapSettings(BaseSettings):
    """
    Main installer configuration.

    USAGE:
    ------
        settings = load_settings()  # Reads from environment
        print(settings.image_registry)
        print(settings.vault.addr)
    """

    model_config = SettingsConfigDict(
        env_prefix="BOOTSTRAP_",
        env_nested_delimiter="__",
        # BOOTSTRAP_VAULT__ADDR also works, VAULT_ADDR is the usual spelling
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # LOGGING AND AUDIT
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Render log lines as JSON")

    audit_log: Path | None = Field(default=None, description="Path to audit log file")
    # One JSON object per backend write: timestamp, run_id, backend, action,
    # target, result, details. When unset, audit events go through structlog.

    # -------------------------------------------------------------------------
    # RENDERING
    # -------------------------------------------------------------------------

    image_registry: str | None = Field(
        default=None,
        description="Registry every discovered image is moved under",
    )
    # e.g. "123456789012.dkr.ecr.eu-west-1.amazonaws.com/mirror"

    ca_cert_secret: str | None = Field(
        default=None,
        description="Secret in flux-system holding ca.crt for source-controller",
    )

    manifests_dir: Path | None = Field(
        default=None,
        description="Base manifest tree; the packaged tree when unset",
    )

    kustomize_bin: str = Field(default="kustomize", description="kustomize or kubectl binary")

    print_manifests: bool = Field(
        default=False,
        description="Write the composed manifest stream to stdout",
    )

    # -------------------------------------------------------------------------
    # CONVERGENCE
    # -------------------------------------------------------------------------

    retry_delay: float = Field(
        default=5.0,
        ge=0,
        description="Seconds between infrastructure reconciliation attempts",
    )

    field_manager: str = Field(default="cluster-bootstrap", description="Server-side apply field manager")

    # -------------------------------------------------------------------------
    # NESTED VAULT SETTINGS
    # -------------------------------------------------------------------------

    vault: VaultSettings = Field(default_factory=VaultSettings)

    @field_validator("image_registry", "ca_cert_secret")
    @classmethod
    def empty_is_unset(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().rstrip("/")
        return v or None


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> BootstrapSettings:
    """
    Load settings from environment with validation.

    If BOOTSTRAP_ENV_FILE is set, additional variables are read from that
    file. Useful for local runs against a kind or EKS cluster.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return BootstrapSettings(
        _env_file=os.environ.get("BOOTSTRAP_ENV_FILE"),
    )
