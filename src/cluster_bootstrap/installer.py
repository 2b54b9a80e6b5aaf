# ABOUTME: Installer orchestrator sequencing discovery, IAM, manifests and Vault
# ABOUTME: Owns the desired state and the retry loop around infrastructure reconciliation

"""
Installer orchestrator.

=============================================================================
THE SEQUENCE
=============================================================================

    prepare()                   discover ClusterMetadata (fatal on failure)
        |
    check_prerequisites()       advisory, problems are logged as warnings
        |
    run_infrastructure()        IAM roles + GC, retried while TRANSIENT
        |
    apply_bootstrap_manifests() render overlay + cluster-config, apply
        |
    reconcile_platform()        Vault policies, KV engine, Kubernetes auth

Only run_infrastructure() retries. It repeats reconcile_infrastructure()
with a fixed delay for as long as TransientBackendError is raised; any
other error stops the run. There is no attempt ceiling: the installer is
usually started before the cluster is fully up and waits for it.

=============================================================================
DESIGN: INJECTED BACKENDS
=============================================================================

Each backend can be passed in. The defaults build real clients (boto3 for
IAM, the kubernetes client, httpx for Vault). Tests pass in-memory fakes,
which keeps the orchestration logic testable without a cluster.
"""

from __future__ import annotations

import base64
import sys
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes.client.rest import ApiException
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_never, wait_fixed

from cluster_bootstrap.assets import DirectoryAssets, PackageAssets
from cluster_bootstrap.backends.iam import Boto3IamBackend
from cluster_bootstrap.backends.kube import KubeClient
from cluster_bootstrap.backends.vault import VaultClient
from cluster_bootstrap.discovery import discover as discover_metadata
from cluster_bootstrap.errors import ConvergenceError, DiscoveryError, TransientBackendError
from cluster_bootstrap.models import AuthConfig, ClusterMetadata, Policy, RoleBinding, RoleSpec
from cluster_bootstrap.prerequisites import check_prerequisites
from cluster_bootstrap.reconcilers.iam import IamRoleReconciler
from cluster_bootstrap.reconcilers.vault_auth import VaultAuthReconciler
from cluster_bootstrap.reconcilers.vault_engine import VaultEngineReconciler
from cluster_bootstrap.reconcilers.vault_policy import VaultPolicyReconciler
from cluster_bootstrap.render.cluster_config import merge_manifests, render_cluster_config
from cluster_bootstrap.render.overlay import OverlayRenderer

if TYPE_CHECKING:
    from collections.abc import Callable

    from cluster_bootstrap.assets import AssetProvider
    from cluster_bootstrap.backends.iam import IamBackend
    from cluster_bootstrap.backends.vault import VaultBackend
    from cluster_bootstrap.config import BootstrapSettings
    from cluster_bootstrap.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

FLUX_NAMESPACE = "flux-system"
ECR_READ_ONLY_POLICY = "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly"

FLUX_VAULT_POLICY = """
path "secret/*" {
  capabilities = ["read", "list"]
}
"""

CA_CERT_PATCH = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: source-controller
  namespace: flux-system
spec:
  template:
    spec:
      volumes:
      - name: ca-cert
        secret:
          secretName: {secret_name}
      containers:
      - name: manager
        volumeMounts:
        - name: ca-cert
          mountPath: /etc/ssl/certs/ca.crt
          subPath: ca.crt
"""


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Infrastructure not ready, retrying",
        attempt=state.attempt_number,
        delay=state.next_action.sleep if state.next_action else None,
        error=str(error),
    )


class Installer:
    """Runs one bootstrap of a cluster to convergence."""

    def __init__(
        self,
        settings: BootstrapSettings,
        kube: KubeClient | None = None,
        iam: IamBackend | None = None,
        vault: VaultBackend | None = None,
        assets: AssetProvider | None = None,
        audit: AuditLogger | None = None,
        discover: Callable[[KubeClient], ClusterMetadata] | None = None,
        renderer: OverlayRenderer | None = None,
    ) -> None:
        self.settings = settings
        self._kube = kube
        self._iam = iam
        self._vault = vault
        self._audit = audit
        self._discover = discover
        self._assets = assets
        self.metadata: ClusterMetadata | None = None
        self.renderer = renderer or OverlayRenderer(
            image_registry=settings.image_registry,
            kustomize_bin=settings.kustomize_bin,
        )
        if settings.ca_cert_secret:
            self.with_ca_cert(settings.ca_cert_secret)

    # =========================================================================
    # BACKENDS
    # =========================================================================

    @property
    def kube(self) -> KubeClient:
        if self._kube is None:
            self._kube = KubeClient(field_manager=self.settings.field_manager, audit=self._audit)
        return self._kube

    @property
    def iam(self) -> IamBackend:
        if self._iam is None:
            self._iam = Boto3IamBackend()
        return self._iam

    @property
    def assets(self) -> AssetProvider:
        if self._assets is None:
            if self.settings.manifests_dir:
                self._assets = DirectoryAssets(self.settings.manifests_dir)
            else:
                self._assets = PackageAssets()
        return self._assets

    def _require_metadata(self) -> ClusterMetadata:
        if self.metadata is None:
            raise RuntimeError("cluster metadata not discovered; call prepare() first")
        return self.metadata

    # =========================================================================
    # DESIRED STATE
    # =========================================================================

    def with_ca_cert(self, secret_name: str) -> Installer:
        """Mount ``ca.crt`` of ``secret_name`` into the source-controller."""
        self.renderer.add_patch(CA_CERT_PATCH.format(secret_name=secret_name))
        return self

    def irsa_roles(self) -> list[RoleSpec]:
        meta = self._require_metadata()
        return [
            RoleSpec(
                name=f"{meta.cluster_name}-flux-source-controller",
                policy_arns=[ECR_READ_ONLY_POLICY],
                oidc_provider_arn=meta.oidc_provider_arn,
                service_account=f"{FLUX_NAMESPACE}:source-controller",
                audience="sts.amazonaws.com",
            )
        ]

    def vault_policies(self) -> list[Policy]:
        return [Policy(name=FLUX_NAMESPACE, document=FLUX_VAULT_POLICY)]

    def vault_roles(self) -> list[RoleBinding]:
        return [
            RoleBinding(
                name=FLUX_NAMESPACE,
                bound_service_account_names=[FLUX_NAMESPACE],
                bound_service_account_namespaces=[FLUX_NAMESPACE],
                policies=[FLUX_NAMESPACE],
                ttl="1h",
                period="30m",
            )
        ]

    def auth_config(self) -> AuthConfig:
        meta = self._require_metadata()
        return AuthConfig(
            mount_path=self.settings.vault.auth_mount,
            kubernetes_host=meta.host,
            kubernetes_ca_cert=base64.b64decode(meta.ca_cert_base64).decode(),
            token_reviewer_jwt=self._token_reviewer_jwt(),
            roles=self.vault_roles(),
        )

    # =========================================================================
    # STEPS
    # =========================================================================

    def prepare(self) -> ClusterMetadata:
        """Discover cluster metadata.

        Raises:
            DiscoveryError: the facts the desired state needs are unavailable.
        """
        discover = self._discover or discover_metadata
        self.metadata = discover(self.kube)
        return self.metadata

    def check_prerequisites(self) -> list[str]:
        """Advisory checks. Problems are returned and logged, never raised."""
        meta = self._require_metadata()
        logger.debug("Checking prerequisites")
        return check_prerequisites(self.kube, meta.region)

    def reconcile_infrastructure(self) -> None:
        """Converge IRSA roles, then delete owned roles no longer desired.

        Raises:
            TransientBackendError: worth retrying after a delay.
            BootstrapError: any other failure is fatal.
        """
        logger.debug("Reconciling cluster infrastructure")
        desired = self.irsa_roles()
        reconciler = IamRoleReconciler(self.iam, audit=self._audit)
        reconciler.reconcile(desired)
        deleted = reconciler.garbage_collect(desired)
        if deleted:
            logger.info("Garbage collected IAM roles", roles=deleted)

    def run_infrastructure(self) -> None:
        """Repeat reconcile_infrastructure() until it stops failing transiently."""
        retrying = Retrying(
            retry=retry_if_exception_type(TransientBackendError),
            wait=wait_fixed(self.settings.retry_delay),
            stop=stop_never,
            before_sleep=_log_retry,
            reraise=True,
        )
        retrying(self.reconcile_infrastructure)

    def build_manifests(self) -> bytes:
        """Rendered overlay followed by the cluster-config ConfigMap."""
        meta = self._require_metadata()
        overlay = self.renderer.render(self.assets)
        return merge_manifests(overlay, render_cluster_config(meta))

    def apply_bootstrap_manifests(self) -> int:
        manifests = self.build_manifests()
        if self.settings.print_manifests:
            sys.stdout.write(manifests.decode())
            sys.stdout.flush()
        applied = self.kube.apply_manifests(manifests)
        logger.info("Applied bootstrap manifests", objects=applied)
        return applied

    def reconcile_platform(self) -> None:
        """Converge Vault: policies, the KV engine, then Kubernetes auth."""
        if self._vault is not None:
            self._reconcile_vault(self._vault)
            return
        with VaultClient(self.settings.vault, token=self._vault_token()) as vault:
            self._reconcile_vault(vault)

    def run(self) -> None:
        """The whole sequence."""
        self.prepare()
        self.check_prerequisites()
        self.run_infrastructure()
        self.apply_bootstrap_manifests()
        self.reconcile_platform()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _reconcile_vault(self, vault: VaultBackend) -> None:
        VaultPolicyReconciler(vault, audit=self._audit).reconcile(self.vault_policies())
        VaultEngineReconciler(vault, audit=self._audit).ensure_kv(self.settings.vault.kv_mount)
        VaultAuthReconciler(vault, audit=self._audit).reconcile(self.auth_config())
        logger.info("Reconciled Vault")

    def _vault_token(self) -> str:
        vault_settings = self.settings.vault
        token = vault_settings.token.get_secret_value()
        if token:
            return token

        ref = f"secret {vault_settings.token_secret_namespace}/{vault_settings.token_secret_name}"
        try:
            data = self.kube.get_secret_data(vault_settings.token_secret_namespace, vault_settings.token_secret_name)
        except ApiException as e:
            raise ConvergenceError(ref, "read Vault root token from", e) from e
        if not data:
            raise DiscoveryError(f"Vault root token {ref} is empty")
        if vault_settings.token_secret_key not in data:
            raise DiscoveryError(f"Vault root token {ref} does not contain {vault_settings.token_secret_key!r} key")
        return data[vault_settings.token_secret_key].decode().strip()

    def _token_reviewer_jwt(self) -> str:
        """JWT of the token reviewer service account, "" to let Vault use its own."""
        vault_settings = self.settings.vault
        try:
            data: dict[str, Any] = self.kube.get_secret_data(
                vault_settings.token_secret_namespace, vault_settings.token_reviewer
            )
        except ApiException as e:
            if e.status != 404:
                raise ConvergenceError(f"secret {vault_settings.token_reviewer}", "read", e) from e
            logger.warning(
                "Token reviewer secret not found, Vault will use its own service account",
                secret=vault_settings.token_reviewer,
            )
            return ""
        token = data.get("token", b"")
        return token.decode() if isinstance(token, bytes) else str(token)
