# ABOUTME: Kubernetes API access: server-side apply of manifest streams and cluster reads
# ABOUTME: Loads in-cluster config first and falls back to the local kubeconfig

"""Kubernetes client wrapper."""

from __future__ import annotations

import base64
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from cluster_bootstrap.errors import ConvergenceError, DiscoveryError, TransientBackendError

if TYPE_CHECKING:
    from cluster_bootstrap.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

DEFAULT_FIELD_MANAGER = "cluster-bootstrap"


def load_api_client() -> client.ApiClient:
    """API client from in-cluster config, else from ``$KUBECONFIG``/``~/.kube/config``."""
    try:
        config.load_incluster_config()
        logger.debug("Using in-cluster Kubernetes config")
    except ConfigException:
        try:
            config.load_kube_config()
            logger.debug("Using kubeconfig")
        except ConfigException as e:
            raise DiscoveryError(f"failed to load Kubernetes config: {e}") from e
    return client.ApiClient()


def object_ref(obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace") or ""
    return f"{obj.get('kind', '?')} {namespace}/{metadata.get('name', '?')}"


class KubeClient:
    """The handful of Kubernetes operations the installer needs."""

    def __init__(
        self,
        api_client: client.ApiClient | None = None,
        field_manager: str = DEFAULT_FIELD_MANAGER,
        audit: AuditLogger | None = None,
    ) -> None:
        self._api_client = api_client if api_client is not None else load_api_client()
        self._field_manager = field_manager
        self._audit = audit
        self._dynamic: DynamicClient | None = None
        self.core = client.CoreV1Api(self._api_client)

    # =========================================================================
    # CONNECTION FACTS
    # =========================================================================

    @property
    def host(self) -> str:
        return self._api_client.configuration.host

    def ca_cert_base64(self) -> str:
        """Cluster CA bundle, base64 encoded ("" when the config carries none)."""
        ca_file = self._api_client.configuration.ssl_ca_cert
        if not ca_file:
            return ""
        return base64.b64encode(Path(ca_file).read_bytes()).decode()

    def server_version(self) -> str:
        """``git_version`` of the API server, e.g. ``v1.32.1-eks-1234``."""
        try:
            info = client.VersionApi(self._api_client).get_code()
        except Urllib3HTTPError as e:
            raise TransientBackendError(f"Kubernetes API not reachable: {e}") from e
        return info.git_version

    # =========================================================================
    # READS
    # =========================================================================

    def get_secret_data(self, namespace: str, name: str) -> dict[str, bytes]:
        """Decoded data of a secret.

        Raises:
            ApiException: the secret cannot be read (404 included).
        """
        secret = self.core.read_namespaced_secret(name, namespace)
        return {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}

    def get_config_map_data(self, namespace: str, name: str) -> dict[str, str] | None:
        """Data of a config map, or None when it does not exist."""
        try:
            cm = self.core.read_namespaced_config_map(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return dict(cm.data or {})

    def list_nodes(self) -> list[dict[str, Any]]:
        """Nodes as ``{name, labels, cpu, memory, architecture}`` dicts."""
        nodes = []
        for node in self.core.list_node().items:
            capacity = node.status.capacity or {}
            nodes.append(
                {
                    "name": node.metadata.name,
                    "labels": dict(node.metadata.labels or {}),
                    "cpu": capacity.get("cpu", "0"),
                    "memory": capacity.get("memory", "0"),
                    "architecture": node.status.node_info.architecture,
                }
            )
        return nodes

    # =========================================================================
    # APPLY
    # =========================================================================

    def apply_manifests(self, stream: bytes) -> int:
        """Server-side apply every document of a YAML stream, in order.

        Empty documents are skipped. The first failure aborts the apply.

        Returns:
            Number of objects applied.
        """
        try:
            documents = list(yaml.safe_load_all(stream))
        except yaml.YAMLError as e:
            raise ConvergenceError("manifest stream", "decode", e) from e

        applied = 0
        for obj in documents:
            if not obj:
                continue
            if not isinstance(obj, dict):
                raise ConvergenceError("manifest stream", "decode", ValueError(f"not an object: {obj!r}"))
            self.apply_object(obj)
            applied += 1
        return applied

    def apply_object(self, obj: dict[str, Any]) -> None:
        ref = object_ref(obj)
        metadata = obj.get("metadata") or {}
        logger.debug("Applying object", object=ref)
        try:
            resource = self._dynamic_client().resources.get(
                api_version=obj.get("apiVersion"), kind=obj.get("kind")
            )
            namespace = None
            if resource.namespaced:
                namespace = metadata.get("namespace") or "default"
            self._dynamic_client().server_side_apply(
                resource,
                body=obj,
                name=metadata.get("name"),
                namespace=namespace,
                field_manager=self._field_manager,
                force_conflicts=True,
            )
        except (ApiException, ResourceNotFoundError) as e:
            if self._audit:
                self._audit.log_error("kubernetes", "apply", ref, str(e))
            raise ConvergenceError(ref, "apply", e) from e
        except Urllib3HTTPError as e:
            raise TransientBackendError(f"Kubernetes API not reachable: {e}") from e
        if self._audit:
            self._audit.log_change("kubernetes", "apply", ref)

    def _dynamic_client(self) -> DynamicClient:
        if self._dynamic is None:
            self._dynamic = DynamicClient(self._api_client)
        return self._dynamic
