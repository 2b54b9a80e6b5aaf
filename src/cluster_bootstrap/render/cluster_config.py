# ABOUTME: Renders the cluster-config ConfigMap carrying discovered cloud metadata
# ABOUTME: Also joins several YAML streams into one composed manifest

"""Cluster configuration manifest."""

from __future__ import annotations

from typing import TYPE_CHECKING

import yaml

if TYPE_CHECKING:
    from cluster_bootstrap.models import ClusterMetadata

CONFIG_MAP_NAME = "cluster-config"
CONFIG_MAP_NAMESPACE = "default"
DOCUMENT_SEPARATOR = b"\n---\n"


def render_cluster_config(
    metadata: ClusterMetadata,
    extra: dict[str, str] | None = None,
    name: str = CONFIG_MAP_NAME,
    namespace: str = CONFIG_MAP_NAMESPACE,
) -> bytes:
    """ConfigMap exposing account, region, cluster name and OIDC provider to workloads."""
    data = dict(extra or {})
    data.update(metadata.to_config_map_data())
    config_map = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": dict(sorted(data.items())),
    }
    return yaml.safe_dump(config_map, sort_keys=False).encode()


def merge_manifests(*streams: bytes) -> bytes:
    """Concatenate YAML streams, terminating each with a document separator."""
    return b"".join(stream + DOCUMENT_SEPARATOR for stream in streams)
