# ABOUTME: Discovers cloud and cluster facts the desired state is built from
# ABOUTME: Account, region and OIDC provider via STS/EKS; version, host and CA via Kubernetes

"""
Cluster metadata discovery.

Nothing here is configured by the operator. The installer runs inside (or
against) an EKS cluster and works out where it is:

    STS GetCallerIdentity      -> account id
    boto3 session              -> region
    KUBERNETES_SERVICE_HOST    -> cluster name (EKS endpoint hostname)
    EKS DescribeCluster        -> OIDC issuer -> OIDC provider ARN
    Kubernetes /version        -> kube version
    client configuration       -> API host, CA bundle
    kube-system/kube-dns       -> cluster DNS domain (default cluster.local)
"""

from __future__ import annotations

import os
import re
from typing import TYPE_CHECKING, Any

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from kubernetes.client.rest import ApiException

from cluster_bootstrap.errors import DiscoveryError
from cluster_bootstrap.models import ClusterMetadata

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cluster_bootstrap.backends.kube import KubeClient

logger = structlog.get_logger(__name__)

KUBE_HOST_ENV = "KUBERNETES_SERVICE_HOST"
EKS_HOST_RE = re.compile(r"^([a-zA-Z0-9-]+)\..*\.eks\.amazonaws\.com$")
DEFAULT_DNS_DOMAIN = "cluster.local"


def infer_cluster_name(kube_host: str | None) -> str:
    """Cluster name from an EKS API endpoint like ``<name>.yl4.eu-west-1.eks.amazonaws.com``.

    Raises:
        DiscoveryError: not in a cluster, or the host is not an EKS endpoint.
    """
    if not kube_host:
        raise DiscoveryError(f"not running inside a Kubernetes cluster (missing {KUBE_HOST_ENV})")
    hostname = kube_host.split("://", 1)[-1].split("/", 1)[0].rsplit(":", 1)[0]
    match = EKS_HOST_RE.match(hostname)
    if not match:
        raise DiscoveryError(f"hostname {hostname} doesn't look like an EKS endpoint")
    return match.group(1)


def oidc_provider_arn(account_id: str, issuer: str) -> str:
    """``arn:aws:iam::<account>:oidc-provider/<issuer without https://>``."""
    return f"arn:aws:iam::{account_id}:oidc-provider/{issuer.removeprefix('https://')}"


def discover_aws(
    session: boto3.session.Session | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Account id, region, cluster name and OIDC provider ARN."""
    session = session or boto3.session.Session()
    environ = os.environ if environ is None else environ

    region = session.region_name
    if not region:
        raise DiscoveryError("AWS region not found in config")

    try:
        account_id = session.client("sts").get_caller_identity()["Account"]
    except (BotoCoreError, ClientError) as e:
        raise DiscoveryError(f"failed to get caller identity: {e}") from e

    cluster_name = infer_cluster_name(environ.get(KUBE_HOST_ENV))

    try:
        cluster = session.client("eks").describe_cluster(name=cluster_name)["cluster"]
    except (BotoCoreError, ClientError) as e:
        raise DiscoveryError(f"failed to describe EKS cluster {cluster_name}: {e}") from e

    issuer = cluster.get("identity", {}).get("oidc", {}).get("issuer", "")
    if not issuer:
        raise DiscoveryError("OIDC issuer not found in cluster identity")

    return {
        "account_id": account_id,
        "region": region,
        "cluster_name": cluster_name,
        "oidc_provider_arn": oidc_provider_arn(account_id, issuer),
    }


def discover_kube(kube: KubeClient) -> dict[str, Any]:
    """Kube version, API host, CA bundle and DNS domain."""
    try:
        version = kube.server_version()
        dns = kube.get_config_map_data("kube-system", "kube-dns") or {}
    except ApiException as e:
        raise DiscoveryError(f"failed to load Kubernetes metadata: {e}") from e

    return {
        "kube_version": version,
        "host": kube.host,
        "ca_cert_base64": kube.ca_cert_base64(),
        "cluster_dns_domain": dns.get("clusterDomain") or DEFAULT_DNS_DOMAIN,
    }


def discover(
    kube: KubeClient,
    session: boto3.session.Session | None = None,
    environ: Mapping[str, str] | None = None,
) -> ClusterMetadata:
    metadata = ClusterMetadata(**discover_aws(session, environ), **discover_kube(kube))
    logger.info(
        "Discovered cluster metadata",
        cluster=metadata.cluster_name,
        region=metadata.region,
        account=metadata.account_id,
        kube_version=metadata.kube_version,
    )
    return metadata
