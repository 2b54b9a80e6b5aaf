# ABOUTME: Advisory checks that the target cluster can host the platform
# ABOUTME: Kubernetes version, IRSA in aws-auth, required node groups and supported regions

"""Cluster prerequisite checks."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes.client.rest import ApiException
from kubernetes.utils.quantity import parse_quantity

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from cluster_bootstrap.backends.kube import KubeClient

logger = structlog.get_logger(__name__)

MIN_KUBE_VERSION = "1.32.0"
SUPPORTED_REGIONS = ("eu-west-1", "eu-west-2")
NODEGROUP_LABELS = ("eks.amazonaws.com/nodegroup", "alpha.eksctl.io/nodegroup-name")

_VERSION_RE = re.compile(r"^v?(\d+(?:\.\d+)*)")
GIB = 1024**3


@dataclass(frozen=True)
class NodeGroupRequirement:
    """Minimum shape of one node in a named node group."""

    name: str
    cpu: int
    memory_gb: int
    architecture: str = "amd64"

    def satisfied_by(self, node: dict[str, Any]) -> bool:
        labels = node.get("labels") or {}
        if not any(self.name in labels.get(label, "") for label in NODEGROUP_LABELS):
            return False
        cpu = parse_quantity(node.get("cpu", "0"))
        memory_gb = parse_quantity(node.get("memory", "0")) / GIB
        return cpu >= self.cpu and memory_gb >= self.memory_gb and node.get("architecture") == self.architecture


REQUIRED_NODE_GROUPS = (
    NodeGroupRequirement("cockroachdb", cpu=4, memory_gb=16),
    NodeGroupRequirement("nats", cpu=4, memory_gb=16),
    NodeGroupRequirement("general", cpu=8, memory_gb=16),
)


def parse_version(version: str) -> tuple[int, ...]:
    """``v1.32.1-eks-4f4795d`` -> ``(1, 32, 1)``."""
    match = _VERSION_RE.match(version.strip())
    if not match:
        raise ValueError(f"unrecognized version {version!r}")
    return tuple(int(part) for part in match.group(1).split("."))


def check_kube_version(version: str, minimum: str = MIN_KUBE_VERSION) -> str | None:
    """Problem description, or None when ``version`` is at least ``minimum``.

    Components are compared numerically, so 1.100 is newer than 1.32.
    """
    try:
        current = parse_version(version)
    except ValueError as e:
        return f"cluster version is not compatible: {e}"
    required = parse_version(minimum)
    width = max(len(current), len(required))
    if current + (0,) * (width - len(current)) < required + (0,) * (width - len(required)):
        return f"cluster version is not compatible: {version} is less than required {minimum}"
    return None


def check_irsa(aws_auth: dict[str, str] | None) -> str | None:
    if aws_auth is None:
        return "IRSA (IAM Roles for Service Accounts) is not enabled: aws-auth ConfigMap not found"
    if "sts.amazonaws.com" in aws_auth.get("mapRoles", ""):
        return None
    return "IRSA (IAM Roles for Service Accounts) is not enabled: not detected in aws-auth mapRoles"


def check_node_groups(
    nodes: Sequence[dict[str, Any]],
    requirements: Iterable[NodeGroupRequirement] = REQUIRED_NODE_GROUPS,
) -> list[str]:
    return [
        f"node group {req.name!r} not found or doesn't meet requirements "
        f"({req.cpu} CPU, {req.memory_gb}Gi, {req.architecture})"
        for req in requirements
        if not any(req.satisfied_by(node) for node in nodes)
    ]


def check_region(region: str, supported: Sequence[str] = SUPPORTED_REGIONS) -> str | None:
    if not region:
        return "region not set or detected"
    if region not in supported:
        return f"region {region!r} is not supported, supported regions are: {', '.join(supported)}"
    return None


def check_prerequisites(kube: KubeClient, region: str) -> list[str]:
    """Run every check and return the problems found (empty when all pass)."""
    problems: list[str] = []

    try:
        problem = check_kube_version(kube.server_version())
    except ApiException as e:
        problem = f"cluster version is not compatible: {e}"
    if problem:
        problems.append(problem)

    try:
        problem = check_irsa(kube.get_config_map_data("kube-system", "aws-auth"))
    except ApiException as e:
        problem = f"IRSA (IAM Roles for Service Accounts) is not enabled: {e}"
    if problem:
        problems.append(problem)

    try:
        problems.extend(check_node_groups(kube.list_nodes()))
    except ApiException as e:
        problems.append(f"node group validation failed: {e}")

    problem = check_region(region)
    if problem:
        problems.append(problem)

    for problem in problems:
        logger.warning("Prerequisite not met", problem=problem)
    return problems
