# ABOUTME: Container image reference parsing and image discovery in manifests
# ABOUTME: Computes registry-rewrite overrides for every image found in a manifest tree

"""
Image references and registry rewrites.

A reference such as ``ghcr.io/fluxcd/source-controller:v1.2.0`` is split
into registry, repository path, tag and digest following the Docker
reference grammar:

    nginx                      -> index.docker.io / library/nginx
    library/nginx:1.25         -> index.docker.io / library/nginx : 1.25
    myregistry.io/app:2.0      -> myregistry.io   / app           : 2.0
    localhost:5000/tools/x@sha256:...  -> localhost:5000 / tools/x @ sha256:...

Discovery walks every YAML document of a manifest tree and collects string
values stored under a key named ``image`` at any depth, so it works for any
resource kind (Deployments, CronJobs, CRDs with custom pod templates, ...).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from cluster_bootstrap.errors import ImageReferenceError
from cluster_bootstrap.models import ImageOverride

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = structlog.get_logger(__name__)

DEFAULT_REGISTRY = "index.docker.io"
DOCKER_HUB_ALIASES = frozenset(["docker.io", "index.docker.io", "registry-1.docker.io"])
OFFICIAL_NAMESPACE = "library/"

YAML_SUFFIXES = (".yaml", ".yml")

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_REGISTRY_RE = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9.-]*[a-zA-Z0-9])?(?::[0-9]+)?$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$")


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @property
    def is_docker_hub(self) -> bool:
        return self.registry == DEFAULT_REGISTRY

    @property
    def repository_path(self) -> str:
        """Repository without the implicit Docker Hub ``library/`` namespace."""
        if self.is_docker_hub and self.repository.startswith(OFFICIAL_NAMESPACE):
            return self.repository[len(OFFICIAL_NAMESPACE) :]
        return self.repository

    @property
    def familiar_name(self) -> str:
        """Short name as people write it: ``nginx``, ``bitnami/redis``, ``ghcr.io/org/app``."""
        if self.is_docker_hub:
            return self.repository_path
        return f"{self.registry}/{self.repository}"


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_image_reference(ref: str) -> ImageReference:
    """Parse an image reference.

    Raises:
        ImageReferenceError: if ``ref`` is not a valid reference.
    """
    if not isinstance(ref, str) or not ref or ref != ref.strip():
        raise ImageReferenceError(f"invalid image reference {ref!r}")

    name, digest = ref, None
    if "@" in name:
        name, digest = name.split("@", 1)
        if not _DIGEST_RE.match(digest):
            raise ImageReferenceError(f"invalid digest in image reference {ref!r}")

    tag = None
    colon = name.rfind(":")
    if colon > name.rfind("/"):
        name, tag = name[:colon], name[colon + 1 :]
        if not _TAG_RE.match(tag):
            raise ImageReferenceError(f"invalid tag in image reference {ref!r}")

    first, sep, rest = name.partition("/")
    if sep and _looks_like_registry(first):
        registry, repository = first, rest
        if not _REGISTRY_RE.match(registry):
            raise ImageReferenceError(f"invalid registry in image reference {ref!r}")
    else:
        registry, repository = DEFAULT_REGISTRY, name

    if registry in DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = OFFICIAL_NAMESPACE + repository

    if not repository or not all(_COMPONENT_RE.match(c) for c in repository.split("/")):
        raise ImageReferenceError(f"invalid repository in image reference {ref!r}")

    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)


def find_image_values(document: Any, images: set[str]) -> None:
    """Collect every string stored under an ``image`` key, at any depth."""
    if isinstance(document, dict):
        for key, value in document.items():
            if key == "image":
                if isinstance(value, str):
                    images.add(value)
            else:
                find_image_values(value, images)
    elif isinstance(document, list):
        for item in document:
            find_image_values(item, images)


def discover_images(files: Iterable[tuple[str, bytes]]) -> set[str]:
    """Scan YAML files for image references.

    A document that fails to parse ends the scan of its file; documents
    before it still count.
    """
    images: set[str] = set()
    for path, content in files:
        if not path.endswith(YAML_SUFFIXES):
            continue
        try:
            for document in yaml.safe_load_all(content):
                find_image_values(document, images)
        except yaml.YAMLError as e:
            logger.debug("Skipping rest of unparsable YAML file", path=path, error=str(e))
    return images


def compute_image_overrides(
    declared: Iterable[dict[str, Any]],
    images: Iterable[str],
    registry: str,
) -> list[ImageOverride]:
    """Overrides moving each discovered image under ``registry``.

    Images whose name already has a declared override are left alone, and
    unparsable references are skipped. The result is sorted by name so
    repeated renders produce the same kustomization.
    """
    registry = registry.rstrip("/")
    taken = {entry.get("name") for entry in declared}
    overrides: dict[str, ImageOverride] = {}

    for image in sorted(set(images)):
        try:
            ref = parse_image_reference(image)
        except ImageReferenceError:
            logger.debug("Skipping invalid image reference", image=image)
            continue

        name = ref.familiar_name
        if name in taken or name in overrides:
            continue
        overrides[name] = ImageOverride(name=name, new_name=f"{registry}/{ref.repository_path}")

    for override in overrides.values():
        logger.debug("Replacing image", image=override.name, new_name=override.new_name)
    return sorted(overrides.values(), key=lambda o: o.name)
