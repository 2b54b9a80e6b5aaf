# ABOUTME: Renders a kustomize overlay with raw patches and registry rewrites
# ABOUTME: Works in a private temp directory that is removed on every exit path

"""
Manifest overlay renderer.

=============================================================================
HOW A RENDER WORKS
=============================================================================

    base tree (AssetProvider)
        |  copied into /tmp/cluster-bootstrap-XXXXXXXX/
        v
    kustomization.yaml
        + images:   declared overrides, then one per discovered image
        + patches:  custom-patch-0.yaml, custom-patch-1.yaml, ...
        |
        v
    kustomize build  ->  "---"-separated YAML stream (bytes)

Patches are raw YAML fragments without a target selector; kustomize finds
the target from the fragment's own apiVersion/kind/metadata. The renderer
therefore needs no schema for the resources it patches.

The renderer is configured once (patches, registry) and can render any
number of asset trees. Each call gets its own temp directory.
"""

from __future__ import annotations

import shutil
import subprocess
import tempfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from cluster_bootstrap.errors import RenderError
from cluster_bootstrap.render.images import compute_image_overrides, discover_images

if TYPE_CHECKING:
    from collections.abc import Callable

    from cluster_bootstrap.assets import AssetProvider

logger = structlog.get_logger(__name__)

KUSTOMIZATION_FILES = ("kustomization.yaml", "kustomization.yml", "Kustomization")
WORKDIR_PREFIX = "cluster-bootstrap-"
PATCH_FILE_TEMPLATE = "custom-patch-{index}.yaml"


def kustomize_build(workdir: Path, binary: str = "kustomize") -> bytes:
    """Run ``kustomize build`` (or ``kubectl kustomize``) and return stdout.

    Raises:
        RenderError: the binary is missing or the build failed. The build's
            stderr is included unchanged.
    """
    if Path(binary).name == "kubectl":
        cmd = [binary, "kustomize", str(workdir)]
    else:
        cmd = [binary, "build", str(workdir)]

    logger.debug("Running overlay build", cmd=cmd)
    try:
        result = subprocess.run(cmd, capture_output=True, check=False)
    except FileNotFoundError as e:
        raise RenderError(f"overlay build failed: {binary!r} not found") from e

    if result.returncode != 0:
        stderr = result.stderr.decode(errors="replace")
        raise RenderError(f"kustomize build failed: {stderr}")
    return result.stdout


class OverlayRenderer:
    """Composes a base manifest tree with patches and image rewrites."""

    def __init__(
        self,
        image_registry: str | None = None,
        kustomize_bin: str = "kustomize",
        builder: Callable[[Path], bytes] | None = None,
    ) -> None:
        self._image_registry = image_registry
        self._patches: list[str] = []
        self._builder = builder or (lambda workdir: kustomize_build(workdir, kustomize_bin))

    @property
    def patches(self) -> list[str]:
        return list(self._patches)

    def add_patch(self, patch_yaml: str) -> OverlayRenderer:
        """Append a patch. Patches are applied in the order they were added."""
        self._patches.append(patch_yaml)
        return self

    def with_image_registry(self, registry: str | None) -> OverlayRenderer:
        self._image_registry = registry or None
        return self

    def render(self, assets: AssetProvider) -> bytes:
        """Build the overlay over ``assets`` and return the composed YAML stream.

        Raises:
            RenderError: copying, kustomization handling or the build failed.
        """
        workdir = Path(tempfile.mkdtemp(prefix=WORKDIR_PREFIX))
        log = logger.bind(workdir=str(workdir))
        try:
            files = self._copy_assets(assets, workdir)
            kustomization_path = self._find_kustomization(workdir)
            kustomization = self._load_kustomization(kustomization_path)

            if self._image_registry:
                images = discover_images(files)
                log.debug("Found unique images in manifest tree", count=len(images))
                declared = list(kustomization.get("images") or [])
                if not all(isinstance(entry, dict) for entry in declared):
                    raise RenderError("kustomization images entries must be mappings")
                overrides = compute_image_overrides(declared, images, self._image_registry)
                kustomization["images"] = declared + [o.to_kustomization() for o in overrides]

            patches = list(kustomization.get("patches") or [])
            for index, patch in enumerate(self._patches):
                filename = PATCH_FILE_TEMPLATE.format(index=index)
                (workdir / filename).write_text(patch)
                patches.append({"path": filename})
            if patches:
                kustomization["patches"] = patches

            kustomization_path.write_text(yaml.safe_dump(kustomization, sort_keys=False))
            log.debug("Building overlay", patches=len(self._patches))
            return self._builder(workdir)
        except OSError as e:
            raise RenderError(f"failed to prepare overlay: {e}") from e
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    @staticmethod
    def _copy_assets(assets: AssetProvider, workdir: Path) -> list[tuple[str, bytes]]:
        files = []
        for rel, content in assets.iter_files():
            relpath = PurePosixPath(rel)
            if relpath.is_absolute() or ".." in relpath.parts:
                raise RenderError(f"asset path {rel!r} escapes the manifest tree")
            target = workdir.joinpath(*relpath.parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
            files.append((rel, content))
        return files

    @staticmethod
    def _find_kustomization(workdir: Path) -> Path:
        for name in KUSTOMIZATION_FILES:
            candidate = workdir / name
            if candidate.is_file():
                return candidate
        raise RenderError("manifest tree has no kustomization.yaml at its root")

    @staticmethod
    def _load_kustomization(path: Path) -> dict[str, Any]:
        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            raise RenderError(f"failed to decode {path.name}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise RenderError(f"{path.name} is not a mapping")
        return data
