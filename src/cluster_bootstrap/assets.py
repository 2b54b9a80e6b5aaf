# ABOUTME: Providers for the base manifest tree fed into the overlay renderer
# ABOUTME: Reads manifests from a directory on disk or from the installed package

"""Manifest asset providers.

The renderer receives its base tree explicitly on every call, so two
renders with different providers never share state.
"""

from __future__ import annotations

from importlib.resources import files
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from cluster_bootstrap.errors import RenderError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from importlib.resources.abc import Traversable


class AssetProvider(Protocol):
    def iter_files(self) -> Iterator[tuple[str, bytes]]:
        """Yield ``(relative posix path, content)`` for every file of the tree."""
        ...


class DirectoryAssets:
    """Manifest tree rooted at a directory on disk."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def iter_files(self) -> Iterator[tuple[str, bytes]]:
        if not self._root.is_dir():
            raise RenderError(f"manifest directory {self._root} does not exist")
        for path in sorted(self._root.rglob("*")):
            if path.is_file():
                yield path.relative_to(self._root).as_posix(), path.read_bytes()


class PackageAssets:
    """Manifest tree shipped inside a Python package."""

    def __init__(self, package: str = "cluster_bootstrap", subdir: str = "manifests") -> None:
        self._package = package
        self._subdir = subdir

    def iter_files(self) -> Iterator[tuple[str, bytes]]:
        root = files(self._package).joinpath(self._subdir)
        if not root.is_dir():
            raise RenderError(f"package {self._package} has no {self._subdir}/ directory")
        yield from _walk(root, "")


def _walk(node: Traversable, prefix: str) -> Iterator[tuple[str, bytes]]:
    for child in sorted(node.iterdir(), key=lambda c: c.name):
        if child.name == "__pycache__" or child.name.endswith(".py"):
            continue
        rel = f"{prefix}{child.name}"
        if child.is_dir():
            yield from _walk(child, f"{rel}/")
        else:
            yield rel, child.read_bytes()
