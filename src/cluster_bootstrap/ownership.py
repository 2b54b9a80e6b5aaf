# ABOUTME: Ownership marker attached to cloud resources managed by the installer
# ABOUTME: Garbage collection only ever considers resources carrying this tag

"""Ownership tag helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

OWNERSHIP_TAG_KEY = "kubernetes.io/cluster/cluster-bootstrap"
OWNERSHIP_TAG_VALUE = "owned"


def ownership_tags() -> list[dict[str, str]]:
    """Tag list in the IAM ``[{"Key": ..., "Value": ...}]`` shape."""
    return [{"Key": OWNERSHIP_TAG_KEY, "Value": OWNERSHIP_TAG_VALUE}]


def is_owned(tags: Iterable[Mapping[str, Any]]) -> bool:
    """True when the exact key/value ownership pair is present."""
    return any(
        tag.get("Key") == OWNERSHIP_TAG_KEY and tag.get("Value") == OWNERSHIP_TAG_VALUE
        for tag in tags
    )
