# ABOUTME: Exception hierarchy shared by reconcilers, renderer and installer
# ABOUTME: Separates input, transient, convergence, render and discovery failures

"""
Error taxonomy for cluster-bootstrap.

Every error carries enough context to name the failing resource and the
operation that failed. The installer uses the class of an error to decide
what happens next:

    InputValidationError   -> fatal, raised before any backend call
    TransientBackendError  -> retried by the infrastructure loop
    ConvergenceError       -> fatal, aborts the current reconcile call
    RenderError            -> fatal, aborts the render (temp dir still removed)
    DiscoveryError         -> fatal, metadata could not be collected
"""

from __future__ import annotations


class BootstrapError(Exception):
    """Base class for all cluster-bootstrap errors."""


class InputValidationError(BootstrapError):
    """Desired state is malformed and was rejected before touching a backend."""


class TransientBackendError(BootstrapError):
    """A backend is not reachable yet; the caller may retry after a delay."""


class ConvergenceError(BootstrapError):
    """A create/update/delete call against a backend failed."""

    def __init__(self, resource: str, operation: str, cause: BaseException | None = None) -> None:
        self.resource = resource
        self.operation = operation
        self.cause = cause
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"failed to {self.operation} {self.resource}"
        if self.cause is not None:
            base += f": {self.cause}"
        return base


class RenderError(BootstrapError):
    """The manifest overlay could not be composed."""


class ImageReferenceError(RenderError):
    """A container image reference could not be parsed."""


class DiscoveryError(BootstrapError):
    """Cluster or cloud metadata could not be discovered."""
