"""Error kinds raised by the node sync subsystem.

Every error carries the HTTP status the web layer should answer with, so the
FastAPI app can install a single exception handler for the whole hierarchy.
"""

from __future__ import annotations

from typing import Any, Optional


class NodeSyncError(Exception):
    """Base class for all node sync errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ValidationError(NodeSyncError):
    """Bad input: missing fields, out-of-range values, interval below floor."""

    status_code = 400


class RoleError(ValidationError):
    """Operation not allowed in the deployment's current role."""

    status_code = 409


class DuplicateError(NodeSyncError):
    """Name collision at registration or rename."""

    status_code = 409


class NotFoundError(NodeSyncError):
    status_code = 404


class AuthError(NodeSyncError):
    """Unknown or missing API key."""

    status_code = 401


class SyncDisabledError(AuthError):
    """The key identifies a node correctly, but sync is disabled for it."""

    status_code = 403


class TransientNetworkError(NodeSyncError):
    """Leader unreachable, timed out, or answered with garbage."""

    status_code = 502


class ReconciliationError(NodeSyncError):
    """An import could not be applied atomically and was rolled back."""

    status_code = 500


class ConcurrentModificationError(NodeSyncError):
    """The role configuration row changed underneath an update."""

    status_code = 409


class SyncInProgressError(NodeSyncError):
    """A sync tick was started while another one is still applying."""

    status_code = 409
