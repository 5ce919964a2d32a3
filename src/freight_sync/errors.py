"""
Error taxonomy for the sync layer.

Every error carries a short machine-readable ``code`` so callers can branch on
the failure class without parsing messages.
"""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for backend and persistence failures."""

    code = "sync_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code or self.code
        self.message = message


class TransientBackendError(SyncError):
    """Network failure, timeout or 5xx. Retried by the next natural cycle."""

    code = "backend_unavailable"


class CapacityError(SyncError):
    """The persistent key/value store rejected a write for lack of space."""

    code = "capacity_exceeded"


class ShapeMismatchError(SyncError):
    """A backend record could not be decoded into its canonical shape."""

    code = "shape_mismatch"


class PermissionDeniedError(SyncError):
    """The remote store rejected the request by policy (401/403)."""

    code = "permission_denied"


class BackendRequestError(SyncError):
    """Non-retryable request failure (bad filter, unknown table, conflict)."""

    code = "backend_request_error"
