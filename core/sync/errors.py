"""
Sync Errors - Exception taxonomy for the synchronization engine

Each error carries a transport-neutral ``code`` and the HTTP ``status_code``
used by the request/response channel. The error handler middleware and the
WebSocket handlers both read these attributes.
"""

from typing import Any, Dict, List, Optional


class SyncError(Exception):
    """Base class for all synchronization errors."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.path = path

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for RPC results and WebSocket error frames."""
        data: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "httpStatus": self.status_code,
        }
        if self.path:
            data["path"] = self.path
        return data


class InvalidTurnError(SyncError):
    """Submitted turn is malformed (rejected before any publish)."""
    code = "BAD_REQUEST"
    status_code = 400


class InvalidInputError(SyncError):
    """Operation input failed schema validation."""
    code = "BAD_REQUEST"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        issues: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, path=path)
        self.issues = list(issues or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.issues:
            data["issues"] = self.issues
        return data


class TurnInProgressError(SyncError):
    """Conversation already has an assistant turn in flight."""
    code = "CONFLICT"
    status_code = 409


class UnknownOperationError(SyncError):
    """No procedure registered under the requested path."""
    code = "NOT_FOUND"
    status_code = 404


class OperationKindError(SyncError):
    """Operation was sent over a channel that does not carry its kind."""
    code = "METHOD_NOT_SUPPORTED"
    status_code = 405


class GenerationError(SyncError):
    """Generation provider failed (HTTP error, malformed stream)."""
    code = "INTERNAL_SERVER_ERROR"
    status_code = 502
