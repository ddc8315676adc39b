"""
Error Handler Middleware - API Layer

Last line of defence for the HTTP channel: anything an endpoint lets escape
becomes an RPC-shaped error body, the same shape procedure errors use.

@.architecture
Incoming: app.py (middleware registration), exceptions escaping endpoints --- {Request, SyncError, HTTPException-like, Exception}
Processing: dispatch(), describe(), render(), _log() --- {3 jobs: error_description, body_rendering, logging}
Outgoing: HTTP clients, monitoring/logging.py --- {JSONResponse {"error": {code, message, httpStatus, path, hint?}}, error logs}
"""

import traceback
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.sync.errors import SyncError
from monitoring.logging import get_logger

logger = get_logger(__name__)

# HTTP status -> RPC code for errors that are not SyncErrors
STATUS_CODES: Dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_SUPPORTED",
    409: "CONFLICT",
    422: "BAD_REQUEST",
    502: "INTERNAL_SERVER_ERROR",
    503: "INTERNAL_SERVER_ERROR",
}

HINTS: Dict[str, str] = {
    "NOT_FOUND": "GET / lists the available operations",
    "METHOD_NOT_SUPPORTED": "Queries use GET, mutations use POST, subscriptions use the WebSocket",
    "CONFLICT": "Wait for the running turn to reach a terminal state",
}


class ErrorHandlerConfig:
    """Controls how much of an unexpected error reaches the client."""

    def __init__(
        self,
        expose_messages: bool = False,
        include_traceback: bool = False,
        hints: Optional[Dict[str, str]] = None
    ):
        self.expose_messages = expose_messages
        self.include_traceback = include_traceback
        self.hints = HINTS if hints is None else hints


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Converts escaped exceptions to JSON error responses."""

    def __init__(self, app: ASGIApp, config: Optional[ErrorHandlerConfig] = None):
        super().__init__(app)
        self.config = config or ErrorHandlerConfig()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            status, body = self.render(e, request.url.path)
            self._log(request, e, status)
            return JSONResponse(status_code=status, content=body)

    def describe(self, error: Exception) -> Tuple[int, str, str]:
        """Return (http status, RPC code, message) for an exception."""
        if isinstance(error, SyncError):
            return error.status_code, error.code, error.message

        status = getattr(error, "status_code", None)
        if isinstance(status, int):
            detail = getattr(error, "detail", None) or str(error)
            return status, STATUS_CODES.get(status, "INTERNAL_SERVER_ERROR"), str(detail)

        message = str(error) if self.config.expose_messages else "Internal server error"
        return 500, "INTERNAL_SERVER_ERROR", message

    def render(self, error: Exception, path: str) -> Tuple[int, Dict[str, Any]]:
        status, code, message = self.describe(error)
        body: Dict[str, Any] = {
            "code": code,
            "message": message,
            "httpStatus": status,
            "path": getattr(error, "path", None) or path,
        }
        hint = self.config.hints.get(code)
        if hint:
            body["hint"] = hint
        if self.config.include_traceback and status >= 500:
            body["traceback"] = traceback.format_exception(type(error), error, error.__traceback__)
        return status, {"error": body}

    def _log(self, request: Request, error: Exception, status: int) -> None:
        fields = {
            "method": request.method,
            "path": request.url.path,
            "status": status,
            "error_type": type(error).__name__,
        }
        if status >= 500:
            logger.error(f"Unhandled error on {request.method} {request.url.path}: {error}", exc_info=error, **fields)
        else:
            logger.warning(f"Request failed: {error}", **fields)


def create_error_handler_middleware(development: bool = False):
    """
    Middleware class and kwargs for ``app.add_middleware``.

    Development exposes messages and tracebacks of unexpected errors.
    """
    config = ErrorHandlerConfig(expose_messages=development, include_traceback=development)
    return ErrorHandlerMiddleware, {"config": config}
