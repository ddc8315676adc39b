"""
API V1 Schemas

Pydantic models for request/response validation.
"""

from .common import (
    ErrorDetail,
    ErrorResponse,
    HealthStatus,
)

from .health import (
    HealthCheckResponse,
    ComponentHealth,
    SimpleHealthResponse,
)

from .conversations import (
    ActiveTurn,
    TurnRequest,
    TurnStatusResponse,
)

__all__ = [
    "ErrorDetail",
    "ErrorResponse",
    "HealthStatus",
    "HealthCheckResponse",
    "ComponentHealth",
    "SimpleHealthResponse",
    "ActiveTurn",
    "TurnRequest",
    "TurnStatusResponse",
]
