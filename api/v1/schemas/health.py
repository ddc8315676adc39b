"""
Health Check Schemas

Response models for the liveness check, the detailed report and single
component checks.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import HealthStatus


class ComponentHealth(BaseModel):
    """Result of one registered checker ("system", "sync", "websocket")."""
    component: str
    status: HealthStatus
    message: Optional[str] = None
    response_time_ms: Optional[float] = Field(None, description="Time spent in the checker")
    details: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    """Aggregate report: unhealthy if any component is, degraded if any is."""
    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status": "healthy",
            "timestamp": "2026-01-12T09:30:00Z",
            "uptime_seconds": 812.5,
            "check_duration_ms": 1.7,
            "components": [
                {"component": "sync", "status": "healthy", "message": "1 turns in flight, 3 listeners"},
                {"component": "websocket", "status": "healthy", "message": "3 clients, 3 subscriptions"},
            ],
        }
    })

    status: HealthStatus
    timestamp: str
    uptime_seconds: float
    check_duration_ms: float
    components: List[ComponentHealth]


class SimpleHealthResponse(BaseModel):
    status: str = "ok"
    timestamp: float
    uptime_seconds: float
