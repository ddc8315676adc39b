"""
Health Check Endpoints

Health checks and metrics integrating with the monitoring layer.

@.architecture
Incoming: api/v1/router.py, app.py, Frontend (HTTP GET), Load Balancers --- {HTTP requests to /health, /v1/health, /v1/health/detailed, /v1/health/{component}, /v1/metrics}
Processing: health_check(), detailed_health_check(), check_component_health(), metrics() --- {3 jobs: component_checking, health_monitoring, metrics_export}
Outgoing: monitoring/health.py, monitoring/metrics.py, Frontend (HTTP) --- {HealthCheckResponse, SimpleHealthResponse, ComponentHealth schemas, Prometheus text}
"""

import time

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import PlainTextResponse

from api.dependencies import get_health_checker, get_settings, setup_request_context
from api.v1.schemas.health import (
    ComponentHealth,
    HealthCheckResponse,
    SimpleHealthResponse,
)
from config.settings import Settings
from monitoring import get_logger
from monitoring.health import HealthChecker
from monitoring.metrics import get_registry

logger = get_logger(__name__)
router = APIRouter(tags=["health"])

START_TIME = time.time()


@router.get(
    "/health",
    response_model=SimpleHealthResponse,
    summary="Simple health check",
    description="Quick health check endpoint for load balancers and monitoring"
)
async def health_check() -> SimpleHealthResponse:
    return SimpleHealthResponse(
        status="ok",
        timestamp=time.time(),
        uptime_seconds=time.time() - START_TIME
    )


@router.get(
    "/health/detailed",
    response_model=HealthCheckResponse,
    summary="Detailed health check",
    description="Health of the system, the sync engine and the WebSocket transport"
)
async def detailed_health_check(
    checker: HealthChecker = Depends(get_health_checker),
    _context: dict = Depends(setup_request_context)
) -> HealthCheckResponse:
    health_data = await checker.check_all()

    if health_data["status"] != "healthy":
        logger.warning(f"Health check reports {health_data['status']}")

    return HealthCheckResponse(
        status=health_data["status"],
        timestamp=health_data["timestamp"],
        uptime_seconds=health_data["uptime_seconds"],
        check_duration_ms=health_data["check_duration_ms"],
        components=[ComponentHealth(**comp) for comp in health_data["components"]],
    )


@router.get(
    "/health/{component}",
    response_model=ComponentHealth,
    summary="Component health check",
)
async def check_component_health(
    component: str,
    checker: HealthChecker = Depends(get_health_checker),
) -> ComponentHealth:
    result = await checker.check_component(component)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown component '{component}'. Available: {checker.components}"
        )
    return ComponentHealth(**result.to_dict())


@router.get(
    "/metrics",
    response_class=PlainTextResponse,
    summary="Prometheus metrics",
)
async def metrics(settings: Settings = Depends(get_settings)) -> PlainTextResponse:
    if not settings.monitoring.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics are disabled")
    return PlainTextResponse(
        get_registry().export_prometheus(),
        media_type="text/plain; version=0.0.4",
    )
