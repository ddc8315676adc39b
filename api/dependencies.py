"""
API Dependencies

FastAPI dependency injection functions for:
- Settings management
- Sync engine, operation router and health checker access (app.state)
- Request context setup

@.architecture
Incoming: app.py (create_app stores components on app.state), api/v1/endpoints/*.py --- {Depends() injections from endpoints}
Processing: get_settings(), get_engine(), get_operation_router(), get_health_checker(), setup_request_context() --- {3 jobs: context_setup, dependency_injection, validation}
Outgoing: api/v1/endpoints/*.py --- {Settings instance, SyncEngine instance, OperationRouter instance, HealthChecker instance, request context dict}
"""

from typing import Any, Optional
import uuid

from fastapi import Header, HTTPException, Request

from config.settings import Settings
from core.sync.engine import SyncEngine
from core.sync.router import OperationRouter
from monitoring import get_logger, set_request_context
from monitoring.health import HealthChecker

logger = get_logger(__name__)


# =============================================================================
# Application State Dependencies
# =============================================================================

def _state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        logger.error(f"{name} not initialized")
        raise HTTPException(
            status_code=503,
            detail=f"{name} not initialized. Server is starting up."
        )
    return value


def get_settings(request: Request) -> Settings:
    """Settings the application was created with."""
    return _state(request, "settings")


def get_engine(request: Request) -> SyncEngine:
    """
    Get the sync engine of this application.

    Raises:
        HTTPException: If the engine is not initialized
    """
    return _state(request, "engine")


def get_operation_router(request: Request) -> OperationRouter:
    return _state(request, "operation_router")


def get_health_checker(request: Request) -> HealthChecker:
    return _state(request, "health_checker")


# =============================================================================
# Request Context Dependencies
# =============================================================================

async def setup_request_context(
    request: Request,
    x_request_id: Optional[str] = Header(None),
    x_client_id: Optional[str] = Header(None),
) -> dict:
    """
    Setup request context for logging.

    Args:
        request: FastAPI request object
        x_request_id: Optional request ID from header
        x_client_id: Optional client ID from header

    Returns:
        dict: Request context information
    """
    request_id = x_request_id or str(uuid.uuid4())
    conversation_id = request.path_params.get("conversation_id")

    set_request_context(
        request_id=request_id,
        conversation_id=conversation_id,
        client_id=x_client_id,
    )

    request.state.request_id = request_id

    return {
        "request_id": request_id,
        "conversation_id": conversation_id,
        "client_id": x_client_id,
        "method": request.method,
        "path": request.url.path
    }
