"""
FastAPI Application Factory

Creates and configures the FastAPI application with:
- API versioning
- Middleware (CORS, error handling)
- Sync components wired onto app.state (no module-level singletons)
- Lifecycle management (startup/shutdown)

@.architecture
Incoming: main.py, tests, config/settings.py, api/v1/router.py, ws/hub.py, api/middleware/*.py --- {Settings object, optional GenerationSource, APIRouter instances, middleware constructors}
Processing: create_app(), startup_event(), shutdown_event(), websocket_endpoint() --- {7 jobs: application_creation, component_wiring, middleware_registration, routing_registration, connection_management, lifecycle_management, cleanup}
Outgoing: main.py, Frontend (HTTP/WebSocket) --- {FastAPI application instance, HTTP responses, WebSocket frames}
"""

import asyncio
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.middleware import create_error_handler_middleware
from api.v1.endpoints.health import health_check
from api.v1.router import api_v1_router
from api.v1.schemas.health import SimpleHealthResponse
from config.settings import Settings, get_settings
from core.sync import BroadcastHub, GenerationSource, SyncEngine, build_app_router, build_source
from monitoring import (
    configure_from_preset,
    get_logger,
    initialize_health_checks,
    set_request_context,
)
from utils.http import HTTPClient, HTTPClientConfig
from ws import WebSocketHub

logger = get_logger(__name__)

def create_app(
    settings: Optional[Settings] = None,
    source: Optional[GenerationSource] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        settings: Settings to use (loaded from config and environment if None)
        source: Generation source (built from settings.llm if None)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    configure_from_preset(
        settings.environment,
        level=settings.monitoring.log_level,
        format_type=settings.monitoring.log_format,
    )

    logger.info(f"Creating {settings.app_name} application (environment: {settings.environment})")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Real-time message sync backend",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        redirect_slashes=False
    )

    # ==========================================================================
    # Sync Components
    # ==========================================================================

    http_client = HTTPClient(HTTPClientConfig.from_settings(settings))
    source = source or build_source(settings, http_client)

    hub = BroadcastHub(queue_size=settings.sync.listener_queue_size)
    engine = SyncEngine(
        hub,
        source,
        coalesce_window=settings.sync.coalesce_window,
        max_message_length=settings.sync.max_message_length,
    )
    operation_router = build_app_router(engine)
    ws_hub = WebSocketHub(
        operation_router,
        send_timeout=settings.sync.ws_send_timeout,
        broadcast_timeout=settings.sync.ws_broadcast_timeout,
    )

    app.state.settings = settings
    app.state.http_client = http_client
    app.state.hub = hub
    app.state.engine = engine
    app.state.operation_router = operation_router
    app.state.ws_hub = ws_hub
    app.state.health_checker = initialize_health_checks(engine=engine, ws_hub=ws_hub)

    # ==========================================================================
    # Middleware Configuration
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.allowed_origins,
        allow_credentials=settings.security.cors_allow_credentials,
        allow_methods=settings.security.cors_allow_methods,
        allow_headers=settings.security.cors_allow_headers,
    )

    middleware_class, middleware_kwargs = create_error_handler_middleware(
        development=settings.environment == "development"
    )
    app.add_middleware(middleware_class, **middleware_kwargs)

    # ==========================================================================
    # API Routers
    # ==========================================================================

    app.include_router(api_v1_router)

    # Root-level health endpoint for load balancers
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        response_model=SimpleHealthResponse,
        tags=["health"],
    )

    @app.get("/")
    async def root():
        """Root endpoint."""
        return JSONResponse({
            "status": "ok",
            "message": f"{settings.app_name} API",
            "version": settings.app_version,
            "environment": settings.environment,
            "operations": operation_router.paths(),
            "docs": "/docs"
        })

    # ==========================================================================
    # WebSocket Endpoint
    # ==========================================================================

    async def websocket_endpoint(websocket: WebSocket):
        """
        Duplex channel for subscriptions (and request frames).

        Dropping the socket releases this client's subscriptions; turns
        already in flight keep running for other observers.
        """
        await websocket.accept()
        client = await ws_hub.register(websocket)
        set_request_context(client_id=client.id)
        # Clients ping every heartbeat_interval; two missed beats means gone
        idle_timeout = settings.sync.heartbeat_interval * 2

        try:
            while True:
                text = await asyncio.wait_for(websocket.receive_text(), timeout=idle_timeout)
                await ws_hub.handle_json(client, text)

        except asyncio.TimeoutError:
            logger.info(f"WebSocket client {client.id} idle for {idle_timeout}s, closing")
            await websocket.close(code=status.WS_1001_GOING_AWAY)
        except WebSocketDisconnect:
            logger.info(f"WebSocket client {client.id} disconnected")
        except RuntimeError as e:
            # Socket already closed by a failed send
            logger.debug(f"WebSocket client {client.id} receive ended: {e}")
        finally:
            await ws_hub.unregister(client)

    app.add_api_websocket_route("/ws", websocket_endpoint)
    app.add_api_websocket_route("/", websocket_endpoint)

    # ==========================================================================
    # Lifecycle Events
    # ==========================================================================

    @app.on_event("startup")
    async def startup_event():
        logger.info("=== Application Startup ===")
        await engine.start()
        logger.info(
            f"Serving {len(operation_router.paths())} operations "
            f"(provider: {settings.llm.provider}, queue size: {settings.sync.listener_queue_size})"
        )
        logger.info("=== Startup Complete ===")

    @app.on_event("shutdown")
    async def shutdown_event():
        """
        Application shutdown.

        Order:
        - Finish in-flight turns as failed and publish their snapshots
        - Close listeners; pumps relay what is buffered, then "stopped"
        - Tell WebSocket clients to reconnect
        - Close sockets and the provider HTTP client
        """
        logger.info("=== Application Shutdown ===")

        await engine.stop()
        hub.close()
        await ws_hub.drain_subscriptions()

        try:
            await ws_hub.broadcast_reconnect()
        except Exception as e:
            logger.error(f"Error broadcasting reconnect: {e}")

        await ws_hub.cleanup_all()
        await http_client.close()

        logger.info("=== Shutdown Complete ===")

    return app
