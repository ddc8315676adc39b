"""
API V1 Router

Aggregates all v1 endpoint routers into a single versioned API.

@.architecture
Incoming: app.py, api/v1/endpoints/*.py --- {app.include_router() call, 3 endpoint router instances}
Processing: api_v1_router.include_router() for 3 endpoints --- {1 job: router_aggregation}
Outgoing: app.py, api/v1/endpoints/*.py --- {APIRouter with /v1 prefix, HTTP request routing to endpoints}
"""

from fastapi import APIRouter

from .endpoints import (
    health_router,
    chat_router,
    rpc_router,
)

# Create v1 router
api_v1_router = APIRouter(prefix="/v1")

# Health and metrics (/v1/health, /v1/health/detailed, /v1/metrics)
api_v1_router.include_router(health_router)

# Conversations (/v1/conversations/{conversation_id}/...)
api_v1_router.include_router(chat_router)

# Request/response channel (/v1/rpc/{paths})
api_v1_router.include_router(rpc_router)
