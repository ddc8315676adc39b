"""
API V1 Endpoints

FastAPI routers for all API endpoints.
"""

from .health import router as health_router
from .chat import router as chat_router
from .rpc import router as rpc_router

__all__ = [
    'health_router',
    'chat_router',
    'rpc_router',
]
