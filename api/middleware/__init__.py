"""
API Middleware Layer

Error handling for the HTTP channel. CORS comes from FastAPI.
"""

from .error_handler import (
    ErrorHandlerMiddleware,
    ErrorHandlerConfig,
    create_error_handler_middleware,
)

__all__ = [
    'ErrorHandlerMiddleware',
    'ErrorHandlerConfig',
    'create_error_handler_middleware',
]
