"""
Common Schemas

Shared Pydantic models used across API endpoints.

@.architecture
Incoming: api/v1/endpoints/*.py --- {error data, status data}
Processing: Pydantic validation and serialization --- {2 jobs: data_validation, serialization}
Outgoing: api/v1/endpoints/*.py --- {ErrorDetail, ErrorResponse, HealthStatus validated models}
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from monitoring.health import HealthStatus


class ErrorDetail(BaseModel):
    """Error body shared by the REST and RPC routes."""
    code: str
    message: str
    httpStatus: int
    path: Optional[str] = None
    hint: Optional[str] = None
    issues: Optional[List[Dict[str, Any]]] = None


class ErrorResponse(BaseModel):
    """Error response model."""
    error: ErrorDetail


__all__ = ["ErrorDetail", "ErrorResponse", "HealthStatus"]
