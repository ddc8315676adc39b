"""
WebSocket Protocol Definitions

Defines frame schemas and validation for the duplex channel. Frames follow
the tRPC WebSocket wire shape so any operation can be carried, while only
subscriptions are required to use this channel.

@.architecture
Incoming: ws/handlers.py, client/links.py --- {raw JSON payloads from WebSocket frames}
Processing: validate_frame(), Pydantic model validation, frame builders --- {3 jobs: data_validation, frame_parsing, frame_building}
Outgoing: ws/handlers.py, ws/hub.py, client/links.py --- {Pydantic frame models: RequestFrame, StopFrame, HeartbeatFrame; server frame dicts}

Client -> server:
    {"id": 1, "method": "subscription", "params": {"path": "chat.onMessage", "input": {"conversationId": "c1"}}}
    {"id": 2, "method": "mutation", "params": {"path": "chat.sendMessage", "input": {...}}}
    {"id": 1, "method": "subscription.stop"}
    {"type": "ping", "timestamp": 1700000000}

Server -> client:
    {"id": 1, "result": {"type": "started"}}
    {"id": 1, "result": {"type": "data", "data": {"kind": "updated", "message": {...}}}}
    {"id": 1, "result": {"type": "stopped"}}
    {"id": 2, "error": {"code": "CONFLICT", "message": "...", "httpStatus": 409}}
    {"id": null, "method": "reconnect"}
    {"type": "pong", "timestamp": 1700000000}
"""

from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator


FrameId = Union[int, str]


class FrameMethod(str, Enum):
    """Request frame methods"""
    QUERY = "query"
    MUTATION = "mutation"
    SUBSCRIPTION = "subscription"
    SUBSCRIPTION_STOP = "subscription.stop"


class ResultType(str, Enum):
    """Result frame types"""
    STARTED = "started"
    DATA = "data"
    STOPPED = "stopped"


class RequestParams(BaseModel):
    path: str = Field(..., min_length=1)
    input: Any = None


class RequestFrame(BaseModel):
    """
    Operation request from client to server.

    The id is chosen by the client and echoes back on every frame of the
    operation; for subscriptions it also names the stream for
    ``subscription.stop``.
    """
    id: FrameId
    method: Literal["query", "mutation", "subscription"]
    params: RequestParams

    @field_validator('id')
    @classmethod
    def id_not_blank(cls, v):
        if isinstance(v, str) and not v.strip():
            raise ValueError('id cannot be blank')
        return v


class StopFrame(BaseModel):
    """
    Stop a running subscription.

    Example:
        {"id": 1, "method": "subscription.stop"}
    """
    id: FrameId
    method: Literal["subscription.stop"]


class HeartbeatFrame(BaseModel):
    """
    Heartbeat/ping-pong for connection keepalive.

    Examples:
        {"type": "ping", "timestamp": 1234567890}
        {"type": "pong", "timestamp": 1234567890}
    """
    type: Literal["ping", "pong"]
    timestamp: Optional[int] = None


def validate_frame(payload: Any) -> Optional[BaseModel]:
    """
    Validate and parse an incoming frame.

    Args:
        payload: Decoded JSON payload

    Returns:
        Parsed frame model or None if the payload matches no frame shape
    """
    if not isinstance(payload, dict):
        return None

    try:
        if payload.get("type") in ("ping", "pong"):
            return HeartbeatFrame(**payload)

        method = payload.get("method")
        if method == FrameMethod.SUBSCRIPTION_STOP.value:
            return StopFrame(**payload)

        if method in (FrameMethod.QUERY.value, FrameMethod.MUTATION.value, FrameMethod.SUBSCRIPTION.value):
            return RequestFrame(**payload)

        return None

    except ValidationError:
        return None


# Frame builders

def result_frame(frame_id: Optional[FrameId], result_type: ResultType, data: Any = None, **extra: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {"type": result_type.value}
    if result_type is ResultType.DATA:
        result["data"] = data
    result.update(extra)
    return {"id": frame_id, "result": result}


def error_frame(frame_id: Optional[FrameId], error: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": frame_id, "error": error}


def reconnect_frame() -> Dict[str, Any]:
    return {"id": None, "method": "reconnect"}


def pong_frame(timestamp: Optional[int]) -> Dict[str, Any]:
    return {"type": "pong", "timestamp": timestamp}


PARSE_ERROR = {"code": "PARSE_ERROR", "message": "Frame is not valid JSON", "httpStatus": 400}
INVALID_FRAME = {"code": "BAD_REQUEST", "message": "Unrecognized frame", "httpStatus": 400}


# Protocol constants (defaults; overridden by settings.sync)
WS_SEND_TIMEOUT = 3.0  # Timeout for sending to single client
WS_BROADCAST_TIMEOUT = 5.0  # Timeout for broadcasting
HEARTBEAT_INTERVAL = 30.0  # Client ping interval in seconds
