"""
WebSocket Layer - Duplex channel of the Relay backend

Carries subscriptions (and, optionally, queries and mutations) using
tRPC-style frames.

Components:
- hub.py: WebSocketHub for client lifecycle, sends and broadcasts
- handlers.py: Frame processing and subscription pumps
- protocols.py: Frame schemas and builders
"""

from ws.handlers import Client, MessageHandler, SubscriptionPump
from ws.hub import WebSocketHub
from ws.protocols import (
    FrameMethod,
    HeartbeatFrame,
    RequestFrame,
    ResultType,
    StopFrame,
    validate_frame,
    WS_SEND_TIMEOUT,
    WS_BROADCAST_TIMEOUT,
    HEARTBEAT_INTERVAL,
)

__all__ = [
    "Client",
    "FrameMethod",
    "HeartbeatFrame",
    "MessageHandler",
    "RequestFrame",
    "ResultType",
    "StopFrame",
    "SubscriptionPump",
    "WebSocketHub",
    "validate_frame",
    "WS_SEND_TIMEOUT",
    "WS_BROADCAST_TIMEOUT",
    "HEARTBEAT_INTERVAL",
]
