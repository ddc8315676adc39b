"""
Client Package - Consuming side of the sync engine

- reconciler.py: Idempotent upsert of message snapshots into an ordered list
- links.py: Split/HTTP batch/WebSocket links and the SyncClient
- session.py: ConversationSession tying a client to a reconciler
"""

from client.links import (
    ClientOperationError,
    HttpBatchLink,
    Operation,
    SplitLink,
    SyncClient,
    WebSocketLink,
    WebSocketSubscription,
)
from client.reconciler import Reconciler
from client.session import ConversationSession

__all__ = [
    "ClientOperationError",
    "ConversationSession",
    "HttpBatchLink",
    "Operation",
    "Reconciler",
    "SplitLink",
    "SyncClient",
    "WebSocketLink",
    "WebSocketSubscription",
]
