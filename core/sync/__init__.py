"""
Real-time message synchronization engine.

Core Modules:
- models.py: Message snapshots, lifecycle states and events
- aggregator.py: Folds generated fragments into full snapshots
- broadcast.py: Per-conversation fan-out with bounded listener queues
- turns.py: One in-flight assistant turn per conversation
- engine.py: Turn orchestration (submit, generate, publish)
- generation.py: Generation sources (OpenAI-compatible HTTP, echo)
- router.py: Named procedures and channel-by-kind dispatch
- procedures.py: The service's health and chat procedures
"""

from core.sync.aggregator import DeltaAggregator
from core.sync.broadcast import BroadcastHub, Subscription
from core.sync.engine import SyncEngine
from core.sync.errors import (
    GenerationError,
    InvalidInputError,
    InvalidTurnError,
    OperationKindError,
    SyncError,
    TurnInProgressError,
    UnknownOperationError,
)
from core.sync.generation import EchoSource, GenerationSource, OpenAICompatibleSource, build_source
from core.sync.models import (
    EventKind,
    Message,
    MessageEvent,
    MessageInput,
    MessageState,
    Role,
    SendMessageInput,
    SubscribeInput,
    TurnAccepted,
)
from core.sync.procedures import build_app_router
from core.sync.router import OperationKind, OperationRouter, Procedure
from core.sync.turns import TurnTracker

__all__ = [
    # Models
    "EventKind",
    "Message",
    "MessageEvent",
    "MessageInput",
    "MessageState",
    "Role",
    "SendMessageInput",
    "SubscribeInput",
    "TurnAccepted",
    # Components
    "BroadcastHub",
    "DeltaAggregator",
    "Subscription",
    "SyncEngine",
    "TurnTracker",
    # Generation
    "EchoSource",
    "GenerationSource",
    "OpenAICompatibleSource",
    "build_source",
    # Routing
    "OperationKind",
    "OperationRouter",
    "Procedure",
    "build_app_router",
    # Errors
    "GenerationError",
    "InvalidInputError",
    "InvalidTurnError",
    "OperationKindError",
    "SyncError",
    "TurnInProgressError",
    "UnknownOperationError",
]
