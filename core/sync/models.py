"""
Sync Models - Message snapshots and lifecycle events

Defines the message record shared by the server engine, the broadcast hub,
the transport layer and the client reconciler.

@.architecture
Incoming: core/sync/engine.py, core/sync/aggregator.py, api/v1/endpoints/*.py, ws/handlers.py, client/* --- {raw JSON payloads, generated fragments}
Processing: Pydantic validation, snapshot copying, wire serialization --- {3 jobs: data_validation, serialization, snapshot_copying}
Outgoing: core/sync/broadcast.py, ws/hub.py, client/reconciler.py --- {Message, MessageEvent, MessageInput, TurnAccepted models}

Wire format (camelCase keys):
    {"id": "a1", "role": "assistant", "content": "hel", "state": "streaming",
     "conversationId": "c1", "seq": 1}
"""

from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Author of a message"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageState(str, Enum):
    """
    Message lifecycle.

    created -> streaming -> complete | failed
    """
    CREATED = "created"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageState.COMPLETE, MessageState.FAILED)


class EventKind(str, Enum):
    """Lifecycle event published through the broadcast hub"""
    CREATED = "created"
    UPDATED = "updated"


class Message(BaseModel):
    """
    Full, self-contained message snapshot.

    Attributes:
        id: Stable identifier, unique within a conversation
        role: Message author
        content: Text accumulated so far
        conversation_id: Conversation the message belongs to
        state: Lifecycle tag
        seq: Snapshot counter, bumped once per emitted snapshot
    """
    id: str = Field(..., min_length=1)
    role: Role
    content: str = ""
    conversation_id: str = Field(..., min_length=1, alias="conversationId")
    state: MessageState = MessageState.CREATED
    seq: int = Field(0, ge=0)

    class Config:
        populate_by_name = True

    def snapshot(self) -> "Message":
        """Return an independent copy of the current state."""
        return self.model_copy(deep=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class MessageEvent(BaseModel):
    """
    Lifecycle event carrying a full snapshot (never a diff).

    Examples:
        {"kind": "created", "message": {"id": "u1", "role": "user", ...}}
        {"kind": "updated", "message": {"id": "a1", "state": "streaming", ...}}
    """
    kind: EventKind
    message: Message

    @property
    def conversation_id(self) -> str:
        return self.message.conversation_id

    def to_wire(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message.to_wire()}


class MessageInput(BaseModel):
    """Message as submitted by a client: no state, no conversation."""
    id: str = Field(..., min_length=1, max_length=255)
    role: Role
    content: str


class SendMessageInput(BaseModel):
    """
    Input of the chat.sendMessage mutation.

    The last entry of ``messages`` is the new user turn; everything before it
    is the ordered history the client currently holds.
    """
    conversation_id: str = Field(..., min_length=1, max_length=255, alias="conversationId")
    messages: List[MessageInput] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class SubscribeInput(BaseModel):
    """Input of the chat.onMessage subscription."""
    conversation_id: str = Field(..., min_length=1, max_length=255, alias="conversationId")

    class Config:
        populate_by_name = True


class TurnAccepted(BaseModel):
    """Acknowledgment returned once a turn has been accepted."""
    conversation_id: str = Field(..., alias="conversationId")
    user_message_id: str = Field(..., alias="userMessageId")
    assistant_message_id: str = Field(..., alias="assistantMessageId")

    class Config:
        populate_by_name = True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
