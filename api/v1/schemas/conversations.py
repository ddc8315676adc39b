"""
Conversation Schemas

Request/response models for the REST conversation routes.

@.architecture
Incoming: api/v1/endpoints/chat.py --- {JSON turn submissions}
Processing: Pydantic validation and serialization --- {2 jobs: data_validation, serialization}
Outgoing: api/v1/endpoints/chat.py, core/sync/engine.py --- {TurnRequest, TurnStatusResponse validated models}
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from core.sync.models import MessageInput


class TurnRequest(BaseModel):
    """
    New user turn.

    ``messages`` is the ordered history the client holds; its last entry is
    the new user message.
    """
    messages: List[MessageInput] = Field(default_factory=list)


class ActiveTurn(BaseModel):
    message_id: str = Field(..., alias="messageId")
    elapsed_seconds: float = Field(..., alias="elapsedSeconds")

    class Config:
        populate_by_name = True


class TurnStatusResponse(BaseModel):
    """Whether a conversation currently has an assistant turn in flight."""
    conversation_id: str = Field(..., alias="conversationId")
    in_flight: bool = Field(..., alias="inFlight")
    active_turn: Optional[ActiveTurn] = Field(None, alias="activeTurn")
    listeners: int = 0

    class Config:
        populate_by_name = True
