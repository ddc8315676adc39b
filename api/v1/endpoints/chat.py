"""
Conversation Endpoints

REST routes over the sync engine for clients that do not speak the RPC
batch protocol.

@.architecture
Incoming: api/v1/router.py, Frontend (HTTP POST/GET) --- {HTTP requests to /v1/conversations/{conversation_id}/turns and /status, TurnRequest payload}
Processing: submit_turn(), turn_status() --- {3 jobs: data_validation, dependency_injection, error_translation}
Outgoing: core/sync/engine.py (engine.submit_turn), Frontend (HTTP) --- {TurnAccepted (202), TurnStatusResponse}
"""

from fastapi import APIRouter, Depends, HTTPException, Path, status

from api.dependencies import get_engine, setup_request_context
from api.v1.schemas.conversations import ActiveTurn, TurnRequest, TurnStatusResponse
from core.sync.engine import SyncEngine
from core.sync.errors import SyncError
from monitoring import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/conversations", tags=["conversations"])

ConversationId = Path(..., min_length=1, max_length=255, description="Conversation identifier")


@router.post(
    "/{conversation_id}/turns",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a user turn",
    description=(
        "Publish the new user message and start the assistant reply. Returns "
        "immediately; progress is delivered to chat.onMessage subscribers."
    ),
)
async def submit_turn(
    request: TurnRequest,
    conversation_id: str = ConversationId,
    engine: SyncEngine = Depends(get_engine),
    _context: dict = Depends(setup_request_context)
) -> dict:
    try:
        accepted = await engine.submit_turn(conversation_id, request.messages)
    except SyncError as e:
        logger.info(f"Turn rejected for conversation {conversation_id}: {e.code} {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())

    return accepted.to_wire()


@router.get(
    "/{conversation_id}/status",
    summary="Turn status",
    description="Whether the conversation has an assistant turn in flight",
)
async def turn_status(
    conversation_id: str = ConversationId,
    engine: SyncEngine = Depends(get_engine),
) -> dict:
    turn = engine.turns.get_turn(conversation_id)
    response = TurnStatusResponse(
        conversation_id=conversation_id,
        in_flight=turn is not None,
        active_turn=ActiveTurn(
            message_id=turn["message_id"],
            elapsed_seconds=round(turn["elapsed"], 3),
        ) if turn else None,
        listeners=engine.hub.listener_count(conversation_id),
    )
    return response.model_dump(mode="json", by_alias=True)
