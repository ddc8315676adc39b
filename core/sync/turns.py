"""
Turn Tracker - In-flight assistant turn bookkeeping

@.architecture
Incoming: core/sync/engine.py --- {conversation_id, assistant message id, published message ids}
Processing: begin(), end(), record_published(), is_published(), is_active(), active_turns() --- {4 jobs: reservation, lifecycle_tracking, id_history, cleanup}
Outgoing: core/sync/engine.py, monitoring/health.py --- {reservation result bool, turn metadata Dict}

Enforces one assistant turn per conversation: a conversation is reserved
before anything is published and released when the turn reaches a
terminal state. Message ids already announced in a conversation are
remembered so a later turn cannot announce them again.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONVERSATIONS = 10_000


class TurnTracker:
    """
    Tracks which conversations have an assistant turn in flight.

    All mutations happen under an async lock so two concurrent submissions
    for the same conversation cannot both reserve it.

    Published ids are kept for the ``max_conversations`` most recently used
    conversations; older conversations are forgotten.
    """

    def __init__(self, max_conversations: int = DEFAULT_MAX_CONVERSATIONS):
        if max_conversations < 1:
            raise ValueError("max_conversations must be >= 1")
        self._active: Dict[str, Dict[str, Any]] = {}
        self._published: "OrderedDict[str, Set[str]]" = OrderedDict()
        self._max_conversations = max_conversations
        self._lock = asyncio.Lock()
        self._completed = 0

    async def begin(self, conversation_id: str, message_id: str) -> bool:
        """
        Reserve ``conversation_id`` for a new turn.

        Returns:
            True if reserved, False if a turn is already in flight
        """
        async with self._lock:
            if conversation_id in self._active:
                return False
            self._active[conversation_id] = {
                "message_id": message_id,
                "start_time": time.time(),
            }
        logger.debug(f"Turn {message_id} started for conversation {conversation_id}")
        return True

    async def end(
        self,
        conversation_id: str,
        message_id: Optional[str] = None,
        count: bool = True,
    ) -> Optional[float]:
        """
        Release ``conversation_id``.

        With ``message_id`` the reservation is only released if it still
        belongs to that assistant message. ``count=False`` releases a turn
        that was rejected before anything was published.

        Returns:
            Turn duration in seconds, or None if no matching turn was active
        """
        async with self._lock:
            turn = self._active.get(conversation_id)
            if turn is None:
                return None
            if message_id is not None and turn["message_id"] != message_id:
                return None
            del self._active[conversation_id]
            if count:
                self._completed += 1

        duration = time.time() - turn["start_time"]
        logger.debug(
            f"Turn {turn['message_id']} ended for conversation {conversation_id} "
            f"after {duration:.2f}s"
        )
        return duration

    def record_published(self, conversation_id: str, *message_ids: str) -> None:
        """Remember ids announced in ``conversation_id``."""
        ids = self._published.get(conversation_id)
        if ids is None:
            ids = self._published[conversation_id] = set()
            while len(self._published) > self._max_conversations:
                self._published.popitem(last=False)
        else:
            self._published.move_to_end(conversation_id)
        ids.update(message_ids)

    def is_published(self, conversation_id: str, message_id: str) -> bool:
        return message_id in self._published.get(conversation_id, ())

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def get_turn(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        turn = self._active.get(conversation_id)
        if turn is None:
            return None
        return {
            "conversation_id": conversation_id,
            "message_id": turn["message_id"],
            "elapsed": time.time() - turn["start_time"],
        }

    def active_turns(self) -> List[str]:
        """Conversation ids with a turn in flight (copy)."""
        return list(self._active.keys())

    def get_health_status(self) -> Dict[str, Any]:
        """
        Get tracker health for monitoring.

        Returns:
            Dict with active and completed turn counts
        """
        now = time.time()
        oldest = max((now - t["start_time"] for t in self._active.values()), default=0.0)
        return {
            "active_turns": len(self._active),
            "completed_turns": self._completed,
            "oldest_turn_seconds": round(oldest, 3),
            "tracked_conversations": len(self._published),
        }
