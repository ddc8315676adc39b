"""
Client Reconciler - Ordered, duplicate-free local view of a conversation

Applies lifecycle events as upserts keyed by message id. Events may arrive
replayed, reordered, or racing the mutation that caused them; the local list
never gains duplicates and streaming content never regresses.

@.architecture
Incoming: client/session.py, client/links.py (subscription data) --- {MessageEvent, Message, or their wire dicts}
Processing: apply(), apply_all(), _accepts() --- {3 jobs: upsert_by_id, staleness_filtering, ordering}
Outgoing: Consumers (UI, tests) --- {ordered List[Message] copies}

Acceptance rules for a known id, in order:
    1. stored message is terminal            -> ignore (terminal is immutable)
    2. incoming seq lower than stored seq    -> ignore
    3. incoming shorter and not failed       -> ignore
    4. identical to stored                   -> no change
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from core.sync.models import Message, MessageEvent, MessageState

logger = logging.getLogger(__name__)

Update = Union[MessageEvent, Message, Mapping[str, Any]]


def _to_message(update: Update) -> Message:
    if isinstance(update, MessageEvent):
        return update.message
    if isinstance(update, Message):
        return update
    if "message" in update:
        return Message.model_validate(update["message"])
    return Message.model_validate(update)


class Reconciler:
    """
    Maintains the ordered message list of one conversation.

    Order is first-seen order; an update replaces its message in place and
    never re-sorts the list.
    """

    def __init__(self, conversation_id: Optional[str] = None):
        """
        Args:
            conversation_id: If given, updates for other conversations are ignored
        """
        self.conversation_id = conversation_id
        self._order: List[str] = []
        self._by_id: Dict[str, Message] = {}

    def apply(self, update: Update) -> bool:
        """
        Upsert one snapshot.

        Args:
            update: MessageEvent, Message, or their wire form

        Returns:
            True if local state changed
        """
        incoming = _to_message(update)

        if self.conversation_id and incoming.conversation_id != self.conversation_id:
            logger.debug(
                f"Ignoring message {incoming.id} for conversation {incoming.conversation_id}"
            )
            return False

        current = self._by_id.get(incoming.id)
        if current is None:
            self._order.append(incoming.id)
            self._by_id[incoming.id] = incoming.snapshot()
            return True

        if not self._accepts(current, incoming):
            return False

        self._by_id[incoming.id] = incoming.snapshot()
        return True

    def apply_all(self, updates: Iterable[Update]) -> int:
        """Apply updates in order. Returns how many changed local state."""
        return sum(1 for update in updates if self.apply(update))

    @staticmethod
    def _accepts(current: Message, incoming: Message) -> bool:
        if current.state.is_terminal:
            return False
        if incoming.seq < current.seq:
            return False
        if incoming.state is not MessageState.FAILED and len(incoming.content) < len(current.content):
            return False
        return incoming != current

    # =========================================================================
    # Views
    # =========================================================================

    @property
    def messages(self) -> List[Message]:
        """Ordered copy of the local list."""
        return [self._by_id[message_id].snapshot() for message_id in self._order]

    def get(self, message_id: str) -> Optional[Message]:
        message = self._by_id.get(message_id)
        return message.snapshot() if message else None

    def streaming(self) -> List[Message]:
        """Messages not yet terminal (created or streaming)."""
        return [m for m in self.messages if not m.state.is_terminal]

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id
