"""
Conversation Session - Chat state for one conversation on the client

Wires a SyncClient to a Reconciler: subscribes to the conversation, pumps
every event into local state, and submits turns with the local history.

@.architecture
Incoming: applications, tests --- {conversation_id, user text}
Processing: open(), send(), _pump(), wait_until(), close() --- {4 jobs: subscription_pumping, optimistic_insert, turn_submission, change_notification}
Outgoing: client/links.py (chat.onMessage, chat.sendMessage), Reconciler --- {subscription and mutation operations, ordered message list}
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from client.links import SyncClient, WebSocketSubscription
from client.reconciler import Reconciler
from core.sync.models import Message, MessageState, Role

logger = logging.getLogger(__name__)


class ConversationSession:
    """
    Local view of one conversation kept in sync with the server.

    The user message is applied locally before the mutation is sent; the
    server's ``created`` echo for it is then a no-op in the reconciler.
    """

    def __init__(
        self,
        client: SyncClient,
        conversation_id: str,
        id_factory: Optional[Callable[[], str]] = None,
        on_change: Optional[Callable[[List[Message]], None]] = None,
    ):
        self.client = client
        self.conversation_id = conversation_id
        self.reconciler = Reconciler(conversation_id)
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._on_change = on_change
        self._changed = asyncio.Condition()
        self._subscription: Optional[WebSocketSubscription] = None
        self._pump_task: Optional[asyncio.Task] = None

    @property
    def messages(self) -> List[Message]:
        return self.reconciler.messages

    async def open(self, timeout: float = 5.0) -> None:
        """
        Subscribe to the conversation and start applying its events.

        Returns once the server has acknowledged the subscription, so turns
        sent afterwards are observed from their first event.
        """
        if self._subscription is not None:
            return
        self._subscription = await self.client.subscription(
            "chat.onMessage", {"conversationId": self.conversation_id}
        )
        await self._subscription.wait_started(timeout=timeout)
        self._pump_task = asyncio.create_task(
            self._pump(self._subscription), name=f"session-{self.conversation_id}"
        )

    async def _pump(self, subscription: WebSocketSubscription) -> None:
        async for event in subscription:
            await self._apply(event)
        logger.debug(f"Subscription for conversation {self.conversation_id} ended")

    async def _apply(self, update: Any) -> bool:
        changed = self.reconciler.apply(update)
        if changed:
            if self._on_change is not None:
                self._on_change(self.reconciler.messages)
            async with self._changed:
                self._changed.notify_all()
        return changed

    async def send(self, content: str) -> Dict[str, Any]:
        """
        Submit a user turn.

        Returns:
            The server's acknowledgment (conversationId, userMessageId,
            assistantMessageId)
        """
        local = Message(
            id=self._id_factory(),
            role=Role.USER,
            content=content,
            conversation_id=self.conversation_id,
            state=MessageState.COMPLETE,
        )
        await self._apply(local)

        history = [
            {"id": m.id, "role": m.role.value, "content": m.content}
            for m in self.reconciler.messages
        ]
        return await self.client.mutation(
            "chat.sendMessage",
            {"conversationId": self.conversation_id, "messages": history},
        )

    async def wait_until(self, predicate: Callable[[List[Message]], bool], timeout: float = 5.0) -> List[Message]:
        """Wait until ``predicate(messages)`` holds. Raises asyncio.TimeoutError."""
        async def _wait() -> List[Message]:
            async with self._changed:
                await self._changed.wait_for(lambda: predicate(self.reconciler.messages))
            return self.reconciler.messages

        return await asyncio.wait_for(_wait(), timeout=timeout)

    async def close(self) -> None:
        if self._subscription is not None:
            await self._subscription.unsubscribe()
        if self._pump_task is not None:
            await self._pump_task
        self._subscription = None
        self._pump_task = None
