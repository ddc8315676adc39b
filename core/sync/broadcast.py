"""
Broadcast Hub - In-process publish/subscribe for message lifecycle events

@.architecture
Incoming: core/sync/engine.py, core/sync/router.py (chat.onMessage), ws/handlers.py --- {MessageEvent from producers, subscribe/unsubscribe calls from transports}
Processing: publish(), subscribe(), unsubscribe(), _offer(), close() --- {5 jobs: buffering, fan_out, listener_registry, overflow_handling, scoping}
Outgoing: ws/handlers.py (subscription pumps), tests --- {Subscription async iterators of MessageEvent}

Delivery guarantees:
- FIFO per listener, scoped to one conversation
- publish() never waits on a consumer; each listener owns a bounded queue
- a listener whose queue is full is closed with reason "overflow"

Known limitation: no durable buffer. A listener only sees events published
after it subscribed; there is no catch-up snapshot of in-flight or past
messages. The hub lives in one process and one event loop.
"""

import asyncio
import itertools
import logging
import threading
from typing import Any, Dict, List, Optional

from core.sync.models import MessageEvent
from monitoring.metrics import setup_sync_metrics

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256

CLOSE_UNSUBSCRIBED = "unsubscribed"
CLOSE_OVERFLOW = "overflow"
CLOSE_SHUTDOWN = "shutdown"

_CLOSED = object()


class Subscription:
    """
    One listener registered against a conversation.

    Iterate with ``async for event in subscription``; iteration ends once the
    subscription is closed. ``unsubscribe()`` is idempotent and discards any
    events still buffered; a hub shutdown ends iteration only after them.
    """

    def __init__(
        self,
        hub: "BroadcastHub",
        subscription_id: str,
        conversation_id: str,
        queue_size: int,
    ):
        self.id = subscription_id
        self.conversation_id = conversation_id
        self.close_reason: Optional[str] = None
        self.delivered = 0
        self._hub = hub
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._woken = False

    @property
    def closed(self) -> bool:
        return self.close_reason is not None

    @property
    def pending(self) -> int:
        """Number of buffered events not yet consumed."""
        if self._woken:
            return 0
        return self._queue.qsize()

    def unsubscribe(self) -> None:
        """Stop delivery to this listener only."""
        self._hub._remove(self, CLOSE_UNSUBSCRIBED)

    async def get(self) -> MessageEvent:
        """
        Wait for the next event.

        Raises:
            StopAsyncIteration: If the subscription is closed
        """
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        self.delivered += 1
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> MessageEvent:
        return await self.get()

    # Hub-side API

    def _offer(self, event: MessageEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    def _close(self, reason: str) -> None:
        if self.closed:
            return
        self.close_reason = reason
        if reason != CLOSE_SHUTDOWN:
            # Drop undelivered events
            while True:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
        # On shutdown buffered events stay deliverable; get() ends after them
        if self._queue.empty():
            self._queue.put_nowait(_CLOSED)
            self._woken = True


class BroadcastHub:
    """
    Fans out MessageEvents to every listener of the event's conversation.

    The per-conversation listener map is the only shared mutable structure
    and is guarded by a lock owned by the hub, so producers and transports
    never coordinate with each other directly.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        """
        Args:
            queue_size: Buffer size of each listener queue
        """
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self.queue_size = queue_size
        self._listeners: Dict[str, Dict[str, Subscription]] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._closed = False

        metrics = setup_sync_metrics()
        self._published = metrics["events_published"]
        self._dropped = metrics["events_dropped"]
        self._active = metrics["subscriptions_active"]

    def subscribe(self, conversation_id: str) -> Subscription:
        """
        Register a new listener for ``conversation_id``.

        Returns:
            Subscription producing events published from now on
        """
        if not conversation_id:
            raise ValueError("conversation_id is required")

        with self._lock:
            if self._closed:
                raise RuntimeError("Broadcast hub is closed")
            sub = Subscription(
                hub=self,
                subscription_id=f"sub-{next(self._ids)}",
                conversation_id=conversation_id,
                queue_size=self.queue_size,
            )
            self._listeners.setdefault(conversation_id, {})[sub.id] = sub

        self._active.inc()
        logger.debug(f"Subscribed {sub.id} to conversation {conversation_id}")
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        """Idempotent removal of a listener."""
        self._remove(subscription, CLOSE_UNSUBSCRIBED)

    def publish(self, event: MessageEvent) -> int:
        """
        Hand ``event`` to every listener of its conversation.

        Never blocks. A listener whose buffer is full is closed with reason
        "overflow" and must re-subscribe; other listeners are unaffected.

        Returns:
            Number of listeners that accepted the event
        """
        with self._lock:
            targets = list(self._listeners.get(event.conversation_id, {}).values())

        self._published.inc(kind=event.kind.value)

        delivered = 0
        for sub in targets:
            if sub._offer(event):
                delivered += 1
                continue
            if sub.closed:
                continue
            logger.warning(
                f"Listener {sub.id} on conversation {sub.conversation_id} overflowed "
                f"({self.queue_size} buffered); closing it"
            )
            self._dropped.inc(reason=CLOSE_OVERFLOW)
            self._remove(sub, CLOSE_OVERFLOW)

        return delivered

    def listener_count(self, conversation_id: Optional[str] = None) -> int:
        with self._lock:
            if conversation_id is not None:
                return len(self._listeners.get(conversation_id, {}))
            return sum(len(subs) for subs in self._listeners.values())

    def conversations(self) -> List[str]:
        with self._lock:
            return list(self._listeners.keys())

    def close(self) -> None:
        """
        Close every listener (shutdown).

        Events already buffered are still delivered before a listener ends.
        """
        with self._lock:
            self._closed = True
            subs = [s for group in self._listeners.values() for s in group.values()]
        for sub in subs:
            self._remove(sub, CLOSE_SHUTDOWN)
        logger.info(f"Broadcast hub closed ({len(subs)} listeners released)")

    def get_health_status(self) -> Dict[str, Any]:
        with self._lock:
            per_conversation = {cid: len(subs) for cid, subs in self._listeners.items()}
        return {
            "conversations": len(per_conversation),
            "listeners": sum(per_conversation.values()),
            "queue_size": self.queue_size,
            "closed": self._closed,
        }

    def _remove(self, sub: Subscription, reason: str) -> None:
        with self._lock:
            group = self._listeners.get(sub.conversation_id)
            removed = group is not None and group.pop(sub.id, None) is not None
            if group is not None and not group:
                del self._listeners[sub.conversation_id]

        sub._close(reason)
        if removed:
            self._active.dec()
            logger.debug(f"Listener {sub.id} closed ({reason})")
