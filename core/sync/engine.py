"""
Sync Engine - Turn orchestration between submitters, generation and observers

@.architecture
Incoming: core/sync/procedures.py, api/v1/endpoints/chat.py, app.py --- {conversation_id, ordered message history (last entry = new user turn)}
Processing: submit_turn(), _validate_turn(), _run_turn(), subscribe(), stop() --- {6 jobs: input_validation, turn_reservation, event_publishing, generation_driving, failure_recovery, shutdown}
Outgoing: core/sync/broadcast.py, callers --- {MessageEvent publications, TurnAccepted acknowledgments}

Turn sequence:
    1. reserve the conversation (one assistant turn at a time)
    2. publish "created" for the user message (state complete)
    3. publish "created" for the empty assistant message
    4. background task: aggregator snapshots -> "updated" events
    5. release the conversation, then publish the terminal snapshot

Generation failures never reach the submitter; they end as a "failed"
snapshot carrying whatever content was produced.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Set, Union

from pydantic import ValidationError

from core.sync.aggregator import DeltaAggregator
from core.sync.broadcast import BroadcastHub, Subscription
from core.sync.errors import InvalidTurnError, TurnInProgressError
from core.sync.generation import GenerationSource
from core.sync.models import (
    EventKind,
    Message,
    MessageEvent,
    MessageInput,
    MessageState,
    Role,
    TurnAccepted,
)
from core.sync.turns import TurnTracker
from monitoring.logging import set_request_context
from monitoring.metrics import setup_sync_metrics

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_LENGTH = 32_000


def _new_message_id() -> str:
    return str(uuid.uuid4())


class SyncEngine:
    """
    Accepts user turns and drives assistant generation for them.

    The hub is injected; the engine never creates or looks one up. Each
    accepted turn runs in its own task tracked by the engine so shutdown can
    finish it as failed.
    """

    def __init__(
        self,
        hub: BroadcastHub,
        source: GenerationSource,
        turns: Optional[TurnTracker] = None,
        id_factory: Optional[Callable[[], str]] = None,
        coalesce_window: float = 0.0,
        max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
    ):
        """
        Args:
            hub: Broadcast hub events are published to
            source: Generation source producing assistant text
            turns: Turn tracker (a fresh one if None)
            id_factory: Assistant message id generator (uuid4 by default)
            coalesce_window: Minimum seconds between streaming snapshots
            max_message_length: Maximum characters in a user message
        """
        self.hub = hub
        self.source = source
        self.turns = turns or TurnTracker()
        self._id_factory = id_factory or _new_message_id
        self._coalesce_window = coalesce_window
        self._max_message_length = max_message_length
        self._inflight: Dict[asyncio.Task, DeltaAggregator] = {}
        self._running = False

        metrics = setup_sync_metrics()
        self._turns_total = metrics["turns_total"]
        self._turn_duration = metrics["turn_duration_seconds"]

    # ============================================================================
    # LIFECYCLE
    # ============================================================================

    async def start(self) -> None:
        self._running = True
        logger.info("Sync engine started")

    async def stop(self, timeout: float = 5.0) -> None:
        """
        Cancel in-flight turns. Every turn that has not reached a terminal
        state publishes a failed snapshot with its partial content, including
        turns whose task was cancelled before it started running.
        """
        self._running = False
        inflight = list(self._inflight.items())
        for task, _ in inflight:
            task.cancel()

        if inflight:
            done, pending = await asyncio.wait([task for task, _ in inflight], timeout=timeout)
            if pending:
                logger.warning(f"{len(pending)} turns did not finish within {timeout}s of shutdown")
            for task, aggregator in inflight:
                if task in done and not aggregator.finished:
                    snapshot = await self._fail_turn(aggregator)
                    logger.info(f"Turn {snapshot.id} cancelled before it started")
        logger.info(f"Sync engine stopped ({len(inflight)} turns cancelled)")

    @property
    def running(self) -> bool:
        return self._running

    # ============================================================================
    # OPERATIONS
    # ============================================================================

    def subscribe(self, conversation_id: str) -> Subscription:
        """Register a listener for every event of ``conversation_id`` from now on."""
        return self.hub.subscribe(conversation_id)

    async def submit_turn(
        self,
        conversation_id: str,
        messages: Sequence[Union[MessageInput, Dict[str, Any]]],
    ) -> TurnAccepted:
        """
        Accept a new user turn and start the assistant reply.

        Args:
            conversation_id: Conversation the turn belongs to
            messages: Ordered history; the last entry is the new user message

        Returns:
            TurnAccepted with the user and assistant message ids

        Raises:
            InvalidTurnError: Malformed turn, or an id already announced in
                this conversation (nothing is published)
            TurnInProgressError: Previous assistant turn still in flight
        """
        history = self._validate_turn(conversation_id, messages)
        user_message = history[-1]
        assistant = Message(
            id=self._id_factory(),
            role=Role.ASSISTANT,
            conversation_id=conversation_id,
            state=MessageState.CREATED,
        )
        if any(m.id == assistant.id for m in history):
            raise InvalidTurnError(f"Message id {assistant.id} already used in this conversation")

        if not await self.turns.begin(conversation_id, assistant.id):
            raise TurnInProgressError(
                f"Conversation {conversation_id} already has an assistant turn in flight"
            )

        # The reservation keeps other turns of this conversation from recording ids
        for message_id in (user_message.id, assistant.id):
            if self.turns.is_published(conversation_id, message_id):
                await self.turns.end(conversation_id, assistant.id, count=False)
                raise InvalidTurnError(f"Message id {message_id} already used in this conversation")

        aggregator = DeltaAggregator(assistant, coalesce_window=self._coalesce_window)
        try:
            self.turns.record_published(conversation_id, user_message.id, assistant.id)
            self.hub.publish(MessageEvent(kind=EventKind.CREATED, message=user_message))
            self.hub.publish(MessageEvent(kind=EventKind.CREATED, message=assistant.snapshot()))

            task = asyncio.create_task(
                self._run_turn(aggregator, history),
                name=f"turn-{conversation_id}-{assistant.id}",
            )
        except BaseException:
            await self.turns.end(conversation_id, assistant.id)
            raise

        self._inflight[task] = aggregator
        task.add_done_callback(self._forget_task)

        logger.info(
            f"Accepted turn for conversation {conversation_id}: "
            f"user={user_message.id} assistant={assistant.id} history={len(history)}"
        )
        return TurnAccepted(
            conversation_id=conversation_id,
            user_message_id=user_message.id,
            assistant_message_id=assistant.id,
        )

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "tasks": len(self._inflight),
            "turns": self.turns.get_health_status(),
            "hub": self.hub.get_health_status(),
        }

    # ============================================================================
    # INTERNALS
    # ============================================================================

    def _validate_turn(
        self,
        conversation_id: str,
        messages: Sequence[Union[MessageInput, Dict[str, Any]]],
    ) -> List[Message]:
        if not conversation_id or not conversation_id.strip():
            raise InvalidTurnError("conversationId must not be blank")
        if not messages:
            raise InvalidTurnError("messages must contain at least the new user message")

        inputs: List[MessageInput] = []
        for raw in messages:
            if isinstance(raw, MessageInput):
                inputs.append(raw)
                continue
            try:
                inputs.append(MessageInput.model_validate(raw))
            except ValidationError as e:
                raise InvalidTurnError(f"Invalid message: {e.errors()[0].get('msg')}") from e

        last = inputs[-1]
        if last.role is not Role.USER:
            raise InvalidTurnError(f"Last message must have role 'user', got '{last.role.value}'")
        if not last.content.strip():
            raise InvalidTurnError("Message content must not be blank")
        if len(last.content) > self._max_message_length:
            raise InvalidTurnError(
                f"Message content exceeds {self._max_message_length} characters"
            )

        seen: Set[str] = set()
        for item in inputs:
            if item.id in seen:
                raise InvalidTurnError(f"Duplicate message id: {item.id}")
            seen.add(item.id)

        return [
            Message(
                id=item.id,
                role=item.role,
                content=item.content,
                conversation_id=conversation_id,
                state=MessageState.COMPLETE,
            )
            for item in inputs
        ]

    async def _fragments(self, history: List[Message]) -> AsyncIterator[str]:
        # Source errors surface while iterating, inside the aggregator
        async for fragment in self.source.stream_text(history):
            yield fragment

    async def _run_turn(self, aggregator: DeltaAggregator, history: List[Message]) -> None:
        assistant = aggregator.current
        conversation_id = assistant.conversation_id
        set_request_context(conversation_id=conversation_id)

        started = time.monotonic()
        try:
            async for snapshot in aggregator.aggregate(self._fragments(history)):
                if snapshot.state.is_terminal:
                    # Release first so an observer reacting to the terminal
                    # event can submit the next turn immediately
                    await self._finish_turn(snapshot)
                self.hub.publish(MessageEvent(kind=EventKind.UPDATED, message=snapshot))

            if aggregator.error is not None:
                logger.warning(
                    f"Turn {assistant.id} failed after {time.monotonic() - started:.2f}s: "
                    f"{aggregator.error}"
                )
            else:
                logger.info(
                    f"Turn {assistant.id} complete ({aggregator.fragment_count} fragments, "
                    f"{time.monotonic() - started:.2f}s)"
                )

        except asyncio.CancelledError:
            if not aggregator.finished:
                snapshot = await self._fail_turn(aggregator)
                logger.info(f"Turn {assistant.id} cancelled with {len(snapshot.content)} characters")
            raise

        except Exception as e:
            logger.error(f"Unexpected error in turn {assistant.id}: {e}", exc_info=True)
            if not aggregator.finished:
                await self._fail_turn(aggregator)

        finally:
            # No-op once released; never touches a later turn's reservation
            await self.turns.end(conversation_id, assistant.id)

    async def _finish_turn(self, snapshot: Message) -> None:
        duration = await self.turns.end(snapshot.conversation_id, snapshot.id)
        self._turns_total.inc(outcome=snapshot.state.value)
        if duration is not None:
            self._turn_duration.observe(duration)

    async def _fail_turn(self, aggregator: DeltaAggregator) -> Message:
        """Freeze an unfinished turn as failed, release it and publish the snapshot."""
        snapshot = aggregator.fail()
        await self._finish_turn(snapshot)
        self.hub.publish(MessageEvent(kind=EventKind.UPDATED, message=snapshot))
        return snapshot

    def _forget_task(self, task: asyncio.Task) -> None:
        self._inflight.pop(task, None)
