"""
Unit Tests: Sync Engine and Turn Tracker

Tests turn validation, the published event sequence, failure recovery,
the single in-flight turn rule and shutdown.
"""

import asyncio

import pytest

from core.sync import SyncEngine
from core.sync.errors import GenerationError, InvalidTurnError, TurnInProgressError
from core.sync.models import EventKind, MessageState, Role
from core.sync.turns import TurnTracker
from monitoring.metrics import setup_sync_metrics


def summarize(events):
    return [
        (e.kind.value, e.message.id, e.message.state.value, e.message.content)
        for e in events
    ]


# =============================================================================
# Turn Tracker Tests
# =============================================================================

class TestTurnTracker:
    """Test in-flight turn bookkeeping."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_reservation_per_conversation(self):
        """Test a conversation can only be reserved once."""
        turns = TurnTracker()

        assert await turns.begin("c1", "a1") is True
        assert await turns.begin("c1", "a2") is False
        assert await turns.begin("c2", "a3") is True
        assert sorted(turns.active_turns()) == ["c1", "c2"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_end_releases(self):
        """Test end() frees the conversation and reports a duration."""
        turns = TurnTracker()
        await turns.begin("c1", "a1")

        duration = await turns.end("c1")

        assert duration is not None and duration >= 0
        assert not turns.is_active("c1")
        assert await turns.end("c1") is None
        assert turns.get_health_status()["completed_turns"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_begin(self):
        """Test concurrent reservations admit exactly one."""
        turns = TurnTracker()

        results = await asyncio.gather(*[turns.begin("c1", f"a{i}") for i in range(10)])

        assert results.count(True) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_turn(self):
        """Test turn metadata lookup."""
        turns = TurnTracker()
        await turns.begin("c1", "a1")

        turn = turns.get_turn("c1")
        assert turn["message_id"] == "a1"
        assert turns.get_turn("c2") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_end_only_releases_matching_turn(self):
        """Test end() with a message id leaves another turn's reservation alone."""
        turns = TurnTracker()
        await turns.begin("c1", "a2")

        assert await turns.end("c1", "a1") is None
        assert turns.is_active("c1")
        assert await turns.end("c1", "a2") is not None

    @pytest.mark.unit
    def test_published_ids_per_conversation(self):
        """Test published ids are remembered per conversation."""
        turns = TurnTracker()
        turns.record_published("c1", "u1", "a1")

        assert turns.is_published("c1", "u1")
        assert turns.is_published("c1", "a1")
        assert not turns.is_published("c2", "u1")

    @pytest.mark.unit
    def test_published_ids_bounded(self):
        """Test the least recently used conversation is forgotten first."""
        turns = TurnTracker(max_conversations=2)
        turns.record_published("c1", "u1")
        turns.record_published("c2", "u1")
        turns.record_published("c1", "u2")
        turns.record_published("c3", "u1")

        assert turns.is_published("c1", "u1")
        assert not turns.is_published("c2", "u1")
        assert turns.get_health_status()["tracked_conversations"] == 2


# =============================================================================
# Event Sequence Tests
# =============================================================================

class TestSubmitTurn:
    """Test the events a turn publishes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_hi_produces_hel_then_hello_there(self, engine, collect):
        """Test fragments "hel" and "lo there" stream then complete."""
        sub = engine.subscribe("c1")

        accepted = await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        events = await collect(sub)

        assert accepted.user_message_id == "u1"
        assert accepted.assistant_message_id == "a1"
        assert summarize(events) == [
            ("created", "u1", "complete", "hi"),
            ("created", "a1", "created", ""),
            ("updated", "a1", "streaming", "hel"),
            ("updated", "a1", "streaming", "hello there"),
            ("updated", "a1", "complete", "hello there"),
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_passed_to_source(self, engine, source, collect, turn_factory):
        """Test the source receives the whole history, new turn last."""
        sub = engine.subscribe("c1")
        history = turn_factory(("u0", "earlier"), ("a0", "reply", "assistant"), ("u1", "hi"))

        await engine.submit_turn("c1", history)
        await collect(sub)

        sent = source.calls[0]
        assert [m.id for m in sent] == ["u0", "a0", "u1"]
        assert sent[-1].role is Role.USER
        assert all(m.conversation_id == "c1" for m in sent)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returns_before_generation_finishes(self, hub, scripted_source, id_factory):
        """Test submit_turn acknowledges while generation is still held."""
        gate = asyncio.Event()
        engine = SyncEngine(hub, scripted_source(["slow"], gate=gate, hold_at=0), id_factory=id_factory)

        await asyncio.wait_for(
            engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}]),
            timeout=1.0,
        )

        assert engine.turns.is_active("c1")
        gate.set()
        await engine.stop(timeout=1.0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_after_partial(self, hub, scripted_source, id_factory, collect):
        """Test a source error after "partial" ends in failed with "partial"."""
        source = scripted_source(["partial"], fail_after=1, error=GenerationError("reset"))
        engine = SyncEngine(hub, source, id_factory=id_factory)
        sub = engine.subscribe("c1")

        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        events = await collect(sub)

        assert summarize(events)[-2:] == [
            ("updated", "a1", "streaming", "partial"),
            ("updated", "a1", "failed", "partial"),
        ]
        assert not engine.turns.is_active("c1")
        assert setup_sync_metrics()["turns_total"].get(outcome="failed") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_source_error_recovered(self, hub, scripted_source, id_factory, collect):
        """Test any exception from the source ends the turn as failed."""
        engine = SyncEngine(hub, scripted_source(["x"], fail_after=0, error=KeyError("bad")), id_factory=id_factory)
        sub = engine.subscribe("c1")

        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        events = await collect(sub)

        assert events[-1].message.state is MessageState.FAILED
        assert events[-1].message.content == ""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_turn_released_before_terminal_event(self, engine, collect):
        """Test observers of the terminal event can submit the next turn."""
        sub = engine.subscribe("c1")

        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        await collect(sub)
        assert not engine.turns.is_active("c1")

        accepted = await engine.submit_turn("c1", [
            {"id": "u1", "role": "user", "content": "hi"},
            {"id": "a1", "role": "assistant", "content": "hello there"},
            {"id": "u2", "role": "user", "content": "again"},
        ])
        assert accepted.assistant_message_id == "a2"


# =============================================================================
# Validation Tests
# =============================================================================

class TestValidation:
    """Test malformed turns are rejected before any publish."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("conversation_id,messages", [
        ("c1", []),
        ("c1", [{"id": "u1", "role": "user", "content": "   "}]),
        ("c1", [{"id": "u1", "role": "user", "content": ""}]),
        ("c1", [{"id": "a0", "role": "assistant", "content": "hi"}]),
        ("c1", [{"id": "u1", "role": "user", "content": "a"}, {"id": "u1", "role": "user", "content": "b"}]),
        ("c1", [{"id": "", "role": "user", "content": "hi"}]),
        ("c1", [{"id": "u1", "role": "robot", "content": "hi"}]),
        ("", [{"id": "u1", "role": "user", "content": "hi"}]),
    ])
    async def test_malformed_turn_rejected(self, engine, conversation_id, messages):
        """Test each malformed turn raises InvalidTurnError and publishes nothing."""
        sub = engine.subscribe("c1")

        with pytest.raises(InvalidTurnError):
            await engine.submit_turn(conversation_id, messages)

        assert sub.pending == 0
        assert not engine.turns.is_active("c1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_content_length_limit(self, hub, source):
        """Test content over the limit is rejected."""
        engine = SyncEngine(hub, source, max_message_length=5)

        with pytest.raises(InvalidTurnError):
            await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "too long"}])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_assistant_id_collision(self, hub, source):
        """Test an assistant id clashing with the history is rejected."""
        engine = SyncEngine(hub, source, id_factory=lambda: "u1")

        with pytest.raises(InvalidTurnError):
            await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        assert not engine.turns.is_active("c1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reused_user_id_rejected(self, engine, collect):
        """Test a later turn cannot announce an already published user id."""
        sub = engine.subscribe("c1")
        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        await collect(sub)

        with pytest.raises(InvalidTurnError) as exc_info:
            await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "again"}])

        assert "u1" in exc_info.value.message
        assert sub.pending == 0
        assert not engine.turns.is_active("c1")
        assert engine.turns.get_health_status()["completed_turns"] == 1

        # Same id in another conversation is fine
        accepted = await engine.submit_turn("c2", [{"id": "u1", "role": "user", "content": "hi"}])
        assert accepted.user_message_id == "u1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reused_assistant_id_rejected(self, hub, source, collect):
        """Test a generated assistant id already published is refused."""
        engine = SyncEngine(hub, source, id_factory=lambda: "a1")
        sub = engine.subscribe("c1")
        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        first = await collect(sub)

        with pytest.raises(InvalidTurnError):
            await engine.submit_turn("c1", [{"id": "u2", "role": "user", "content": "again"}])

        created = [e.message.id for e in first if e.kind is EventKind.CREATED]
        assert created == ["u1", "a1"]
        assert sub.pending == 0
        await engine.stop(timeout=1.0)


# =============================================================================
# Concurrency Tests
# =============================================================================

class TestSingleTurn:
    """Test one assistant turn per conversation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_turn_rejected_while_streaming(self, hub, scripted_source, id_factory, collect):
        """Test a turn submitted mid-stream is refused with no publish."""
        gate = asyncio.Event()
        engine = SyncEngine(hub, scripted_source(["hel", "lo"], gate=gate, hold_at=1), id_factory=id_factory)
        sub = engine.subscribe("c1")

        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        head = await collect(sub, count=3)
        assert head[-1].message.state is MessageState.STREAMING

        with pytest.raises(TurnInProgressError):
            await engine.submit_turn("c1", [{"id": "u2", "role": "user", "content": "again"}])
        assert sub.pending == 0

        # Other conversations are independent
        await engine.submit_turn("c2", [{"id": "u9", "role": "user", "content": "other"}])

        gate.set()
        tail = await collect(sub)
        assert tail[-1].message.state is MessageState.COMPLETE
        assert tail[-1].message.content == "hello"
        await engine.stop(timeout=1.0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_at_most_one_streaming_assistant(self, engine, collect):
        """Test no two assistant messages stream at once in a conversation."""
        sub = engine.subscribe("c1")
        history = [{"id": "u1", "role": "user", "content": "hi"}]

        await engine.submit_turn("c1", history)
        events = await collect(sub)

        streaming = set()
        for e in events:
            if e.message.role is not Role.ASSISTANT:
                continue
            if e.message.state.is_terminal:
                streaming.discard(e.message.id)
            else:
                streaming.add(e.message.id)
            assert len(streaming) <= 1


# =============================================================================
# Lifecycle Tests
# =============================================================================

class TestLifecycle:
    """Test engine start/stop."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_fails_in_flight_turns(self, hub, scripted_source, id_factory, collect):
        """Test stop() ends a held turn as failed with its partial content."""
        gate = asyncio.Event()
        engine = SyncEngine(hub, scripted_source(["part", "ial"], gate=gate, hold_at=1), id_factory=id_factory)
        await engine.start()
        sub = engine.subscribe("c1")

        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        await collect(sub, count=3)

        await engine.stop(timeout=1.0)
        tail = await collect(sub)

        assert tail[-1].message.state is MessageState.FAILED
        assert tail[-1].message.content == "part"
        assert not engine.running
        assert not engine.turns.is_active("c1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_before_turn_task_runs(self, engine, collect):
        """Test a turn cancelled before its task starts still ends as failed."""
        sub = engine.subscribe("c1")

        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        await engine.stop(timeout=1.0)
        events = await collect(sub)

        assert summarize(events) == [
            ("created", "u1", "complete", "hi"),
            ("created", "a1", "created", ""),
            ("updated", "a1", "failed", ""),
        ]
        assert not engine.turns.is_active("c1")
        assert engine.get_health_status()["tasks"] == 0
        assert setup_sync_metrics()["turns_total"].get(outcome="failed") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_status(self, engine):
        """Test health status exposes turns and hub state."""
        status = engine.get_health_status()

        assert status["running"] is True
        assert status["turns"]["active_turns"] == 0
        assert "listeners" in status["hub"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_events_created_before_updated(self, engine, collect):
        """Test both created events precede any update."""
        sub = engine.subscribe("c1")
        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        events = await collect(sub)

        kinds = [e.kind for e in events]
        assert kinds[:2] == [EventKind.CREATED, EventKind.CREATED]
        assert EventKind.CREATED not in kinds[2:]
