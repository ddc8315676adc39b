"""
Unit Tests: Client Reconciler

Tests idempotent upsert by id under replay, reordering and races.
"""

import random

import pytest

from client.reconciler import Reconciler
from core.sync.models import EventKind, Message, MessageEvent, MessageState, Role


def snap(message_id: str, content: str, state: MessageState, seq: int, role=Role.ASSISTANT, conversation_id="c1") -> Message:
    return Message(
        id=message_id,
        role=role,
        content=content,
        conversation_id=conversation_id,
        state=state,
        seq=seq,
    )


@pytest.fixture
def hi_events():
    """Events of the "hi" -> "hel" + "lo there" turn, in emission order."""
    return [
        MessageEvent(kind=EventKind.CREATED, message=snap("u1", "hi", MessageState.COMPLETE, 0, role=Role.USER)),
        MessageEvent(kind=EventKind.CREATED, message=snap("a1", "", MessageState.CREATED, 0)),
        MessageEvent(kind=EventKind.UPDATED, message=snap("a1", "hel", MessageState.STREAMING, 1)),
        MessageEvent(kind=EventKind.UPDATED, message=snap("a1", "hello there", MessageState.STREAMING, 2)),
        MessageEvent(kind=EventKind.UPDATED, message=snap("a1", "hello there", MessageState.COMPLETE, 3)),
    ]


# =============================================================================
# Upsert Tests
# =============================================================================

class TestUpsert:
    """Test insert-or-replace by id."""

    @pytest.mark.unit
    def test_in_order_stream(self, hi_events):
        """Test the normal sequence ends with two messages."""
        reconciler = Reconciler("c1")
        changed = [reconciler.apply(e) for e in hi_events]

        assert changed == [True] * 5
        assert [(m.id, m.content, m.state) for m in reconciler.messages] == [
            ("u1", "hi", MessageState.COMPLETE),
            ("a1", "hello there", MessageState.COMPLETE),
        ]

    @pytest.mark.unit
    def test_replay_is_noop(self, hi_events):
        """Test applying the same events twice changes nothing."""
        reconciler = Reconciler()
        reconciler.apply_all(hi_events)
        before = reconciler.messages

        assert reconciler.apply_all(hi_events) == 0
        assert reconciler.messages == before

    @pytest.mark.unit
    def test_replace_keeps_position(self):
        """Test updates replace in place without re-sorting."""
        reconciler = Reconciler()
        reconciler.apply(snap("a1", "", MessageState.CREATED, 0))
        reconciler.apply(snap("u2", "later", MessageState.COMPLETE, 0, role=Role.USER))
        reconciler.apply(snap("a1", "grown", MessageState.STREAMING, 1))

        assert [m.id for m in reconciler.messages] == ["a1", "u2"]
        assert reconciler.get("a1").content == "grown"

    @pytest.mark.unit
    def test_wire_dicts_accepted(self):
        """Test events and bare messages in wire form."""
        reconciler = Reconciler()
        reconciler.apply({"kind": "created", "message": {
            "id": "u1", "role": "user", "content": "hi", "state": "complete", "conversationId": "c1", "seq": 0,
        }})
        reconciler.apply({
            "id": "a1", "role": "assistant", "content": "", "state": "created", "conversationId": "c1", "seq": 0,
        })

        assert [m.id for m in reconciler.messages] == ["u1", "a1"]

    @pytest.mark.unit
    def test_other_conversation_ignored(self):
        """Test a reconciler scoped to c1 ignores c2 messages."""
        reconciler = Reconciler("c1")

        assert reconciler.apply(snap("x", "elsewhere", MessageState.COMPLETE, 0, conversation_id="c2")) is False
        assert len(reconciler) == 0


# =============================================================================
# Staleness Tests
# =============================================================================

class TestStaleness:
    """Test stale or regressive snapshots are ignored."""

    @pytest.mark.unit
    def test_lower_seq_ignored(self):
        """Test an older snapshot never replaces a newer one."""
        reconciler = Reconciler()
        reconciler.apply(snap("a1", "hello there", MessageState.STREAMING, 2))

        assert reconciler.apply(snap("a1", "hel", MessageState.STREAMING, 1)) is False
        assert reconciler.get("a1").content == "hello there"

    @pytest.mark.unit
    def test_shorter_streaming_content_ignored(self):
        """Test content never regresses for non-failed snapshots."""
        reconciler = Reconciler()
        reconciler.apply(snap("a1", "hello", MessageState.STREAMING, 2))

        assert reconciler.apply(snap("a1", "he", MessageState.STREAMING, 3)) is False

    @pytest.mark.unit
    def test_failed_may_freeze_shorter_content(self):
        """Test a failed snapshot is accepted even with less content."""
        reconciler = Reconciler()
        reconciler.apply(snap("a1", "partial text", MessageState.STREAMING, 2))

        assert reconciler.apply(snap("a1", "partial", MessageState.FAILED, 3)) is True
        assert reconciler.get("a1").state is MessageState.FAILED
        assert reconciler.get("a1").content == "partial"

    @pytest.mark.unit
    def test_terminal_is_immutable(self):
        """Test nothing changes a message once terminal."""
        reconciler = Reconciler()
        reconciler.apply(snap("a1", "done", MessageState.COMPLETE, 3))

        assert reconciler.apply(snap("a1", "done", MessageState.STREAMING, 4)) is False
        assert reconciler.apply(snap("a1", "done!", MessageState.FAILED, 5)) is False
        assert reconciler.get("a1").state is MessageState.COMPLETE

    @pytest.mark.unit
    def test_optimistic_user_message_deduplicated(self):
        """Test the server echo of a locally applied user message is a no-op."""
        reconciler = Reconciler("c1")
        local = snap("u1", "hi", MessageState.COMPLETE, 0, role=Role.USER)
        reconciler.apply(local)

        echo = MessageEvent(kind=EventKind.CREATED, message=local.snapshot())
        assert reconciler.apply(echo) is False
        assert len(reconciler) == 1


# =============================================================================
# Ordering Tests
# =============================================================================

class TestReordering:
    """Test arbitrary delivery orders converge."""

    @pytest.mark.unit
    @pytest.mark.parametrize("seed", range(20))
    def test_shuffled_with_duplicates(self, hi_events, seed):
        """Test shuffled, duplicated events give one entry per id, final state complete."""
        rng = random.Random(seed)
        delivered = hi_events + rng.sample(hi_events, k=3)
        rng.shuffle(delivered)

        reconciler = Reconciler("c1")
        reconciler.apply_all(delivered)

        first_seen = list(dict.fromkeys(e.message.id for e in delivered))
        assert [m.id for m in reconciler.messages] == first_seen
        assert reconciler.get("a1").content == "hello there"
        assert reconciler.get("a1").state is MessageState.COMPLETE

    @pytest.mark.unit
    def test_streaming_view(self, hi_events):
        """Test streaming() lists messages not yet terminal."""
        reconciler = Reconciler()
        reconciler.apply_all(hi_events[:3])

        assert [m.id for m in reconciler.streaming()] == ["a1"]

        reconciler.apply(hi_events[-1])
        assert reconciler.streaming() == []

    @pytest.mark.unit
    def test_views_are_copies(self, hi_events):
        """Test callers cannot mutate reconciler state through views."""
        reconciler = Reconciler()
        reconciler.apply_all(hi_events)

        reconciler.messages[0].content = "tampered"
        reconciler.get("a1").content = "tampered"

        assert reconciler.get("u1").content == "hi"
        assert reconciler.get("a1").content == "hello there"
