"""
Integration Tests: WebSocket

Tests the duplex channel: frame handling over a real Starlette WebSocket
(TestClient), and hub behaviour (overflow, disconnect, reconnect broadcast)
against an in-memory socket.
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import create_app
from core.sync import BroadcastHub, SyncEngine
from core.sync.models import EventKind, Message, MessageEvent, MessageState, Role
from core.sync.procedures import build_app_router
from ws.hub import WebSocketHub


SUBSCRIBE_C1 = {
    "id": 1,
    "method": "subscription",
    "params": {"path": "chat.onMessage", "input": {"conversationId": "c1"}},
}


def send_message_frame(frame_id, conversation_id="c1", content="hi"):
    return {
        "id": frame_id,
        "method": "mutation",
        "params": {
            "path": "chat.sendMessage",
            "input": {
                "conversationId": conversation_id,
                "messages": [{"id": "u1", "role": "user", "content": content}],
            },
        },
    }


def receive_until_complete(ws, subscription_id=1):
    """Read frames until the assistant message of the subscription is terminal."""
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame.get("id") != subscription_id or "result" not in frame:
            continue
        data = frame["result"].get("data")
        if data and data["message"]["role"] == "assistant" and data["message"]["state"] in ("complete", "failed"):
            return frames


def events_of(frames, subscription_id=1):
    return [
        f["result"]["data"] for f in frames
        if f.get("id") == subscription_id and f.get("result", {}).get("type") == "data"
    ]


@pytest.fixture
def test_client(app):
    """Starlette TestClient running the app lifespan."""
    with TestClient(app) as tc:
        yield tc


# =============================================================================
# Frame Handling Tests
# =============================================================================

class TestFrames:
    """Test frame parsing and heartbeat."""

    @pytest.mark.integration
    def test_ping_pong(self, test_client):
        """Test ping frames are answered with pong."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping", "timestamp": 1700000000})

            assert ws.receive_json() == {"type": "pong", "timestamp": 1700000000}

    @pytest.mark.integration
    def test_root_path_accepts_websocket(self, test_client):
        """Test the socket is also served at /."""
        with test_client.websocket_connect("/") as ws:
            ws.send_json({"type": "ping"})

            assert ws.receive_json()["type"] == "pong"

    @pytest.mark.integration
    def test_invalid_json(self, test_client):
        """Test non-JSON text yields a parse error and the socket stays open."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_text("{nope")
            assert ws.receive_json()["error"]["code"] == "PARSE_ERROR"

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    @pytest.mark.integration
    def test_unrecognized_frame(self, test_client):
        """Test unknown frames are rejected with their id."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"id": 5, "method": "teleport"})

            frame = ws.receive_json()
            assert frame["id"] == 5
            assert frame["error"]["code"] == "BAD_REQUEST"

    @pytest.mark.integration
    def test_query_over_socket(self, test_client):
        """Test queries can ride the socket."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"id": "q1", "method": "query", "params": {"path": "health.check"}})

            assert ws.receive_json() == {"id": "q1", "result": {"type": "data", "data": {"ok": True}}}

    @pytest.mark.integration
    def test_unknown_procedure(self, test_client):
        """Test unknown paths return an error frame."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"id": 3, "method": "query", "params": {"path": "nope"}})

            frame = ws.receive_json()
            assert frame["error"]["code"] == "NOT_FOUND"
            assert frame["error"]["httpStatus"] == 404


# =============================================================================
# Subscription Tests
# =============================================================================

class TestSubscriptions:
    """Test chat.onMessage over the socket."""

    @pytest.mark.integration
    def test_started_then_events(self, test_client):
        """Test started precedes data, and a turn streams to completion."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json(SUBSCRIBE_C1)
            assert ws.receive_json() == {"id": 1, "result": {"type": "started"}}

            ws.send_json(send_message_frame(2))
            frames = receive_until_complete(ws)

            ack = next(f for f in frames if f.get("id") == 2)
            assert ack["result"]["data"]["userMessageId"] == "u1"

            events = events_of(frames)
            assert [e["kind"] for e in events[:2]] == ["created", "created"]
            assert events[0]["message"] == {
                "id": "u1", "role": "user", "content": "hi",
                "conversationId": "c1", "state": "complete", "seq": 0,
            }
            assert events[-1]["message"]["content"] == "hi"
            assert events[-1]["message"]["state"] == "complete"

    @pytest.mark.integration
    def test_subscribers_see_identical_sequences(self, test_client):
        """Test two sockets on one conversation receive the same events."""
        with test_client.websocket_connect("/ws") as first, test_client.websocket_connect("/ws") as second:
            for ws in (first, second):
                ws.send_json(SUBSCRIBE_C1)
                assert ws.receive_json()["result"]["type"] == "started"

            response = test_client.post(
                "/v1/rpc/chat.sendMessage",
                json={"conversationId": "c1", "messages": [{"id": "u1", "role": "user", "content": "hello there"}]},
            )
            assert response.status_code == 200

            assert events_of(receive_until_complete(first)) == events_of(receive_until_complete(second))

    @pytest.mark.integration
    def test_other_conversation_not_delivered(self, test_client):
        """Test a subscriber to c1 sees nothing from c2."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json(SUBSCRIBE_C1)
            ws.receive_json()

            ws.send_json(send_message_frame(2, conversation_id="c2"))
            assert ws.receive_json()["id"] == 2

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    @pytest.mark.integration
    def test_stop(self, test_client):
        """Test subscription.stop acknowledges and ends delivery."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json(SUBSCRIBE_C1)
            ws.receive_json()

            ws.send_json({"id": 1, "method": "subscription.stop"})
            assert ws.receive_json() == {"id": 1, "result": {"type": "stopped"}}

            ws.send_json(send_message_frame(2))
            assert ws.receive_json()["id"] == 2
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    @pytest.mark.integration
    def test_duplicate_subscription_id(self, test_client):
        """Test reusing an active id is rejected."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json(SUBSCRIBE_C1)
            ws.receive_json()

            ws.send_json(SUBSCRIBE_C1)
            frame = ws.receive_json()
            assert frame["id"] == 1
            assert "Duplicate" in frame["error"]["message"]

    @pytest.mark.integration
    def test_subscription_input_validated(self, test_client):
        """Test a subscription without a conversation is rejected."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"id": 1, "method": "subscription", "params": {"path": "chat.onMessage", "input": {}}})

            assert ws.receive_json()["error"]["code"] == "BAD_REQUEST"

    @pytest.mark.integration
    def test_idle_socket_closed(self, test_settings):
        """Test a socket silent for two heartbeat intervals is closed."""
        test_settings.sync.heartbeat_interval = 0.05

        with TestClient(create_app(test_settings)) as tc, tc.websocket_connect("/ws") as ws:
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

    @pytest.mark.integration
    def test_disconnect_releases_listener(self, test_client, app):
        """Test closing the socket removes its listener."""
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json(SUBSCRIBE_C1)
            ws.receive_json()
            assert app.state.hub.listener_count("c1") == 1

        for _ in range(100):
            if app.state.hub.listener_count("c1") == 0:
                break
            test_client.get("/health")
        assert app.state.hub.listener_count("c1") == 0


# =============================================================================
# Hub Tests
# =============================================================================

class FakeWebSocket:
    """Records frames sent by the hub."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


async def eventually(predicate, timeout: float = 1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def streaming_event(seq: int) -> MessageEvent:
    return MessageEvent(kind=EventKind.UPDATED, message=Message(
        id="a1", role=Role.ASSISTANT, content="x" * seq,
        conversation_id="c1", state=MessageState.STREAMING, seq=seq,
    ))


class TestWebSocketHub:
    """Test WebSocketHub with in-memory sockets."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_overflow_stops_with_reason(self, source):
        """Test a listener closed for overflow is reported as stopped/overflow."""
        hub = BroadcastHub(queue_size=1)
        ws_hub = WebSocketHub(build_app_router(SyncEngine(hub, source)))
        client = await ws_hub.register(FakeWebSocket())
        await ws_hub.handle_json(client, json.dumps(SUBSCRIBE_C1))

        for seq in range(1, 4):
            hub.publish(streaming_event(seq))

        await eventually(lambda: client.ws.sent[-1].get("result", {}).get("type") == "stopped")
        assert client.ws.sent[-1] == {"id": 1, "result": {"type": "stopped", "reason": "overflow"}}
        assert 1 not in client.pumps

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_send_unregisters(self, source):
        """Test a socket that fails to send is dropped with its listeners."""
        hub = BroadcastHub()
        ws_hub = WebSocketHub(build_app_router(SyncEngine(hub, source)))
        client = await ws_hub.register(FakeWebSocket())
        await ws_hub.handle_json(client, json.dumps(SUBSCRIBE_C1))
        assert hub.listener_count("c1") == 1

        client.ws.fail = True
        hub.publish(streaming_event(1))

        await eventually(lambda: ws_hub.get_client_count() == 0)
        assert hub.listener_count("c1") == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_broadcast_reconnect(self, source):
        """Test shutdown tells every client to reconnect."""
        ws_hub = WebSocketHub(build_app_router(SyncEngine(BroadcastHub(), source)))
        clients = [await ws_hub.register(FakeWebSocket()) for _ in range(3)]

        delivered = await ws_hub.broadcast_reconnect()

        assert delivered == 3
        assert all(c.ws.sent == [{"id": None, "method": "reconnect"}] for c in clients)
        assert ws_hub.get_stats()["shutting_down"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cleanup_all(self, source):
        """Test cleanup_all() releases every subscription."""
        hub = BroadcastHub()
        ws_hub = WebSocketHub(build_app_router(SyncEngine(hub, source)))
        client = await ws_hub.register(FakeWebSocket())
        await ws_hub.handle_json(client, json.dumps(SUBSCRIBE_C1))

        await ws_hub.cleanup_all()

        assert ws_hub.get_client_count() == 0
        assert hub.listener_count() == 0


# =============================================================================
# Shutdown Tests
# =============================================================================

def frame_kind(frame):
    if frame.get("method") == "reconnect":
        return "reconnect"
    result = frame.get("result", {})
    if result.get("type") == "data":
        return f"data:{result['data']['message']['state']}"
    return result.get("type")


class TestShutdown:
    """Test the application shutdown sequence."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_snapshot_and_stop_precede_reconnect(self, test_settings, scripted_source):
        """Test subscribers see the failed turn and "stopped" before "reconnect"."""
        gate = asyncio.Event()
        app = create_app(test_settings, source=scripted_source(["part", "ial"], gate=gate, hold_at=1))
        engine, ws_hub = app.state.engine, app.state.ws_hub
        await engine.start()

        client = await ws_hub.register(FakeWebSocket())
        await ws_hub.handle_json(client, json.dumps(SUBSCRIBE_C1))
        await eventually(lambda: app.state.hub.listener_count("c1") == 1)

        await engine.submit_turn("c1", [{"id": "u1", "role": "user", "content": "hi"}])
        await eventually(lambda: "data:streaming" in [frame_kind(f) for f in client.ws.sent])

        for handler in app.router.on_shutdown:
            await handler()

        kinds = [frame_kind(f) for f in client.ws.sent]
        assert kinds[-3:] == ["data:failed", "stopped", "reconnect"]
        assert client.ws.sent[-2] == {"id": 1, "result": {"type": "stopped", "reason": "shutdown"}}
        failed = client.ws.sent[-3]["result"]["data"]["message"]
        assert failed["content"] == "part"
        assert not engine.turns.is_active("c1")
        assert ws_hub.get_client_count() == 0
