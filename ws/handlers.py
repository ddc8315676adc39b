"""
WebSocket Message Handlers

Handles frame processing for the duplex channel: request dispatch through
the operation router and subscription pumps that relay hub events.

@.architecture
Incoming: ws/hub.py, core/sync/router.py (via router.call/router.open) --- {JSON frames from clients, subscription streams of MessageEvent}
Processing: handle_json(), _handle_request(), _start_subscription(), SubscriptionPump.run(), _handle_stop(), cleanup_client() --- {6 jobs: frame_parsing, data_validation, request_dispatch, stream_relay, subscription_control, cleanup}
Outgoing: ws/hub.py (send), Frontend (WebSocket) --- {result/error frames, pong frames}

Features:
- Queries and mutations answered inline
- One pump task per subscription, FIFO relay of events
- Application errors become error frames; the connection stays open
- Disconnect releases every listener the client opened
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket

from core.sync.errors import SyncError
from core.sync.router import OperationRouter, serialize
from monitoring import get_logger, set_request_context
from ws.protocols import (
    FrameId,
    HeartbeatFrame,
    INVALID_FRAME,
    PARSE_ERROR,
    RequestFrame,
    ResultType,
    StopFrame,
    error_frame,
    pong_frame,
    result_frame,
    validate_frame,
)

logger = get_logger(__name__)


@dataclass
class Client:
    """
    WebSocket client representation.

    Attributes:
        id: Unique client identifier
        ws: WebSocket connection
        pumps: Active subscription pumps keyed by frame id
        send_lock: Serializes frames written to this socket
    """
    id: str
    ws: WebSocket
    pumps: Dict[FrameId, "SubscriptionPump"] = field(default_factory=dict)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


SendFn = Callable[[Client, Dict[str, Any]], Awaitable[bool]]


class SubscriptionPump:
    """
    Relays one subscription stream to one client.

    Stops on client request, on client disconnect, or when the stream ends
    (listener overflow, server shutdown).
    """

    def __init__(self, client: Client, frame_id: FrameId, path: str, stream: AsyncIterator[Any], send: SendFn):
        self.client = client
        self.frame_id = frame_id
        self.path = path
        self.stream = stream
        self._send = send
        self._logger = logging.getLogger(f"{__name__}.SubscriptionPump")
        self.task: Optional[asyncio.Task] = None
        self.sent = 0

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.run(), name=f"ws-sub-{self.client.id}-{self.frame_id}")
        return self.task

    async def run(self) -> None:
        set_request_context(client_id=self.client.id)
        try:
            async for item in self.stream:
                if not await self._send(self.client, result_frame(self.frame_id, ResultType.DATA, serialize(item))):
                    return
                self.sent += 1

            # Stream ended on the server side
            reason = getattr(self.stream, "close_reason", None)
            self._logger.info(
                f"Subscription {self.frame_id} ({self.path}) for client {self.client.id} ended: {reason}"
            )
            self.client.pumps.pop(self.frame_id, None)
            extra = {"reason": reason} if reason else {}
            await self._send(self.client, result_frame(self.frame_id, ResultType.STOPPED, **extra))

        except asyncio.CancelledError:
            self._logger.debug(f"Subscription pump {self.frame_id} cancelled for client {self.client.id}")
            raise

        finally:
            self.release()

    def release(self) -> None:
        unsubscribe = getattr(self.stream, "unsubscribe", None)
        if unsubscribe is not None:
            unsubscribe()

    def stop(self) -> None:
        self.release()
        if self.task is not None and self.task is not asyncio.current_task():
            self.task.cancel()


class MessageHandler:
    """
    Parses incoming frames and routes them.

    Features:
    - Frame parsing and validation
    - Query/mutation dispatch through the operation router
    - Subscription start/stop
    - Heartbeat/ping-pong
    """

    def __init__(self, router: OperationRouter, send: SendFn):
        """
        Args:
            router: Operation router with the service's procedures
            send: Coroutine writing one frame to a client
        """
        self.router = router
        self._send = send
        self._logger = logging.getLogger(f"{__name__}.MessageHandler")

    async def handle_json(self, client: Client, text: str) -> None:
        """
        Handle one incoming text frame.

        Args:
            client: Client who sent the frame
            text: Raw JSON text
        """
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            self._logger.warning(f"Invalid JSON from client {client.id}: {e}")
            await self._send(client, error_frame(None, PARSE_ERROR))
            return

        frame = validate_frame(payload)
        if frame is None:
            self._logger.warning(f"Frame validation failed for client {client.id}: {str(payload)[:200]}")
            frame_id = payload.get("id") if isinstance(payload, dict) else None
            await self._send(client, error_frame(frame_id, INVALID_FRAME))
            return

        if isinstance(frame, HeartbeatFrame):
            if frame.type == "ping":
                await self._send(client, pong_frame(frame.timestamp))
            return

        if isinstance(frame, StopFrame):
            await self._handle_stop(client, frame)
            return

        await self._handle_request(client, frame)

    async def cleanup_client(self, client: Client) -> None:
        """Stop every subscription a disconnected client opened."""
        pumps = list(client.pumps.values())
        client.pumps.clear()

        for pump in pumps:
            pump.stop()

        if pumps:
            self._logger.debug(f"Released {len(pumps)} subscriptions for client {client.id}")

    # Private handlers

    async def _handle_request(self, client: Client, frame: RequestFrame) -> None:
        path = frame.params.path
        self._logger.debug(f"Client {client.id} -> {frame.method} {path} (id={frame.id})")

        try:
            if frame.method == "subscription":
                await self._start_subscription(client, frame)
                return

            data = await self.router.call(path, frame.params.input)
            await self._send(client, result_frame(frame.id, ResultType.DATA, data))

        except SyncError as e:
            if e.path is None:
                e.path = path
            self._logger.info(f"{frame.method} {path} rejected for client {client.id}: {e.code} {e.message}")
            await self._send(client, error_frame(frame.id, e.to_dict()))

        except Exception as e:
            self._logger.error(f"Unexpected error in {frame.method} {path}: {e}", exc_info=True)
            error = SyncError("Internal server error", path=path)
            await self._send(client, error_frame(frame.id, error.to_dict()))

    async def _start_subscription(self, client: Client, frame: RequestFrame) -> None:
        if frame.id in client.pumps:
            await self._send(client, error_frame(frame.id, {
                "code": "BAD_REQUEST",
                "message": f"Duplicate subscription id {frame.id}",
                "httpStatus": 400,
                "path": frame.params.path,
            }))
            return

        stream = await self.router.open(frame.params.path, frame.params.input)
        pump = SubscriptionPump(client, frame.id, frame.params.path, stream, self._send)
        client.pumps[frame.id] = pump

        # "started" precedes any data frame for this id
        if not await self._send(client, result_frame(frame.id, ResultType.STARTED)):
            pump.stop()
            return

        pump.start()
        self._logger.info(f"Client {client.id} subscribed to {frame.params.path} (id={frame.id})")

    async def _handle_stop(self, client: Client, frame: StopFrame) -> None:
        pump = client.pumps.pop(frame.id, None)
        if pump is None:
            self._logger.debug(f"subscription.stop for unknown id {frame.id} from client {client.id}")
            return

        pump.stop()
        await self._send(client, result_frame(frame.id, ResultType.STOPPED))
