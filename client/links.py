"""
Client Links - Per-operation transport routing

Client half of the transport router. Queries and mutations go over the
batched HTTP channel, subscriptions over one shared WebSocket. The two
channels fail independently: the WebSocket reconnects on its own and never
blocks request/response calls.

@.architecture
Incoming: client/session.py, applications --- {Operation(id, kind, path, input)}
Processing: SplitLink.request/subscribe(), HttpBatchLink.call_many(), WebSocketLink._open()/_run()/_dispatch() --- {6 jobs: operation_routing, request_batching, frame_dispatch, reconnect_backoff, resubscription, heartbeat}
Outgoing: api/v1/endpoints/rpc.py (HTTP), app.py websocket endpoint (WS) --- {batched GET/POST requests, tRPC-style request/stop/ping frames}

Example:
    async with SyncClient("http://localhost:3001") as client:
        stream = await client.subscription("chat.onMessage", {"conversationId": "c1"})
        await client.mutation("chat.sendMessage", {"conversationId": "c1", "messages": [...]})
        async for event in stream:
            ...
"""

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
import websockets
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)
from websockets.exceptions import ConnectionClosed, WebSocketException

from core.sync.router import OperationKind, serialize
from ws.protocols import HEARTBEAT_INTERVAL, FrameId, ResultType

logger = logging.getLogger(__name__)

# Server stop reasons after which the subscription is still wanted
_RESUBSCRIBE_REASONS = ("overflow",)
_AWAIT_RECONNECT_REASONS = ("shutdown",)

_CONNECT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


class ClientOperationError(Exception):
    """Error returned by the server (or the transport) for one operation."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_SERVER_ERROR",
        http_status: int = 500,
        path: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.path = path

    @classmethod
    def from_wire(cls, error: Dict[str, Any], path: Optional[str] = None) -> "ClientOperationError":
        return cls(
            str(error.get("message", "Unknown error")),
            code=str(error.get("code", "INTERNAL_SERVER_ERROR")),
            http_status=int(error.get("httpStatus", 500) or 500),
            path=error.get("path", path),
        )

    def __repr__(self) -> str:
        return f"ClientOperationError(code={self.code!r}, message={self.message!r})"


@dataclass
class Operation:
    """One client operation, addressed to a server procedure by path."""
    id: FrameId
    kind: OperationKind
    path: str
    input: Any = None


# =============================================================================
# Split Link
# =============================================================================

class SplitLink:
    """
    Route each operation to one of two links.

    Args:
        condition: Predicate on the operation; True selects ``true_link``
        true_link: Link for matching operations
        false_link: Link for everything else
    """

    def __init__(self, condition: Callable[[Operation], bool], true_link: Any, false_link: Any):
        self.condition = condition
        self.true_link = true_link
        self.false_link = false_link

    def select(self, op: Operation) -> Any:
        return self.true_link if self.condition(op) else self.false_link

    async def request(self, op: Operation) -> Any:
        return await self.select(op).request(op)

    async def subscribe(self, op: Operation) -> "WebSocketSubscription":
        return await self.select(op).subscribe(op)


def is_subscription(op: Operation) -> bool:
    return op.kind is OperationKind.SUBSCRIPTION


# =============================================================================
# HTTP Batch Link
# =============================================================================

class HttpBatchLink:
    """
    Request/response link over the batched HTTP channel.

    Queries are sent as GET with the inputs in the query string, mutations as
    POST with a JSON body. ``call_many`` issues at most one request per kind.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ):
        """
        Args:
            url: RPC base URL, e.g. http://localhost:3001/v1/rpc
            client: httpx client to use (created and owned by the link if None)
            headers: Extra headers sent with every request
            timeout: Request timeout for an owned client
        """
        self.url = url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._headers = headers or {}

    async def request(self, op: Operation) -> Any:
        result = (await self.call_many([op]))[0]
        if isinstance(result, ClientOperationError):
            raise result
        return result

    async def subscribe(self, op: Operation) -> Any:
        raise ClientOperationError(
            f"Subscription \"{op.path}\" cannot be carried over HTTP",
            code="METHOD_NOT_SUPPORTED",
            http_status=405,
            path=op.path,
        )

    async def call_many(self, ops: List[Operation]) -> List[Union[Any, ClientOperationError]]:
        """
        Run several operations in as few requests as possible.

        Returns:
            One entry per operation, in order: the result data, or a
            ClientOperationError for an operation that failed
        """
        results: List[Any] = [None] * len(ops)

        for method, kind in (("GET", OperationKind.QUERY), ("POST", OperationKind.MUTATION)):
            indexes = [i for i, op in enumerate(ops) if op.kind is kind]
            if not indexes:
                continue
            batch = await self._send_batch(method, [ops[i] for i in indexes])
            for i, result in zip(indexes, batch):
                results[i] = result

        for i, op in enumerate(ops):
            if op.kind is OperationKind.SUBSCRIPTION:
                results[i] = ClientOperationError(
                    f"Subscription \"{op.path}\" cannot be carried over HTTP",
                    code="METHOD_NOT_SUPPORTED",
                    http_status=405,
                    path=op.path,
                )

        return results

    async def _send_batch(self, method: str, ops: List[Operation]) -> List[Any]:
        url = f"{self.url}/{','.join(op.path for op in ops)}"
        inputs = {str(i): serialize(op.input) for i, op in enumerate(ops)}
        params = {"batch": "1"}

        try:
            if method == "GET":
                params["input"] = json.dumps(inputs)
                response = await self._client.get(url, params=params, headers=self._headers)
            else:
                response = await self._client.post(url, params=params, json=inputs, headers=self._headers)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {url} failed: {e}")
            error = ClientOperationError(f"Request failed: {e}", code="NETWORK_ERROR", http_status=0)
            return [error] * len(ops)

        try:
            body = response.json()
        except ValueError:
            error = ClientOperationError(
                f"Malformed response (HTTP {response.status_code})",
                http_status=response.status_code,
            )
            return [error] * len(ops)

        if not isinstance(body, list):
            body = [body] * len(ops)

        results = []
        for i, op in enumerate(ops):
            entry = body[i] if i < len(body) else None
            if isinstance(entry, dict) and "result" in entry:
                results.append(entry["result"].get("data"))
            elif isinstance(entry, dict) and isinstance(entry.get("error"), dict):
                results.append(ClientOperationError.from_wire(entry["error"], path=op.path))
            else:
                results.append(ClientOperationError(
                    f"No result for \"{op.path}\" (HTTP {response.status_code})",
                    http_status=response.status_code,
                    path=op.path,
                ))
        return results

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# =============================================================================
# WebSocket Link
# =============================================================================

_END = object()


class WebSocketSubscription:
    """
    Client-side stream of one subscription.

    Iterating yields the ``data`` payload of each result frame. Iteration ends
    when the server stops the stream or ``unsubscribe()`` is called, and
    raises ClientOperationError if the server rejected the subscription.
    """

    def __init__(self, link: "WebSocketLink", op: Operation):
        self.op = op
        self.started = False
        self.finished = False
        self.resubscribes = 0
        self._link = link
        self._queue: asyncio.Queue = asyncio.Queue()
        self._started = asyncio.Event()
        self._error: Optional[ClientOperationError] = None

    @property
    def id(self) -> FrameId:
        return self.op.id

    def request_frame(self) -> Dict[str, Any]:
        return {
            "id": self.op.id,
            "method": "subscription",
            "params": {"path": self.op.path, "input": serialize(self.op.input)},
        }

    async def wait_started(self, timeout: Optional[float] = None) -> None:
        """
        Wait for the server to acknowledge the subscription.

        Raises:
            ClientOperationError: If the stream ended before it started
        """
        await asyncio.wait_for(self._started.wait(), timeout=timeout)
        if not self.started:
            raise self._error or ClientOperationError(
                "Subscription ended before it started", code="CLIENT_CLOSED", http_status=0
            )

    def _push(self, data: Any) -> None:
        if not self.finished:
            self._queue.put_nowait(data)

    def _finish(self, error: Optional[ClientOperationError] = None) -> None:
        if self.finished:
            return
        self.finished = True
        self._error = error
        self._started.set()
        if error is not None:
            self._queue.put_nowait(error)
        self._queue.put_nowait(_END)

    async def unsubscribe(self) -> None:
        await self._link._stop(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, ClientOperationError):
            raise item
        return item


class WebSocketLink:
    """
    Duplex link over one WebSocket.

    Reconnects with exponential backoff after the socket drops or the server
    asks clients to reconnect, then re-sends every active subscription.
    Events published while disconnected are not replayed.
    """

    def __init__(
        self,
        url: str,
        *,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        max_attempts: Optional[int] = None,
        backoff_base: float = 0.5,
        backoff_max: float = 10.0,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        """
        Args:
            url: WebSocket URL, e.g. ws://localhost:3001/ws
            heartbeat_interval: Seconds between ping frames (0 disables)
            max_attempts: Connection attempts before giving up (None retries forever)
            backoff_base: Initial backoff multiplier in seconds
            backoff_max: Maximum wait between attempts
            connect: Coroutine factory opening a socket (websockets.connect by default)
        """
        self.url = url
        self.heartbeat_interval = heartbeat_interval
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.reconnects = 0

        self._connect = connect or websockets.connect
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._subs: Dict[FrameId, WebSocketSubscription] = {}
        self._pending: Dict[FrameId, asyncio.Future] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def active_subscriptions(self) -> List[FrameId]:
        return list(self._subs.keys())

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """Open the socket (with retries) and start the reader task."""
        if self._task is not None:
            return
        self._closed = False
        await self._open()
        self._task = asyncio.create_task(self._run(), name="ws-link")

    async def _open(self) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts) if self.max_attempts else stop_never,
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(_CONNECT_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                ws = await self._connect(self.url)

        self._ws = ws
        logger.info(f"Connected to {self.url}")

        for sub in list(self._subs.values()):
            try:
                await self._send(sub.request_frame())
            except ConnectionClosed:
                # Dropped again; the reader loop reconnects
                break
        if self._subs:
            logger.info(f"Resubscribed {len(self._subs)} subscriptions")

    async def _run(self) -> None:
        while not self._closed:
            ws = self._ws
            heartbeat = asyncio.create_task(self._heartbeat(ws)) if self.heartbeat_interval else None
            try:
                await self._read(ws)
            except ConnectionClosed as e:
                logger.info(f"Connection to {self.url} lost: {e}")
            finally:
                if heartbeat is not None:
                    heartbeat.cancel()
                self._ws = None

            self._fail_pending(ClientOperationError("Connection lost", code="NETWORK_ERROR", http_status=0))
            if self._closed:
                break

            self.reconnects += 1
            try:
                await self._open()
            except _CONNECT_ERRORS as e:
                logger.error(f"Giving up on {self.url}: {e}")
                error = ClientOperationError(f"Connection failed: {e}", code="NETWORK_ERROR", http_status=0)
                for sub in list(self._subs.values()):
                    sub._finish(error)
                self._subs.clear()
                break

    async def _read(self, ws: Any) -> None:
        async for raw in ws:
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring non-JSON frame: {raw!r:.80}")
                continue

            if isinstance(frame, dict) and frame.get("method") == "reconnect":
                logger.info("Server requested reconnect")
                await ws.close()
                return

            await self._dispatch(frame)

    async def _heartbeat(self, ws: Any) -> None:
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                await ws.send(json.dumps({"type": "ping", "timestamp": int(time.time())}))
        except ConnectionClosed:
            return

    async def close(self) -> None:
        """Close the socket and end every subscription."""
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for sub in list(self._subs.values()):
            sub._finish()
        self._subs.clear()
        self._fail_pending(ClientOperationError("Link closed", code="CLIENT_CLOSED", http_status=0))

    # =========================================================================
    # Operations
    # =========================================================================

    async def subscribe(self, op: Operation) -> WebSocketSubscription:
        if op.id in self._subs:
            raise ClientOperationError(f"Subscription id {op.id} already active", code="BAD_REQUEST", http_status=400)
        if self._task is None:
            await self.connect()

        sub = WebSocketSubscription(self, op)
        self._subs[op.id] = sub
        try:
            await self._send(sub.request_frame())
        except ConnectionClosed:
            # Sent again once reconnected
            logger.debug(f"Subscription {op.id} queued until reconnect")
        return sub

    async def request(self, op: Operation) -> Any:
        """Run a query or mutation over the socket."""
        if self._task is None:
            await self.connect()

        future = asyncio.get_running_loop().create_future()
        self._pending[op.id] = future
        try:
            await self._send({
                "id": op.id,
                "method": op.kind.value,
                "params": {"path": op.path, "input": serialize(op.input)},
            })
            return await future
        finally:
            self._pending.pop(op.id, None)

    async def _stop(self, sub: WebSocketSubscription) -> None:
        if self._subs.pop(sub.id, None) is None:
            return
        sub._finish()
        if self._ws is not None:
            try:
                await self._send({"id": sub.id, "method": "subscription.stop"})
            except ConnectionClosed:
                pass

    async def _send(self, frame: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionClosed(None, None)
        await self._ws.send(json.dumps(frame))

    # =========================================================================
    # Incoming frames
    # =========================================================================

    async def _dispatch(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            return
        if frame.get("type") == "pong":
            return

        frame_id = frame.get("id")

        sub = self._subs.get(frame_id)
        if sub is not None:
            await self._dispatch_subscription(sub, frame)
            return

        future = self._pending.get(frame_id)
        if future is not None and not future.done():
            if "error" in frame:
                future.set_exception(ClientOperationError.from_wire(frame["error"]))
            else:
                future.set_result(frame.get("result", {}).get("data"))
            return

        logger.debug(f"Ignoring frame for unknown id {frame_id}")

    async def _dispatch_subscription(self, sub: WebSocketSubscription, frame: Dict[str, Any]) -> None:
        if "error" in frame:
            self._subs.pop(sub.id, None)
            sub._finish(ClientOperationError.from_wire(frame["error"], path=sub.op.path))
            return

        result = frame.get("result") or {}
        result_type = result.get("type")

        if result_type == ResultType.STARTED.value:
            sub.started = True
            sub._started.set()
        elif result_type == ResultType.DATA.value:
            sub._push(result.get("data"))
        elif result_type == ResultType.STOPPED.value:
            reason = result.get("reason")
            if reason in _RESUBSCRIBE_REASONS:
                sub.resubscribes += 1
                logger.warning(f"Subscription {sub.id} stopped by server ({reason}), resubscribing")
                await self._send(sub.request_frame())
            elif reason in _AWAIT_RECONNECT_REASONS:
                logger.info(f"Subscription {sub.id} stopped by server ({reason}), waiting for reconnect")
            else:
                self._subs.pop(sub.id, None)
                sub._finish()


# =============================================================================
# Client
# =============================================================================

def _ws_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):]
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):]
    return base_url


class SyncClient:
    """
    Client for the Relay backend.

    Subscriptions travel over the WebSocket link, everything else over the
    HTTP batch link.
    """

    def __init__(
        self,
        url: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        ws_connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        max_attempts: Optional[int] = None,
    ):
        """
        Args:
            url: Server base URL, e.g. http://localhost:3001
            http_client: httpx client for the batch link
            ws_connect: Socket factory for the WebSocket link
            heartbeat_interval: Seconds between ping frames
            max_attempts: WebSocket connection attempts before giving up
        """
        base = url.rstrip("/")
        self.http_link = HttpBatchLink(f"{base}/v1/rpc", client=http_client)
        self.ws_link = WebSocketLink(
            f"{_ws_url(base)}/ws",
            heartbeat_interval=heartbeat_interval,
            max_attempts=max_attempts,
            connect=ws_connect,
        )
        self.link = SplitLink(is_subscription, self.ws_link, self.http_link)
        self._ids = itertools.count(1)

    def _operation(self, kind: OperationKind, path: str, input: Any) -> Operation:
        return Operation(id=next(self._ids), kind=kind, path=path, input=input)

    async def query(self, path: str, input: Any = None) -> Any:
        return await self.link.request(self._operation(OperationKind.QUERY, path, input))

    async def mutation(self, path: str, input: Any = None) -> Any:
        return await self.link.request(self._operation(OperationKind.MUTATION, path, input))

    async def subscription(self, path: str, input: Any = None) -> WebSocketSubscription:
        return await self.link.subscribe(self._operation(OperationKind.SUBSCRIPTION, path, input))

    async def batch(self, *calls: tuple) -> List[Union[Any, ClientOperationError]]:
        """
        Run several (kind, path, input) calls through the batch link.

        Example:
            await client.batch(("query", "health.check", None), ("query", "chat.hello", None))
        """
        ops = [self._operation(OperationKind(kind), path, input) for kind, path, input in calls]
        return await self.http_link.call_many(ops)

    async def close(self) -> None:
        await self.ws_link.close()
        await self.http_link.close()

    async def __aenter__(self) -> "SyncClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
