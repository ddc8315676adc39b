"""
WebSocket Hub - Client lifecycle and frame routing

Central hub for managing WebSocket client connections on the duplex channel.

@.architecture
Incoming: app.py (websocket_endpoint), ws/handlers.py --- {WebSocket connection objects, JSON text frames from clients}
Processing: register(), unregister(), handle_json(), send_to_client(), broadcast_json(), drain_subscriptions(), broadcast_reconnect(), cleanup_all() --- {6 jobs: broadcasting, cleanup, connection_management, error_handling, frame_routing, shutdown_drain}
Outgoing: ws/handlers.py, Frontend (WebSocket) --- {Client instances, routed frames to MessageHandler, broadcast frames to all clients}

Features:
- Client registration and lifecycle management
- Per-client send serialization with timeout protection
- Broadcasting (reconnect notification on shutdown)
- Error handling and auto-cleanup
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import WebSocket

from core.sync.router import OperationRouter
from monitoring import get_logger
from monitoring.metrics import setup_sync_metrics
from ws.handlers import Client, MessageHandler
from ws.protocols import WS_BROADCAST_TIMEOUT, WS_SEND_TIMEOUT, reconnect_frame

logger = get_logger(__name__)


class WebSocketHub:
    """
    Central hub for WebSocket client management.

    Architecture:
    - Uses MessageHandler for frame processing
    - Client map guarded by asyncio.Lock
    - A failed send unregisters the client and releases its subscriptions
    """

    def __init__(
        self,
        router: OperationRouter,
        send_timeout: float = WS_SEND_TIMEOUT,
        broadcast_timeout: float = WS_BROADCAST_TIMEOUT,
    ):
        """
        Args:
            router: Operation router serving request and subscription frames
            send_timeout: Seconds allowed for one frame to one client
            broadcast_timeout: Seconds allowed for a whole broadcast
        """
        self.router = router
        self.clients: Dict[str, Client] = {}
        self.send_timeout = send_timeout
        self.broadcast_timeout = broadcast_timeout
        self._lock = asyncio.Lock()
        self._logger = logging.getLogger(__name__)
        self._shutting_down = False
        self._connections = setup_sync_metrics()["ws_connections_active"]

        self.message_handler = MessageHandler(router, send=self.send_to_client)

    async def register(self, ws: WebSocket) -> Client:
        """
        Register new WebSocket client.

        Args:
            ws: Accepted WebSocket connection

        Returns:
            Client instance
        """
        client = Client(id=str(uuid4()), ws=ws)

        async with self._lock:
            self.clients[client.id] = client

        self._connections.inc()
        self._logger.info(f"Client registered: {client.id}")
        return client

    async def unregister(self, client: Client) -> None:
        """
        Unregister client and release its subscriptions. Idempotent.

        In-flight generation is not affected.
        """
        async with self._lock:
            removed = self.clients.pop(client.id, None) is not None

        await self.message_handler.cleanup_client(client)

        if removed:
            self._connections.dec()
            self._logger.info(f"Client unregistered: {client.id}")

    async def handle_json(self, client: Client, text: str) -> None:
        await self.message_handler.handle_json(client, text)

    async def send_to_client(self, client: Client, message: Dict[str, Any]) -> bool:
        """
        Send one frame to a client.

        Returns:
            True if sent successfully, False otherwise (client is unregistered)
        """
        try:
            async with client.send_lock:
                await asyncio.wait_for(
                    client.ws.send_text(json.dumps(message)),
                    timeout=self.send_timeout
                )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.debug(f"Failed to send to client {client.id}: {e}")
            await self.unregister(client)
            return False

    async def broadcast_json(self, payload: Dict[str, Any]) -> int:
        """
        Broadcast a frame to all connected clients.

        Slow clients are bounded by the send timeout; the whole broadcast by
        the broadcast timeout.

        Returns:
            Number of clients the frame was delivered to
        """
        async with self._lock:
            targets = list(self.clients.values())

        if not targets:
            return 0

        try:
            results = await asyncio.wait_for(
                asyncio.gather(*[self.send_to_client(c, payload) for c in targets], return_exceptions=True),
                timeout=self.broadcast_timeout
            )
        except asyncio.TimeoutError:
            self._logger.warning("Broadcast timeout")
            return 0

        return sum(1 for r in results if r is True)

    async def broadcast_reconnect(self) -> int:
        """Tell every client to reconnect (server going away)."""
        self._shutting_down = True
        delivered = await self.broadcast_json(reconnect_frame())
        self._logger.info(f"Reconnect notification sent to {delivered} clients")
        return delivered

    async def drain_subscriptions(self, timeout: Optional[float] = None) -> int:
        """
        Wait for subscription pumps to relay what is left and send "stopped".

        Call after the broadcast hub is closed, before broadcast_reconnect().

        Returns:
            Number of pumps that finished within the timeout
        """
        timeout = self.broadcast_timeout if timeout is None else timeout
        async with self._lock:
            tasks = [
                pump.task
                for client in self.clients.values()
                for pump in client.pumps.values()
                if pump.task is not None
            ]

        if not tasks:
            return 0

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            self._logger.warning(f"{len(pending)} subscriptions still relaying after {timeout}s")
        return len(done)

    def get_client_count(self) -> int:
        return len(self.clients)

    def get_stats(self) -> Dict[str, Any]:
        clients = list(self.clients.values())
        return {
            "connections": len(clients),
            "subscriptions": sum(len(c.pumps) for c in clients),
            "shutting_down": self._shutting_down,
        }

    async def cleanup_all(self) -> None:
        """Cleanup all clients (for shutdown)."""
        async with self._lock:
            clients = list(self.clients.values())
            self.clients.clear()

        for client in clients:
            await self.message_handler.cleanup_client(client)
            self._connections.dec()

        self._logger.info(f"All clients cleaned up ({len(clients)})")
