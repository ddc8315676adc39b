"""
HTTP Client Utilities - Pooled async HTTP client for generation providers.

Streams provider responses over one shared httpx pool. Opening a stream is
retried while the connection cannot be established; once the provider has
accepted the request nothing is retried, since fragments may already have
been published.

@.architecture
Incoming: core/sync/generation.py, app.py --- {str method, str url, json body, headers}
Processing: stream(), _open(), _get_or_create_client(), close() --- {3 jobs: connection_pooling, connect_retry, streaming}
Outgoing: Generation provider (OpenAI-compatible API), core/sync/generation.py --- {streaming httpx.Response}
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

# Failures where the provider never saw the request
CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class HTTPClientConfig:
    connect_timeout: float = 5.0
    read_timeout: float = 60.0         # Gap between streamed chunks
    write_timeout: float = 30.0
    pool_timeout: float = 5.0

    max_connections: int = 50
    max_keepalive_connections: int = 10

    connect_attempts: int = 3
    retry_backoff: float = 0.5         # Seconds; doubles per attempt

    @classmethod
    def from_settings(cls, settings: Optional[Any] = None) -> 'HTTPClientConfig':
        """Build from the ``llm`` section of application settings."""
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()

        return cls(
            connect_timeout=settings.llm.connect_timeout,
            read_timeout=settings.llm.read_timeout,
        )


# =============================================================================
# HTTP Client
# =============================================================================

class HTTPClient:
    """
    Shared streaming client, created lazily and closed on shutdown.

    Args:
        config: Client configuration (from settings if None)
        transport: httpx transport override (``httpx.MockTransport`` in tests)
    """

    def __init__(
        self,
        config: Optional[HTTPClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or HTTPClientConfig.from_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()

    async def _get_or_create_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(
                        connect=self.config.connect_timeout,
                        read=self.config.read_timeout,
                        write=self.config.write_timeout,
                        pool=self.config.pool_timeout,
                    ),
                    limits=httpx.Limits(
                        max_connections=self.config.max_connections,
                        max_keepalive_connections=self.config.max_keepalive_connections,
                    ),
                    transport=self._transport,
                )
                logger.debug("Created provider HTTP pool")
            return self._client

    @property
    def is_open(self) -> bool:
        return self._client is not None and not self._client.is_closed

    async def close(self) -> None:
        async with self._client_lock:
            if self._client is not None and not self._client.is_closed:
                await self._client.aclose()
                logger.debug("Closed provider HTTP pool")
            self._client = None

    async def _open(self, client: httpx.AsyncClient, request: httpx.Request) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.connect_attempts),
            wait=wait_exponential(multiplier=self.config.retry_backoff, max=10.0),
            retry=retry_if_exception_type(CONNECT_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await client.send(request, stream=True)

    @asynccontextmanager
    async def stream(self, method: str, url: str, **kwargs) -> AsyncIterator[httpx.Response]:
        """
        Open a streamed request; error statuses raise ``httpx.HTTPStatusError``
        with the body already read.

        Usage:
            async with client.stream("POST", url, json=body) as response:
                async for line in response.aiter_lines():
                    ...
        """
        client = await self._get_or_create_client()
        response = await self._open(client, client.build_request(method, url, **kwargs))
        try:
            if response.is_error:
                await response.aread()
            response.raise_for_status()
            yield response
        finally:
            await response.aclose()
