"""
Pytest Configuration and Shared Fixtures

Provides fakes, sync engine components, the FastAPI app and HTTP clients
for unit, integration, and e2e tests.
"""

import asyncio
import itertools
import os
from typing import AsyncGenerator, Callable, List, Optional, Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Test environment setup
os.environ["RELAY_ENVIRONMENT"] = "test"
os.environ["LLM_PROVIDER"] = "echo"

from app import create_app
from config.settings import LLMSettings, Settings, SyncSettings, reload_settings
from core.sync import BroadcastHub, SyncEngine
from core.sync.errors import GenerationError
from core.sync.models import Message, MessageEvent, Role
from monitoring.metrics import get_registry


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests that test individual components"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that test component interactions"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that test complete workflows"
    )


# =============================================================================
# Global State
# =============================================================================

@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with an empty metrics registry."""
    get_registry().reset()
    yield
    get_registry().reset()


@pytest.fixture(autouse=True)
def reset_settings():
    """Reset cached settings after each test."""
    yield
    reload_settings()


# =============================================================================
# Fakes
# =============================================================================

class ScriptedSource:
    """
    Generation source replaying fixed fragments.

    Args:
        fragments: Text fragments to yield in order
        fail_after: Raise ``error`` after this many fragments
        error: Exception raised on failure (GenerationError by default)
        gate: Event waited on before fragment ``hold_at``
        hold_at: Fragment index to hold at (None holds before finishing)
    """

    def __init__(
        self,
        fragments: Sequence[str] = (),
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
        hold_at: Optional[int] = None,
    ):
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.error = error or GenerationError("provider connection reset")
        self.gate = gate
        self.hold_at = hold_at
        self.calls: List[List[Message]] = []

    async def stream_text(self, messages: Sequence[Message]):
        self.calls.append(list(messages))

        for i, fragment in enumerate(self.fragments):
            if self.fail_after is not None and i == self.fail_after:
                raise self.error
            if self.gate is not None and self.hold_at == i:
                await self.gate.wait()
            yield fragment
            await asyncio.sleep(0)

        if self.gate is not None and (self.hold_at is None or self.hold_at >= len(self.fragments)):
            await self.gate.wait()
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise self.error


@pytest.fixture
def scripted_source() -> Callable[..., ScriptedSource]:
    """Factory for ScriptedSource fakes."""
    return ScriptedSource


def user_message(message_id: str, content: str) -> dict:
    return {"id": message_id, "role": "user", "content": content}


@pytest.fixture
def turn_factory() -> Callable[..., List[dict]]:
    """Factory for turn histories: turn_factory(("u1", "hi"), ("a0", "yo", "assistant"), ...)."""
    def create(*entries) -> List[dict]:
        history = []
        for entry in entries:
            message_id, content, *role = entry
            history.append({"id": message_id, "role": role[0] if role else "user", "content": content})
        return history
    return create


def is_assistant_terminal(event: MessageEvent) -> bool:
    return event.message.role is Role.ASSISTANT and event.message.state.is_terminal


@pytest.fixture
def collect():
    """
    Collect events from a subscription.

    Usage:
        events = await collect(sub, until=is_terminal)
        events = await collect(sub, count=3)
    """
    async def _collect(subscription, count: Optional[int] = None, until=is_assistant_terminal, timeout: float = 2.0):
        events = []

        async def _run():
            async for event in subscription:
                events.append(event)
                if count is not None:
                    if len(events) >= count:
                        return
                elif until is not None and until(event):
                    return

        await asyncio.wait_for(_run(), timeout=timeout)
        return events

    return _collect


# =============================================================================
# Sync Engine Fixtures
# =============================================================================

@pytest.fixture
def hub() -> BroadcastHub:
    return BroadcastHub(queue_size=16)


@pytest.fixture
def id_factory() -> Callable[[], str]:
    """Deterministic assistant ids: a1, a2, ..."""
    counter = itertools.count(1)
    return lambda: f"a{next(counter)}"


@pytest.fixture
def source() -> ScriptedSource:
    return ScriptedSource(["hel", "lo there"])


@pytest_asyncio.fixture
async def engine(hub, source, id_factory) -> AsyncGenerator[SyncEngine, None]:
    """Running engine over the hub and the scripted source."""
    engine = SyncEngine(hub, source, id_factory=id_factory)
    await engine.start()
    yield engine
    await engine.stop(timeout=1.0)
    hub.close()


# =============================================================================
# FastAPI App Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Settings for tests: echo provider, test environment."""
    return Settings(
        environment="test",
        llm=LLMSettings(provider="echo"),
        sync=SyncSettings(listener_queue_size=32),
    )


@pytest.fixture
def app(test_settings):
    """FastAPI app with the echo source."""
    return create_app(test_settings)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for API testing (engine started manually)."""
    await app.state.engine.start()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await app.state.engine.stop(timeout=1.0)
    app.state.hub.close()
    await app.state.http_client.close()
