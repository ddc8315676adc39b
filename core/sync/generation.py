"""
Generation Sources - Incremental text producers for assistant turns

@.architecture
Incoming: core/sync/engine.py, app.py, config/settings.py --- {ordered conversation history as List[Message], LLMSettings}
Processing: stream_text(), _build_payload(), _parse_line(), build_source() --- {4 jobs: http_streaming, sse_parsing, provider_selection, error_translation}
Outgoing: core/sync/aggregator.py --- {AsyncIterator[str] of text fragments, GenerationError on provider failure}

Sources:
- OpenAICompatibleSource: streams /chat/completions over SSE (OpenRouter by default)
- EchoSource: deterministic local source, echoes the last user message word by word
"""

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import httpx

from core.sync.errors import GenerationError
from core.sync.models import Message, Role
from utils.http import HTTPClient

logger = logging.getLogger(__name__)

PROVIDER_OPENAI_COMPATIBLE = "openai-compatible"
PROVIDER_ECHO = "echo"


class GenerationSource(Protocol):
    """Anything that turns a conversation history into text fragments."""

    def stream_text(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        ...


# ============================================================================
# OPENAI-COMPATIBLE HTTP STREAMING
# ============================================================================

class OpenAICompatibleSource:
    """
    Streams completions from an OpenAI-compatible ``/chat/completions`` API.

    Each SSE ``data:`` line carries one chunk; the text delta lives in
    ``choices[0].delta.content`` and the stream ends with ``data: [DONE]``.
    """

    def __init__(self, llm_settings, http_client: HTTPClient):
        """
        Args:
            llm_settings: ``settings.llm`` section
            http_client: Shared HTTP client (owned by the application)
        """
        self._llm = llm_settings
        self._http = http_client

    @property
    def url(self) -> str:
        return f"{self._llm.api_base.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self._llm.api_key or os.getenv("LLM_API_KEY") or os.getenv("OPENROUTER_API_KEY")
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        # OpenRouter attribution headers
        if self._llm.referer:
            headers["HTTP-Referer"] = self._llm.referer
        if self._llm.title:
            headers["X-Title"] = self._llm.title
        return headers

    def _build_payload(self, messages: Sequence[Message]) -> Dict[str, Any]:
        history: List[Dict[str, str]] = [
            {"role": m.role.value, "content": m.content}
            for m in messages
            if m.content
        ]
        if self._llm.system_prompt:
            history.insert(0, {"role": "system", "content": self._llm.system_prompt})

        return {
            "model": self._llm.model,
            "stream": True,
            "messages": history,
            "max_tokens": self._llm.max_tokens,
            "temperature": self._llm.temperature,
        }

    async def stream_text(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        payload = self._build_payload(messages)
        logger.debug(f"Streaming {len(payload['messages'])} messages to {self.url} ({payload['model']})")

        try:
            async with self._http.stream(
                "POST", self.url, json=payload, headers=self._headers()
            ) as resp:
                async for line in resp.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue

                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        return

                    delta = self._parse_line(data)
                    if delta:
                        yield delta

        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"Provider returned HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Provider request failed: {e}") from e

    @staticmethod
    def _parse_line(data: str) -> Optional[str]:
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparseable stream line: {data[:80]}")
            return None

        if not isinstance(chunk, dict):
            return None

        # OpenRouter reports mid-stream failures as an error object
        if chunk.get("error"):
            error = chunk["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise GenerationError(f"Provider error: {message}")

        choices = chunk.get("choices") or [{}]
        return (choices[0].get("delta") or {}).get("content")


# ============================================================================
# LOCAL SOURCE
# ============================================================================

class EchoSource:
    """Echoes the last user message back, one word per fragment."""

    def __init__(self, delay: float = 0.0, prefix: str = ""):
        self.delay = delay
        self.prefix = prefix

    async def stream_text(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        last_user = next((m for m in reversed(messages) if m.role is Role.USER), None)
        text = f"{self.prefix}{last_user.content}" if last_user else self.prefix

        words = text.split(" ")
        for i, word in enumerate(words):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield word if i == len(words) - 1 else f"{word} "


def build_source(settings, http_client: Optional[HTTPClient] = None) -> GenerationSource:
    """
    Create the generation source selected by ``settings.llm.provider``.

    Raises:
        ValueError: For an unknown provider
    """
    provider = settings.llm.provider
    if provider == PROVIDER_ECHO:
        logger.info("Using local echo generation source")
        return EchoSource(delay=settings.llm.echo_delay)
    if provider == PROVIDER_OPENAI_COMPATIBLE:
        logger.info(f"Using OpenAI-compatible source at {settings.llm.api_base} ({settings.llm.model})")
        return OpenAICompatibleSource(settings.llm, http_client or HTTPClient())
    raise ValueError(f"Unknown generation provider: {provider}")
