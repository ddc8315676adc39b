"""
Delta Aggregator - Fold generated fragments into message snapshots

@.architecture
Incoming: core/sync/engine.py, core/sync/generation.py --- {assistant Message in created state, AsyncIterator[str] of text fragments}
Processing: aggregate(), _emit() --- {5 jobs: accumulation, coalescing, window_flush, error_recovery, state_transitions}
Outgoing: core/sync/engine.py --- {AsyncIterator[Message] of full snapshots: streaming..., then exactly one complete|failed}

State machine per assistant message:
    created --first fragment--> streaming --exhausted--> complete
                                          --source error--> failed (partial content kept)
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from core.sync.models import Message, MessageState

logger = logging.getLogger(__name__)


class DeltaAggregator:
    """
    Converts an async sequence of text fragments into whole-message snapshots.

    Every yielded value is an independent copy of the message, never a diff.
    By default one streaming snapshot is emitted per fragment. With a
    ``coalesce_window`` (seconds) at most one streaming snapshot is emitted per
    window; the terminal snapshot always carries the complete text and is
    emitted exactly once.
    """

    def __init__(
        self,
        message: Message,
        coalesce_window: float = 0.0,
        clock=None,
    ):
        """
        Args:
            message: Assistant message to grow (normally in created state)
            coalesce_window: Minimum seconds between streaming snapshots
            clock: Monotonic time function (defaults to the event loop clock)
        """
        if message.state.is_terminal:
            raise ValueError(f"Message {message.id} is already {message.state.value}")
        self._message = message.snapshot()
        self._coalesce_window = max(0.0, coalesce_window)
        self._clock = clock
        self._finished = False
        self.fragment_count = 0
        self.error: Optional[BaseException] = None

    @property
    def current(self) -> Message:
        """Latest state, including content not yet emitted by coalescing."""
        return self._message.snapshot()

    async def aggregate(self, fragments: AsyncIterator[str]) -> AsyncIterator[Message]:
        """
        Consume ``fragments`` and yield snapshots.

        Content held back by the coalescing window is flushed once the window
        expires, even while the source is quiet. Exceptions raised by the
        fragment source are recovered into a single ``failed`` snapshot.
        Cancellation is not swallowed.
        """
        if self._finished:
            raise RuntimeError("aggregate() can only run once per message")

        loop = asyncio.get_running_loop()
        source = fragments.__aiter__()
        next_fragment: Optional[asyncio.Future] = None
        flush_at: Optional[float] = None
        last_emit: Optional[float] = None

        try:
            while True:
                if next_fragment is None:
                    next_fragment = asyncio.ensure_future(source.__anext__())

                timeout = None if flush_at is None else max(0.0, flush_at - loop.time())
                done, _ = await asyncio.wait({next_fragment}, timeout=timeout)
                if not done:
                    # Window expired with the source still quiet
                    last_emit = self._now()
                    flush_at = None
                    yield self._emit()
                    continue

                finished, next_fragment = next_fragment, None
                try:
                    fragment = finished.result()
                except StopAsyncIteration:
                    break
                if not fragment:
                    continue

                self.fragment_count += 1
                self._message.content += fragment
                if self._message.state is MessageState.CREATED:
                    self._message.state = MessageState.STREAMING

                now = self._now()
                if last_emit is not None and now - last_emit < self._coalesce_window:
                    if flush_at is None:
                        flush_at = loop.time() + self._coalesce_window - (now - last_emit)
                    continue

                last_emit = now
                flush_at = None
                yield self._emit()

        except Exception as e:
            self.error = e
            logger.warning(
                f"Generation failed for message {self._message.id} after "
                f"{self.fragment_count} fragments: {e}"
            )
            self._finished = True
            self._message.state = MessageState.FAILED
            yield self._emit()
            return

        finally:
            if next_fragment is not None and not next_fragment.done():
                next_fragment.cancel()

        if flush_at is not None:
            logger.debug(f"Coalesced tail folded into terminal snapshot for {self._message.id}")

        self._finished = True
        self._message.state = MessageState.COMPLETE
        yield self._emit()

    def fail(self) -> Message:
        """
        Freeze the message as failed outside of aggregate().

        Used when the consuming task is cancelled. Returns the terminal
        snapshot; if one was already emitted, returns the current state.
        """
        if self._finished:
            return self._message.snapshot()
        self._finished = True
        self._message.state = MessageState.FAILED
        return self._emit()

    @property
    def finished(self) -> bool:
        return self._finished

    def _emit(self) -> Message:
        self._message.seq += 1
        return self._message.snapshot()

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()
