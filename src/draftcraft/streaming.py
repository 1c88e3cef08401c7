"""Batching of agent output for surfaces that cannot take one message per chunk.

A run produces many small chunks; chat surfaces are rate limited. The flusher
holds chunks in a buffer and hands them to ``emit`` either when the buffer
reaches ``threshold`` characters or ``delay`` seconds after the first
unflushed chunk, whichever comes first. Only one emission is outbound at a
time; the buffer is cleared at the moment its content is handed over.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_THRESHOLD = 1200
DEFAULT_FLUSH_DELAY_SECONDS = 2.0

Emitter = Callable[[str], Awaitable[None]]


class StreamFlusher:
    """Size- or time-triggered flushing of streamed text, one per run."""

    def __init__(
        self,
        emit: Emitter,
        threshold: int = DEFAULT_FLUSH_THRESHOLD,
        delay: float = DEFAULT_FLUSH_DELAY_SECONDS,
    ):
        self._emit = emit
        self.threshold = threshold
        self.delay = delay
        self._buffer = ""
        self._timer: asyncio.TimerHandle | None = None
        self._inflight: asyncio.Task | None = None
        self._closed = False
        self._emissions = 0

    @property
    def pending(self) -> str:
        """Text buffered but not yet handed to ``emit``."""
        return self._buffer

    @property
    def emitting(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def feed(self, chunk: str) -> None:
        """Buffer a chunk. Safe to call from loop callbacks (sync)."""
        if not chunk:
            return
        self._buffer += chunk
        if len(self._buffer) >= self.threshold:
            self._cancel_timer()
            self._start_flush()
        elif self._timer is None:
            self._schedule()

    async def flush(self) -> None:
        """Wait for any outbound emission, then emit everything buffered."""
        self._cancel_timer()
        await self._wait_inflight()
        self._cancel_timer()
        self._start_flush()
        await self._wait_inflight()

    async def close(self) -> None:
        """Final flush regardless of size. No timer is rescheduled afterwards."""
        self._closed = True
        await self.flush()

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._start_flush()

    def _start_flush(self) -> None:
        if self.emitting or not self._buffer:
            return
        text, self._buffer = self._buffer, ""
        self._inflight = asyncio.ensure_future(self._emit_safely(text))

    async def _emit_safely(self, text: str) -> None:
        try:
            await self._emit(text)
            self._emissions += 1
        except Exception:
            logger.exception("Stream emission failed (%d chars)", len(text))
        finally:
            if self._buffer and not self._closed and self._timer is None:
                self._schedule()

    async def _wait_inflight(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            await self._inflight

    def get_stats(self) -> dict:
        return {
            "emissions": self._emissions,
            "buffered_chars": len(self._buffer),
            "emitting": self.emitting,
        }
