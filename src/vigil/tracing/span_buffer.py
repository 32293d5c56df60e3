"""Buffering finished spans and transmitting them in batches.

Spans are added from whatever thread finished them; the transmission
loop runs on the asyncio event loop that called :meth:`SpanBuffer.start`.
The buffer is swapped out under a short lock and sent outside of it, so
adding a span never waits for network I/O.

State machine::

    IDLE --add_span--> ACCUMULATING --flush--> TRANSMITTING
      ^                                             |
      +------------- buffer empty after send -------+
"""

from __future__ import annotations

__all__ = ["BufferState", "SpanBuffer"]

import asyncio
import contextlib
import threading
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from vigil.config.settings import TracingSettings
from vigil.observability.metrics import TracingMetrics
from vigil.tracing.batching import SpanBatcher

if TYPE_CHECKING:
    from vigil.backend.connector import BackendConnector
    from vigil.core.span import Span

logger = structlog.get_logger(__name__)


def _span_count(spans: list[Span]) -> int:
    # A batch span stands for every span folded into it.
    return sum(span.batch_info.size if span.batch_info else 1 for span in spans)


class BufferState(StrEnum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    TRANSMITTING = "transmitting"


class SpanBuffer:
    """Holds finished spans until the next transmission.

    Args:
        connector: Receives each flushed batch.
        settings: Cadence, size thresholds and batching switches.
        batcher: Batching engine; built from *settings* when omitted.
        metrics: Counts dropped spans.
    """

    def __init__(
        self,
        connector: BackendConnector,
        settings: TracingSettings | None = None,
        *,
        batcher: SpanBatcher | None = None,
        metrics: TracingMetrics | None = None,
    ) -> None:
        self._settings = settings or TracingSettings()
        self._connector = connector
        self.batcher = batcher or SpanBatcher(
            self._settings.batchable_span_names,
            enabled=self._settings.span_batching_enabled,
            batch_threshold_ms=self._settings.batch_threshold_ms,
        )
        self.metrics = metrics or TracingMetrics()

        self._lock = threading.Lock()
        self._spans: list[Span] = []
        self._state = BufferState.IDLE
        self._flush_requested = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self._flush_lock: asyncio.Lock | None = None

    # -- introspection -----------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._spans)

    @property
    def state(self) -> BufferState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def connector(self) -> BackendConnector:
        return self._connector

    # -- enqueue -----------------------------------------------------------

    def add_span(self, span: Span) -> bool:
        """Buffer a finished span, folding it into a batch where possible.

        Safe to call from any thread. Returns ``False`` if the span was
        rejected.
        """
        if not span.trace_id:
            logger.warning("span_rejected_without_trace_id", span_name=span.name, span_id=span.span_id)
            return False

        with self._lock:
            if self.batcher.try_merge(span):
                return True
            self._spans.append(span)
            self.batcher.register(span)

            overflow = len(self._spans) - self._settings.max_buffered_spans
            if overflow > 0:
                evicted = self._spans[:overflow]
                del self._spans[:overflow]
                for old in evicted:
                    self.batcher.discard(old)
                self.metrics.dropped.inc(_span_count(evicted))
            size = len(self._spans)
            if self._state == BufferState.IDLE:
                self._state = BufferState.ACCUMULATING
            request_flush = size >= self._settings.force_transmission_starting_at and not self._flush_requested
            if request_flush:
                self._flush_requested = True

        self.metrics.buffered.set(size)
        if overflow > 0:
            logger.debug("span_buffer_overflow", dropped=overflow, max_buffered_spans=self._settings.max_buffered_spans)
        if request_flush:
            self._request_flush()
        return True

    def _request_flush(self) -> None:
        loop, wake = self._loop, self._wake
        if loop is None or wake is None:
            return
        try:
            loop.call_soon_threadsafe(wake.set)
        except RuntimeError:
            logger.debug("span_buffer_loop_closed")

    def _take(self) -> list[Span]:
        with self._lock:
            batch, self._spans = self._spans, []
            self.batcher.reset()
            self._flush_requested = False
        self.metrics.buffered.set(0)
        return batch

    def get_and_reset_spans(self) -> list[Span]:
        """Drain the buffer synchronously, e.g. at the end of a serverless invocation."""
        batch = self._take()
        self._state = BufferState.IDLE
        return batch

    # -- transmission ------------------------------------------------------

    async def flush(self) -> int:
        """Send everything buffered so far.

        A failed send drops the batch; spans are delivered at most once.

        Returns:
            The number of spans handed to the connector.
        """
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()
        async with self._flush_lock:
            batch = self._take()
            if not batch:
                self._state = BufferState.IDLE
                return 0
            self._state = BufferState.TRANSMITTING
            try:
                result = await self._connector.send_spans(batch)
            except Exception as exc:
                logger.error("span_transmission_error", error=str(exc), spans=len(batch))
                self.metrics.dropped.inc(_span_count(batch))
            else:
                if not result.ok:
                    logger.warning(
                        "span_transmission_failed",
                        spans=len(batch),
                        status_code=result.status_code,
                        error=result.error,
                    )
                    self.metrics.dropped.inc(_span_count(batch))
            finally:
                with self._lock:
                    self._state = BufferState.ACCUMULATING if self._spans else BufferState.IDLE
            return len(batch)

    async def _run(self) -> None:
        assert self._wake is not None
        delay = self._settings.transmission_delay_ms / 1000.0
        timeout = max(self._settings.transmission_delay_ms, self._settings.min_delay_before_sending_spans_ms) / 1000.0
        while True:
            # Reaching force_transmission_starting_at wakes the loop early.
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except TimeoutError:
                pass
            self._wake.clear()
            timeout = delay
            await self.flush()

    async def start(self) -> None:
        """Start the transmission loop on the running event loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._task = asyncio.create_task(self._run())
        logger.debug("span_buffer_started", transmission_delay_ms=self._settings.transmission_delay_ms)

    async def stop(self, *, final_flush: bool = True) -> None:
        """Stop the loop and, by default, send what is still buffered."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if final_flush:
            await self.flush()
        self._loop = None
        self._wake = None
