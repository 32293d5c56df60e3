"""Folding bursts of short exit spans into one batch span.

A burst of, say, fifty Redis GETs under the same parent produces a single
span with ``b.s == 50`` instead of fifty spans. Only leaf span families
registered as batchable take part, and only while the current batching
window is open; the span buffer closes the window on every flush.
"""

from __future__ import annotations

__all__ = [
    "Constituent",
    "SignificanceFn",
    "SpanBatcher",
    "errors_then_longest",
    "errors_then_most_recent",
]

import copy
from collections.abc import Callable, Iterable
from typing import NamedTuple

import structlog

from vigil.core.span import BatchInfo, Span

logger = structlog.get_logger(__name__)

BatchKey = tuple[str, str, str]


class Constituent(NamedTuple):
    """The values of a single call that significance is decided on."""

    error_count: int
    duration: int
    timestamp: int

    @classmethod
    def of(cls, span: Span) -> Constituent:
        return cls(span.error_count, span.duration, span.timestamp)


SignificanceFn = Callable[[Constituent, Constituent], bool]
"""``(representative, candidate) -> True`` if the candidate should take over."""


def errors_then_most_recent(representative: Constituent, candidate: Constituent) -> bool:
    """Error-bearing calls outrank error-free ones; among equals the newest wins."""
    return candidate.error_count > 0 or representative.error_count == 0


def errors_then_longest(representative: Constituent, candidate: Constituent) -> bool:
    """Higher error count wins, then longer duration, then earlier start."""
    if candidate.error_count != representative.error_count:
        return candidate.error_count > representative.error_count
    if candidate.duration != representative.duration:
        return candidate.duration > representative.duration
    return candidate.timestamp < representative.timestamp


class _Batch:
    __slots__ = ("representative", "span")

    def __init__(self, span: Span) -> None:
        self.span = span
        self.representative = Constituent.of(span)


class SpanBatcher:
    """Merges batchable spans that share trace, parent and name.

    Not thread-safe on its own; the span buffer calls it under its lock.

    Args:
        batchable_names: Span names that are guaranteed leaves and may be
            batched.
        enabled: Whether batching is switched on.
        batch_threshold_ms: Only spans shorter than this are batched.
        significance: Decides which constituent's data the batch reports.
    """

    def __init__(
        self,
        batchable_names: Iterable[str] = (),
        *,
        enabled: bool = False,
        batch_threshold_ms: int = 10,
        significance: SignificanceFn = errors_then_most_recent,
    ) -> None:
        self._names: set[str] = set(batchable_names)
        self.enabled = enabled
        self.batch_threshold_ms = batch_threshold_ms
        self.significance = significance
        self._window: dict[BatchKey, _Batch] = {}

    def enable(self) -> None:
        self.enabled = True

    def add_batchable_name(self, name: str) -> None:
        self._names.add(name)

    @property
    def open_batches(self) -> int:
        return len(self._window)

    def is_batchable(self, span: Span) -> bool:
        return (
            self.enabled
            and span.name in self._names
            and span.parent_span_id is not None
            and span.duration < self.batch_threshold_ms
        )

    @staticmethod
    def _key(span: Span) -> BatchKey:
        return (span.trace_id, span.parent_span_id or "", span.name)

    def try_merge(self, span: Span) -> bool:
        """Fold *span* into an open batch with the same key.

        Returns:
            ``True`` if the span was absorbed and must not be buffered on
            its own; ``False`` if it should be buffered (and, when
            batchable, registered).
        """
        if not self.is_batchable(span):
            return False
        batch = self._window.get(self._key(span))
        if batch is None:
            return False
        self._merge(batch, span)
        return True

    def register(self, span: Span) -> None:
        """Open a batch with *span* as its first member."""
        if self.is_batchable(span):
            self._window.setdefault(self._key(span), _Batch(span))

    def discard(self, span: Span) -> None:
        """Forget the batch opened by *span*, e.g. when it is evicted."""
        key = self._key(span)
        batch = self._window.get(key)
        if batch is not None and batch.span is span:
            del self._window[key]

    def reset(self) -> None:
        """Close the window; later spans start new batches."""
        self._window.clear()

    def _merge(self, batch: _Batch, source: Span) -> None:
        target = batch.span
        candidate = Constituent.of(source)
        if self.significance(batch.representative, candidate):
            target.data = copy.deepcopy(source.data)
            target.stack_trace = list(source.stack_trace)
            batch.representative = candidate

        # Sizes and summed durations of spans that are already batches
        # (e.g. a Redis MULTI recorded as one span) are carried over.
        target_size = target.batch_info.size if target.batch_info else 1
        target_duration = target.batch_info.duration if target.batch_info else target.duration
        source_size = source.batch_info.size if source.batch_info else 1
        source_duration = source.batch_info.duration if source.batch_info else source.duration

        latest_end = max(target.timestamp + target.duration, source.timestamp + source.duration)
        target.timestamp = min(target.timestamp, source.timestamp)
        target.duration = latest_end - target.timestamp
        target.error_count += source.error_count
        target.batch_info = BatchInfo(
            size=target_size + source_size,
            duration=target_duration + source_duration,
        )
        logger.debug(
            "span_batched",
            span_name=target.name,
            trace_id=target.trace_id,
            batch_size=target.batch_info.size,
        )
