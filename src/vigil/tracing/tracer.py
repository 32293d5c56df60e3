"""Span lifecycle API used by instrumentation.

Typical use by an HTTP server instrumentation::

    with tracer.entry_span("node.http.server", request.headers) as entry:
        entry.set_payload(HttpData(method="GET", url=url))
        ...
        with tracer.start_span("redis") as exit_span:
            exit_span.set_payload(RedisData(operation="get"))
            await redis.get(key)

``finish`` is where a span leaves the instrumentation's hands: it is run
through the span filter and then handed to the span buffer.
"""

from __future__ import annotations

__all__ = ["Tracer"]

import asyncio
import contextlib
import functools
import traceback
from collections.abc import AsyncIterator, Callable, Iterator, Mapping
from contextlib import asynccontextmanager, contextmanager
from typing import Any, TypeVar

import structlog

from vigil.config.secrets import SecretsMatcher
from vigil.config.settings import TracingSettings
from vigil.core.errors import AlreadyFinishedError
from vigil.core.identity import ProcessIdentity
from vigil.core.ids import generate_span_id, generate_trace_id
from vigil.core.span import Span, SpanKind, StackFrame
from vigil.core.span_data import HttpData
from vigil.observability.metrics import TracingMetrics
from vigil.tracing import context
from vigil.tracing.headers import from_headers, outgoing_headers
from vigil.tracing.span_buffer import SpanBuffer
from vigil.tracing.span_filter import SpanFilter
from vigil.tracing.w3c import W3cTraceContext

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_HTTP_SERVER = "node.http.server"
_INTERNAL_FILES = frozenset({__file__, contextlib.__file__})


class Tracer:
    """Creates spans and hands finished ones to the filter and buffer.

    Args:
        buffer: Receives finished spans that pass the filter.
        settings: Tracing settings (stack trace length, 128-bit IDs,
            extra headers).
        identity: Supplies the ``f`` field of every span.
        span_filter: Ignore-endpoints filter; none means nothing is
            filtered.
        metrics: Opened/closed counters; defaults to the buffer's.
        secrets: Used to redact captured URLs.
        service_name: Optional service name override put on entry spans.
    """

    def __init__(
        self,
        buffer: SpanBuffer,
        settings: TracingSettings | None = None,
        *,
        identity: ProcessIdentity | None = None,
        span_filter: SpanFilter | None = None,
        metrics: TracingMetrics | None = None,
        secrets: SecretsMatcher | None = None,
        service_name: str | None = None,
    ) -> None:
        self.settings = settings or TracingSettings()
        self.buffer = buffer
        self.identity = identity or ProcessIdentity()
        self.span_filter = span_filter or SpanFilter()
        self.metrics = metrics or buffer.metrics
        self.secrets = secrets or SecretsMatcher()
        self.service_name = service_name
        self.extra_http_headers: list[str] = list(self.settings.extra_http_headers)
        self._enabled = self.settings.enabled

    @property
    def enabled(self) -> bool:
        """Whether spans are recorded; disabled spans are never transmitted."""
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value

    # -- creation ----------------------------------------------------------

    @staticmethod
    def _coerce_kind(kind: Any) -> SpanKind:
        try:
            return SpanKind(kind)
        except ValueError:
            logger.warning("invalid_span_kind", kind=kind, fallback=SpanKind.EXIT.name)
            return SpanKind.EXIT

    def _capture_stack(self) -> list[StackFrame]:
        limit = self.settings.stack_trace_length
        if limit <= 0:
            return []
        # Innermost first, without the tracer's own frames.
        frames = [f for f in traceback.extract_stack() if f.filename not in _INTERNAL_FILES]
        return [
            StackFrame(method=f.name, file=f.filename, line=f.lineno or 0)
            for f in reversed(frames[-limit:])
        ]

    def _new_span(self, **fields: Any) -> Span:
        span = Span(span_id=generate_span_id(), from_=self.identity.from_header(), **fields)
        if not self._enabled:
            span.suppress_transmission()
        self.metrics.opened.inc()
        return span

    def new_root_span(self, name: str, kind: SpanKind | int = SpanKind.ENTRY) -> Span:
        """Start a new trace with *name* as its root."""
        kind = self._coerce_kind(kind)
        trace_id = generate_trace_id(long=self.settings.long_trace_ids)
        span = self._new_span(trace_id=trace_id, kind=kind, name=name)
        span.w3c_trace_context = W3cTraceContext.from_ids(trace_id, span.span_id)
        if kind == SpanKind.ENTRY and self.service_name:
            span.data["service"] = self.service_name
        return span

    def new_child_span(self, parent: Span, name: str, kind: SpanKind | int = SpanKind.EXIT) -> Span:
        """Create a span that continues *parent*'s trace."""
        kind = self._coerce_kind(kind)
        span = self._new_span(
            trace_id=parent.trace_id,
            long_trace_id=parent.long_trace_id,
            parent_span_id=parent.span_id,
            kind=kind,
            name=name,
            synthetic=parent.synthetic,
        )
        if parent.w3c_trace_context is not None:
            span.w3c_trace_context = parent.w3c_trace_context.clone()
        if parent.transmit_suppressed:
            span.suppress_transmission()
        if kind == SpanKind.EXIT:
            span.set_stack_trace(self._capture_stack())
        return span

    def start_entry_span(self, name: str, headers: Mapping[str, Any] | None = None) -> Span:
        """Open the entry span for an incoming request.

        The trace is continued from the request's propagation headers when
        they carry one; ``X-INSTANA-L: 0`` yields a span that is never
        transmitted.
        """
        incoming = from_headers(headers, long_trace_ids=self.settings.long_trace_ids)
        trace_id = incoming.trace_id or generate_trace_id(long=self.settings.long_trace_ids)
        span = self._new_span(
            trace_id=trace_id,
            long_trace_id=incoming.long_trace_id,
            parent_span_id=incoming.parent_id,
            kind=SpanKind.ENTRY,
            name=name,
            synthetic=incoming.synthetic,
            trace_parent_used=incoming.trace_parent_used,
            ancestor=incoming.ancestor,
        )
        if incoming.parent_id is None:
            span.correlation_type = incoming.correlation_type
            span.correlation_id = incoming.correlation_id
        span.w3c_trace_context = incoming.w3c_trace_context or W3cTraceContext.from_ids(
            incoming.long_trace_id or trace_id, span.span_id
        )
        if incoming.suppressed:
            span.suppress_transmission()
        if self.service_name:
            span.data["service"] = self.service_name
        if name == _HTTP_SERVER and headers:
            captured = self.capture_headers(headers)
            if captured:
                span.set_payload(HttpData(header=captured))
        return span

    def capture_headers(self, headers: Mapping[str, Any]) -> dict[str, str]:
        """Pick the configured extra HTTP headers out of *headers*."""
        if not self.extra_http_headers:
            return {}
        wanted = set(self.extra_http_headers)
        return {
            key.lower(): value
            for key, value in headers.items()
            if isinstance(key, str) and key.lower() in wanted and isinstance(value, str)
        }

    def redact_url(self, url: str) -> str:
        return self.secrets.redact_query(url)

    # -- finishing ---------------------------------------------------------

    def finish(self, span: Span, end_time: int | None = None) -> None:
        """Finish *span* and pass it on for transmission.

        Finishing twice is logged and otherwise ignored.
        """
        try:
            span.finish(end_time)
        except AlreadyFinishedError as exc:
            logger.warning("span_already_finished", span_id=exc.span_id, span_name=exc.name)
            return
        self.metrics.closed.inc()
        if span.transmit_suppressed:
            return
        try:
            kept = self.span_filter.apply(span)
        except Exception as exc:
            logger.exception("span_filter_error", span_id=span.span_id, span_name=span.name, error=str(exc))
            kept = span
        if kept is None:
            return
        self.buffer.add_span(kept)

    # -- propagation -------------------------------------------------------

    def outgoing_headers(self, span: Span | None = None) -> dict[str, str]:
        """Headers for a downstream call made by *span* (default: active span)."""
        span = span or context.get_active_span()
        if span is None:
            return {}
        suppressed = context.tracing_suppressed() or span.transmit_suppressed
        return outgoing_headers(
            span.trace_id,
            span.span_id,
            span.w3c_trace_context,
            long_trace_id=span.long_trace_id,
            suppressed=suppressed,
        )

    # -- context-manager helpers -------------------------------------------

    def _open(self, name: str, kind: SpanKind | int) -> Span:
        parent = context.get_active_span()
        if parent is None:
            return self.new_root_span(name, kind)
        return self.new_child_span(parent, name, kind)

    @contextmanager
    def start_span(self, name: str, kind: SpanKind | int = SpanKind.EXIT) -> Iterator[Span]:
        """Create, activate and finish a span around a ``with`` block.

        The span becomes a child of the active span, or a new root. An
        exception leaving the block is recorded on the span and re-raised.
        """
        span = self._open(name, kind)
        try:
            with context.active_span(span):
                yield span
        except Exception as exc:
            span.mark_error(str(exc))
            raise
        finally:
            self.finish(span)

    @asynccontextmanager
    async def start_async_span(self, name: str, kind: SpanKind | int = SpanKind.EXIT) -> AsyncIterator[Span]:
        """Async variant of :meth:`start_span`."""
        span = self._open(name, kind)
        try:
            with context.active_span(span):
                yield span
        except Exception as exc:
            span.mark_error(str(exc))
            raise
        finally:
            self.finish(span)

    @contextmanager
    def entry_span(self, name: str, headers: Mapping[str, Any] | None = None) -> Iterator[Span]:
        """Entry span for an incoming request, active for the ``with`` block."""
        span = self.start_entry_span(name, headers)
        level_token = context.set_tracing_level("0" if span.transmit_suppressed else "1")
        try:
            with context.active_span(span):
                yield span
        except Exception as exc:
            span.mark_error(str(exc))
            raise
        finally:
            context.reset_tracing_level(level_token)
            self.finish(span)

    # -- decorator ---------------------------------------------------------

    def trace(self, name: str | None = None, *, kind: SpanKind | int = SpanKind.INTERMEDIATE) -> Callable[[F], F]:
        """Decorator that wraps a function or coroutine in a span.

        Example::

            @tracer.trace("checkout.price")
            async def price(cart):
                ...
        """

        def decorator(fn: F) -> F:
            span_name = name or fn.__qualname__

            if asyncio.iscoroutinefunction(fn):

                @functools.wraps(fn)
                async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                    async with self.start_async_span(span_name, kind):
                        return await fn(*args, **kwargs)

                return async_wrapper  # type: ignore[return-value]

            @functools.wraps(fn)
            def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
                with self.start_span(span_name, kind):
                    return fn(*args, **kwargs)

            return sync_wrapper  # type: ignore[return-value]

        return decorator

    # -- agent configuration -----------------------------------------------

    def set_extra_http_headers(self, headers: list[str]) -> None:
        self.extra_http_headers = [h.lower() for h in headers]
