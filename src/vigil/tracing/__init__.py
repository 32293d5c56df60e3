"""Span lifecycle, context propagation, filtering, batching and buffering."""

from vigil.tracing.batching import SpanBatcher, errors_then_longest, errors_then_most_recent
from vigil.tracing.context import (
    active_span,
    bind_context,
    copy_context_to_thread,
    get_active_span,
    get_entry_span,
    run_in_executor,
    run_with_span,
    run_with_span_async,
)
from vigil.tracing.headers import IncomingContext, from_headers
from vigil.tracing.span_buffer import BufferState, SpanBuffer
from vigil.tracing.span_filter import SpanFilter, apply_filter, should_ignore
from vigil.tracing.tracer import Tracer
from vigil.tracing.w3c import W3cTraceContext

__all__ = [
    "BufferState",
    "IncomingContext",
    "SpanBatcher",
    "SpanBuffer",
    "SpanFilter",
    "Tracer",
    "W3cTraceContext",
    "active_span",
    "apply_filter",
    "bind_context",
    "copy_context_to_thread",
    "errors_then_longest",
    "errors_then_most_recent",
    "from_headers",
    "get_active_span",
    "get_entry_span",
    "run_in_executor",
    "run_with_span",
    "run_with_span_async",
    "should_ignore",
]
