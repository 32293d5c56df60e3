"""Reading and writing trace propagation headers.

Incoming requests may carry the vendor headers (``X-INSTANA-T``,
``X-INSTANA-S``, ``X-INSTANA-L``, ``X-INSTANA-SYNTHETIC``), the W3C
``traceparent`` / ``tracestate`` pair, both, or neither. The vendor
headers win when both are present; W3C headers are always carried along
so foreign vendors downstream keep their state.
"""

from __future__ import annotations

__all__ = [
    "HEADER_LEVEL",
    "HEADER_SPAN_ID",
    "HEADER_SYNTHETIC",
    "HEADER_TRACE_ID",
    "HEADER_TRACEPARENT",
    "HEADER_TRACESTATE",
    "IncomingContext",
    "from_headers",
    "outgoing_headers",
    "parse_level",
]

from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from vigil.core.ids import generate_span_id, generate_trace_id, is_valid_id, read_trace_id
from vigil.tracing import w3c
from vigil.tracing.w3c import W3cTraceContext

logger = structlog.get_logger(__name__)

HEADER_TRACE_ID = "X-INSTANA-T"
HEADER_SPAN_ID = "X-INSTANA-S"
HEADER_LEVEL = "X-INSTANA-L"
HEADER_SYNTHETIC = "X-INSTANA-SYNTHETIC"
HEADER_TRACEPARENT = "traceparent"
HEADER_TRACESTATE = "tracestate"


class IncomingContext(BaseModel):
    """What an entry span inherits from the request that created it."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    trace_id: str | None = None
    long_trace_id: str | None = None
    parent_id: str | None = None
    level: str = "1"
    synthetic: bool = False
    correlation_type: str | None = None
    correlation_id: str | None = None
    trace_parent_used: bool = False
    ancestor: dict[str, str] | None = None
    w3c_trace_context: W3cTraceContext | None = None

    @property
    def suppressed(self) -> bool:
        return self.level.startswith("0")


def _lookup(headers: Mapping[str, Any]) -> dict[str, str]:
    lowered: dict[str, str] = {}
    for key, value in headers.items():
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if isinstance(value, str):
            lowered[str(key).lower()] = value
    return lowered


def parse_level(raw: str | None) -> tuple[str, str | None, str | None]:
    """Split ``X-INSTANA-L`` into level, correlation type and correlation ID.

    The header looks like ``1,correlationType=web;correlationId=1234``;
    only the leading level is mandatory.
    """
    if not raw:
        return "1", None, None
    level, _, rest = raw.partition(",")
    level = level.strip() or "1"
    correlation_type = correlation_id = None
    for part in rest.split(";"):
        key, _, value = part.partition("=")
        key, value = key.strip(), value.strip()
        if key == "correlationType" and value:
            correlation_type = value
        elif key == "correlationId" and value:
            correlation_id = value
    return level, correlation_type, correlation_id


def from_headers(headers: Mapping[str, Any] | None, *, long_trace_ids: bool = False) -> IncomingContext:
    """Build the incoming context for an entry span from request headers.

    Never raises: unusable header values are ignored and a new trace is
    started instead.
    """
    values = _lookup(headers or {})
    level, correlation_type, correlation_id = parse_level(values.get(HEADER_LEVEL.lower()))
    synthetic = values.get(HEADER_SYNTHETIC.lower()) == "1"
    w3c_ctx = w3c.parse(values.get(HEADER_TRACEPARENT), values.get(HEADER_TRACESTATE))
    if w3c_ctx.trace_parent_valid and not w3c_ctx.trace_state_valid:
        w3c_ctx.reset_trace_state()

    if level.startswith("0"):
        if w3c_ctx.trace_parent_valid:
            w3c_ctx.disable_sampling()
        else:
            w3c_ctx = W3cTraceContext.create_empty_unsampled(generate_trace_id(), generate_span_id())
        return IncomingContext(level=level, synthetic=synthetic, w3c_trace_context=w3c_ctx)

    if correlation_type or correlation_id:
        # Correlation data (e.g. from an end-user monitoring beacon) always
        # starts a new trace; upstream IDs are ignored.
        if not w3c_ctx.trace_parent_valid:
            w3c_ctx = None
        return IncomingContext(
            level=level,
            synthetic=synthetic,
            correlation_type=correlation_type,
            correlation_id=correlation_id,
            w3c_trace_context=w3c_ctx,
        )

    trace_id, long_trace_id = read_trace_id(values.get(HEADER_TRACE_ID.lower()), long_trace_ids=long_trace_ids)
    parent_id = values.get(HEADER_SPAN_ID.lower(), "").strip().lower() or None
    if parent_id is not None:
        parent_id = parent_id.rjust(16, "0")
    if trace_id and is_valid_id(parent_id, 16):
        if not w3c_ctx.trace_parent_valid:
            w3c_ctx = W3cTraceContext.from_ids(long_trace_id or trace_id, parent_id, sampled=True)
        return IncomingContext(
            trace_id=trace_id,
            long_trace_id=long_trace_id,
            parent_id=parent_id,
            level=level,
            synthetic=synthetic,
            w3c_trace_context=w3c_ctx,
        )

    if w3c_ctx.trace_parent_valid:
        trace_id, long_trace_id = read_trace_id(w3c_ctx.foreign_trace_id, long_trace_ids=long_trace_ids)
        ancestor = None
        if w3c_ctx.has_vendor_member():
            ancestor = {"t": w3c_ctx.vendor_trace_id, "p": w3c_ctx.vendor_parent_id}
        logger.debug("continuing_w3c_trace", trace_id=trace_id, foreign_parent=w3c_ctx.foreign_parent_id)
        return IncomingContext(
            trace_id=trace_id,
            long_trace_id=long_trace_id,
            parent_id=w3c_ctx.foreign_parent_id,
            level=level,
            synthetic=synthetic,
            trace_parent_used=True,
            ancestor=ancestor,
            w3c_trace_context=w3c_ctx,
        )

    return IncomingContext(level=level, synthetic=synthetic)


def outgoing_headers(
    trace_id: str | None,
    span_id: str | None,
    w3c_ctx: W3cTraceContext | None = None,
    *,
    long_trace_id: str | None = None,
    suppressed: bool = False,
) -> dict[str, str]:
    """Headers to attach to a downstream request made by an exit span.

    When tracing is suppressed only ``X-INSTANA-L: 0`` and an unsampled
    ``traceparent`` are sent. The passed W3C context is never mutated.
    """
    if suppressed:
        ctx = w3c_ctx.clone() if w3c_ctx is not None else None
        if ctx is None:
            ctx = W3cTraceContext.create_empty_unsampled(generate_trace_id(), generate_span_id())
        else:
            ctx.disable_sampling()
        headers = {HEADER_LEVEL: "0", HEADER_TRACEPARENT: ctx.render_trace_parent()}
        trace_state = ctx.render_trace_state()
        if trace_state:
            headers[HEADER_TRACESTATE] = trace_state
        return headers

    if not trace_id or not span_id:
        return {}
    ctx = w3c_ctx.clone() if w3c_ctx is not None else W3cTraceContext.from_ids(long_trace_id or trace_id, span_id)
    ctx.update_parent(trace_id, span_id)
    headers = {
        HEADER_TRACE_ID: trace_id,
        HEADER_SPAN_ID: span_id,
        HEADER_LEVEL: "1",
        HEADER_TRACEPARENT: ctx.render_trace_parent(),
    }
    trace_state = ctx.render_trace_state()
    if trace_state:
        headers[HEADER_TRACESTATE] = trace_state
    return headers
