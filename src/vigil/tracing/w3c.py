"""W3C trace context (``traceparent`` / ``tracestate``) handling.

The ``tracestate`` header is kept in three parts: the foreign members left
of our vendor member (``head``), the vendor member itself
(``in=<trace id>;<span id>``), and the foreign members right of it
(``tail``). Whenever we become the parent, the vendor member moves to the
leftmost position as the W3C list rules require.
"""

from __future__ import annotations

__all__ = [
    "MAX_TRACESTATE_MEMBERS",
    "VENDOR_KEY",
    "W3cTraceContext",
    "parse",
]

import copy
import re

from vigil.core.ids import EMPTY_SPAN_ID, generate_span_id, generate_trace_id

VENDOR_KEY = "in"
VERSION_00 = "00"
MAX_TRACESTATE_MEMBERS = 32

_LEFT_PAD_16 = "0" * 16
_SAMPLED = 0x01
_RANDOM_TRACE_ID = 0x02

_VERSION_RE = re.compile(r"^([0-9a-f]{2})-")
_TRACEPARENT_V00_RE = re.compile(r"^00-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")
_TRACEPARENT_FUTURE_RE = re.compile(r"^[0-9a-f]{2}-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})")
_MEMBER_KEY_RE = re.compile(r"^[a-z0-9][a-z0-9_\-*/@]{0,255}$")
_VENDOR_VALUE_RE = re.compile(r"^([0-9a-f]{16}|[0-9a-f]{32});([0-9a-f]{16})$")


class W3cTraceContext:
    """Parsed or synthesized W3C trace context state."""

    def __init__(self) -> None:
        self.trace_parent_valid = False
        self.version: str | None = None
        self.foreign_trace_id: str | None = None
        self.foreign_parent_id: str | None = None
        self.sampled = False
        self.random_trace_id = False

        self.trace_state_valid = False
        self.trace_state_head: list[str] | None = None
        self.vendor_trace_id: str | None = None
        self.vendor_parent_id: str | None = None
        self.trace_state_tail: list[str] | None = None

    def __repr__(self) -> str:
        return f"W3cTraceContext({self.render_trace_parent()!r}, {self.render_trace_state()!r})"

    # -- constructors ------------------------------------------------------

    @classmethod
    def from_ids(cls, trace_id: str, parent_id: str, sampled: bool = True) -> W3cTraceContext:
        """Create a context from our own trace and span IDs."""
        ctx = cls()
        ctx.trace_parent_valid = True
        ctx.version = VERSION_00
        ctx.foreign_trace_id = _pad_trace_id(trace_id)
        ctx.foreign_parent_id = parent_id
        ctx.sampled = sampled
        ctx.trace_state_valid = True
        ctx.vendor_trace_id = trace_id
        ctx.vendor_parent_id = parent_id
        return ctx

    @classmethod
    def create_empty_unsampled(cls, trace_id: str, parent_id: str) -> W3cTraceContext:
        """Context for suppressed requests without incoming headers."""
        ctx = cls()
        ctx.trace_parent_valid = True
        ctx.version = VERSION_00
        ctx.foreign_trace_id = _pad_trace_id(trace_id)
        ctx.foreign_parent_id = parent_id
        ctx.sampled = False
        ctx.trace_state_valid = True
        return ctx

    def clone(self) -> W3cTraceContext:
        """Copy for a child span; the parent's lists are never shared."""
        clone = copy.copy(self)
        clone.trace_state_head = list(self.trace_state_head) if self.trace_state_head else self.trace_state_head
        clone.trace_state_tail = list(self.trace_state_tail) if self.trace_state_tail else self.trace_state_tail
        return clone

    # -- rendering ---------------------------------------------------------

    def render_flags(self) -> str:
        flags = (_SAMPLED if self.sampled else 0) | (_RANDOM_TRACE_ID if self.random_trace_id else 0)
        return f"{flags:02x}"

    def render_trace_parent(self) -> str:
        if not self.trace_parent_valid:
            return ""
        # Only version 00 is supported for output.
        return f"{VERSION_00}-{self.foreign_trace_id}-{self.foreign_parent_id}-{self.render_flags()}"

    def render_vendor_member(self) -> str | None:
        if self.vendor_trace_id and self.vendor_parent_id:
            return f"{VENDOR_KEY}={self.vendor_trace_id};{self.vendor_parent_id}"
        return None

    def render_trace_state(self) -> str:
        if not self.trace_state_valid:
            return ""
        members: list[str] = list(self.trace_state_head or [])
        vendor = self.render_vendor_member()
        if vendor:
            members.append(vendor)
        members.extend(self.trace_state_tail or [])
        return ",".join(members)

    def has_trace_state(self) -> bool:
        return bool(
            (self.vendor_trace_id and self.vendor_parent_id)
            or self.trace_state_head
            or self.trace_state_tail
        )

    def has_vendor_member(self) -> bool:
        return bool(self.vendor_trace_id and self.vendor_parent_id)

    def most_recent_foreign_member(self) -> str | None:
        members = self.trace_state_head or self.trace_state_tail
        return members[0] if members else None

    # -- mutation ----------------------------------------------------------

    def reset_trace_state(self) -> None:
        self.trace_state_valid = True
        self.trace_state_head = None
        self.vendor_trace_id = None
        self.vendor_parent_id = None
        self.trace_state_tail = None

    def update_parent(self, trace_id: str, parent_id: str) -> None:
        """Make our span the parent for downstream services.

        Sets the traceparent parent ID and the sampled flag, and upserts
        the vendor member at the leftmost tracestate position. The
        traceparent trace ID is never changed.
        """
        self.vendor_trace_id = trace_id
        self.vendor_parent_id = parent_id
        self.foreign_parent_id = parent_id
        foreign = (self.trace_state_head or []) + (self.trace_state_tail or [])
        # The vendor member takes one of the member slots.
        self.trace_state_tail = foreign[: MAX_TRACESTATE_MEMBERS - 1] or None
        self.trace_state_head = None
        self.sampled = True

    def restart_trace(self, long_trace_id: bool = False) -> None:
        self.trace_parent_valid = True
        self.version = VERSION_00
        self.vendor_trace_id = generate_trace_id(long=long_trace_id)
        self.foreign_trace_id = _pad_trace_id(self.vendor_trace_id)
        self.foreign_parent_id = self.vendor_parent_id = generate_span_id()
        self.sampled = True
        self.trace_state_valid = True
        self.trace_state_head = None
        self.trace_state_tail = None

    def disable_sampling(self) -> None:
        # The parent ID must change whenever the sampled flag is updated.
        if self.sampled:
            self.foreign_parent_id = generate_span_id()
        self.sampled = False


def _pad_trace_id(trace_id: str) -> str:
    return _LEFT_PAD_16 + trace_id if len(trace_id) == 16 else trace_id


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse(trace_parent: object, trace_state: object = None) -> W3cTraceContext:
    """Parse incoming ``traceparent`` and ``tracestate`` header values.

    Invalid input never raises; the validity flags on the returned context
    say what could be used. ``tracestate`` is only parsed when
    ``traceparent`` is valid.
    """
    ctx = W3cTraceContext()
    _parse_trace_parent(ctx, trace_parent)
    if ctx.trace_parent_valid:
        _parse_trace_state(ctx, trace_state)
    return ctx


def _parse_trace_parent(ctx: W3cTraceContext, value: object) -> None:
    if not isinstance(value, str):
        return
    version_match = _VERSION_RE.match(value)
    if not version_match or version_match.group(1) == "ff":
        return
    ctx.version = version_match.group(1)

    regex = _TRACEPARENT_V00_RE if ctx.version == VERSION_00 else _TRACEPARENT_FUTURE_RE
    match = regex.match(value)
    if not match:
        return
    trace_id, parent_id, flags = match.groups()
    if trace_id == "0" * 32 or parent_id == EMPTY_SPAN_ID:
        return

    ctx.foreign_trace_id = trace_id
    ctx.foreign_parent_id = parent_id
    bits = int(flags, 16)
    ctx.sampled = bool(bits & _SAMPLED)
    ctx.random_trace_id = bool(bits & _RANDOM_TRACE_ID)
    ctx.trace_parent_valid = True


def _parse_trace_state(ctx: W3cTraceContext, value: object) -> None:
    if not isinstance(value, str) or not value.strip():
        return

    head: list[str] = []
    tail: list[str] = []
    vendor_found = False
    for raw in value.split(","):
        member = raw.strip()
        if not member or "=" not in member:
            continue
        key, _, member_value = member.partition("=")
        if not _MEMBER_KEY_RE.match(key) or not member_value:
            continue
        if key == VENDOR_KEY:
            if vendor_found:
                continue
            vendor_match = _VENDOR_VALUE_RE.match(member_value)
            if not vendor_match:
                continue
            ctx.vendor_trace_id, ctx.vendor_parent_id = vendor_match.groups()
            vendor_found = True
            continue
        (tail if vendor_found else head).append(member)

    limit = MAX_TRACESTATE_MEMBERS - (1 if vendor_found else 0)
    if len(head) >= limit:
        head, tail = head[:limit], []
    else:
        tail = tail[: limit - len(head)]

    if not vendor_found and not head:
        return
    ctx.trace_state_head = head or None
    ctx.trace_state_tail = tail or None
    ctx.trace_state_valid = True
