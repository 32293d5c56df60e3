"""Random trace and span ID generation.

IDs are lower-case hex strings of fixed width: 16 characters for span IDs
and 16 or 32 characters for trace IDs. Uniform random bits are enough to
avoid collisions in practice; there is no uniqueness registry.
"""

from __future__ import annotations

__all__ = [
    "EMPTY_SPAN_ID",
    "generate_span_id",
    "generate_trace_id",
    "is_valid_id",
    "read_trace_id",
]

import random
import re

EMPTY_SPAN_ID = "0" * 16

_HEX_RE = re.compile(r"^[0-9a-f]+$")

_rng = random.SystemRandom()


def _random_hex(width: int) -> str:
    # getrandbits may yield 0; re-draw so an ID is never all zeroes.
    while True:
        value = _rng.getrandbits(width * 4)
        if value:
            return f"{value:0{width}x}"


def generate_span_id() -> str:
    """Return a new 16 character span ID."""
    return _random_hex(16)


def generate_trace_id(long: bool = False) -> str:
    """Return a new trace ID, 32 characters wide when *long* is set."""
    return _random_hex(32 if long else 16)


def is_valid_id(value: str | None, *widths: int) -> bool:
    """Check that *value* is non-zero lower-case hex of one of *widths*."""
    if not value or not _HEX_RE.match(value):
        return False
    if widths and len(value) not in widths:
        return False
    return value.strip("0") != ""


def read_trace_id(raw: str | None, *, long_trace_ids: bool = False) -> tuple[str | None, str | None]:
    """Normalize an incoming trace ID.

    Returns a ``(trace_id, long_trace_id)`` pair. A 32 character ID is kept
    as is when 128-bit trace IDs are enabled; otherwise it is truncated to
    its lower 64 bits and the full value is returned as ``long_trace_id``.
    Shorter IDs are left-padded to 16 characters.

    Args:
        raw: The trace ID as received, in any case.
        long_trace_ids: Whether 128-bit trace IDs are enabled.
    """
    if not raw:
        return None, None
    value = raw.strip().lower()
    if not _HEX_RE.match(value) or len(value) > 32:
        return None, None
    if len(value) <= 16:
        return value.rjust(16, "0"), None
    value = value.rjust(32, "0")
    if long_trace_ids:
        return value, None
    return value[16:], value
