"""Tests for trace and span ID generation."""

from __future__ import annotations

import re

from vigil.core.ids import (
    EMPTY_SPAN_ID,
    generate_span_id,
    generate_trace_id,
    is_valid_id,
    read_trace_id,
)

HEX16 = re.compile(r"^[0-9a-f]{16}$")
HEX32 = re.compile(r"^[0-9a-f]{32}$")


class TestGenerate:
    def test_span_id_is_16_hex(self) -> None:
        assert HEX16.match(generate_span_id())

    def test_trace_id_widths(self) -> None:
        assert HEX16.match(generate_trace_id())
        assert HEX32.match(generate_trace_id(long=True))

    def test_ids_differ(self) -> None:
        ids = {generate_span_id() for _ in range(1000)}
        assert len(ids) == 1000

    def test_never_all_zero(self) -> None:
        assert all(generate_span_id() != EMPTY_SPAN_ID for _ in range(100))


class TestValidation:
    def test_valid(self) -> None:
        assert is_valid_id("00f067aa0ba902b7", 16)

    def test_rejects_zero_upper_case_and_wrong_width(self) -> None:
        assert not is_valid_id(EMPTY_SPAN_ID, 16)
        assert not is_valid_id("00F067AA0BA902B7", 16)
        assert not is_valid_id("abc", 16)
        assert not is_valid_id(None)


class TestReadTraceId:
    def test_short_id_is_padded(self) -> None:
        assert read_trace_id("abc") == ("0000000000000abc", None)

    def test_upper_case_is_lowered(self) -> None:
        assert read_trace_id("ABCDEF0123456789") == ("abcdef0123456789", None)

    def test_long_id_truncated_when_disabled(self) -> None:
        raw = "4bf92f3577b34da6a3ce929d0e0e4736"
        assert read_trace_id(raw) == ("a3ce929d0e0e4736", raw)

    def test_long_id_kept_when_enabled(self) -> None:
        raw = "4bf92f3577b34da6a3ce929d0e0e4736"
        assert read_trace_id(raw, long_trace_ids=True) == (raw, None)

    def test_garbage_is_rejected(self) -> None:
        assert read_trace_id("not-hex") == (None, None)
        assert read_trace_id("") == (None, None)
        assert read_trace_id("a" * 33) == (None, None)
