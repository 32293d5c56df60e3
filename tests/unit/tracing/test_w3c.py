"""Tests for W3C traceparent/tracestate parsing and rendering."""

from __future__ import annotations

from vigil.tracing.w3c import MAX_TRACESTATE_MEMBERS, W3cTraceContext, parse

TRACE_ID_32 = "4bf92f3577b34da6a3ce929d0e0e4736"
PARENT_ID = "00f067aa0ba902b7"
TRACEPARENT = f"00-{TRACE_ID_32}-{PARENT_ID}-01"


class TestParseTraceParent:
    """Tests for traceparent validation."""

    def test_valid_v00(self) -> None:
        ctx = parse(TRACEPARENT)
        assert ctx.trace_parent_valid
        assert ctx.version == "00"
        assert ctx.foreign_trace_id == TRACE_ID_32
        assert ctx.foreign_parent_id == PARENT_ID
        assert ctx.sampled

    def test_unsampled_and_random_flags(self) -> None:
        ctx = parse(f"00-{TRACE_ID_32}-{PARENT_ID}-02")
        assert not ctx.sampled
        assert ctx.random_trace_id
        assert ctx.render_flags() == "02"

    def test_version_ff_rejected(self) -> None:
        assert not parse(f"ff-{TRACE_ID_32}-{PARENT_ID}-01").trace_parent_valid

    def test_v00_with_trailing_data_rejected(self) -> None:
        assert not parse(f"{TRACEPARENT}-extra").trace_parent_valid

    def test_future_version_accepts_trailing_data(self) -> None:
        ctx = parse(f"01-{TRACE_ID_32}-{PARENT_ID}-01-extra")
        assert ctx.trace_parent_valid
        assert ctx.version == "01"
        assert ctx.render_trace_parent() == TRACEPARENT

    def test_all_zero_ids_rejected(self) -> None:
        assert not parse(f"00-{'0' * 32}-{PARENT_ID}-01").trace_parent_valid
        assert not parse(f"00-{TRACE_ID_32}-{'0' * 16}-01").trace_parent_valid

    def test_upper_case_and_garbage_rejected(self) -> None:
        assert not parse(TRACEPARENT.upper()).trace_parent_valid
        assert not parse("garbage").trace_parent_valid
        assert not parse(None).trace_parent_valid

    def test_tracestate_ignored_without_valid_traceparent(self) -> None:
        ctx = parse("garbage", "in=1234567890abcdef;1234567890abcdef")
        assert not ctx.trace_state_valid
        assert ctx.vendor_trace_id is None


class TestParseTraceState:
    """Tests for tracestate member handling."""

    def test_vendor_member_splits_head_and_tail(self) -> None:
        ctx = parse(TRACEPARENT, "rojo=00f067aa0ba902b7, in=fa2375d711a4ca0f;02468acefdb97531 ,congo=t61rcWkgMzE")
        assert ctx.trace_state_valid
        assert ctx.trace_state_head == ["rojo=00f067aa0ba902b7"]
        assert ctx.vendor_trace_id == "fa2375d711a4ca0f"
        assert ctx.vendor_parent_id == "02468acefdb97531"
        assert ctx.trace_state_tail == ["congo=t61rcWkgMzE"]
        assert ctx.has_vendor_member()
        assert ctx.most_recent_foreign_member() == "rojo=00f067aa0ba902b7"

    def test_without_vendor_member(self) -> None:
        ctx = parse(TRACEPARENT, "rojo=1,congo=2")
        assert ctx.trace_state_valid
        assert ctx.trace_state_head == ["rojo=1", "congo=2"]
        assert ctx.trace_state_tail is None
        assert not ctx.has_vendor_member()

    def test_invalid_members_dropped(self) -> None:
        ctx = parse(TRACEPARENT, "Upper=1,,novalue=,=x,ok=1,in=zzz")
        assert ctx.trace_state_head == ["ok=1"]
        assert not ctx.has_vendor_member()

    def test_long_vendor_trace_id(self) -> None:
        ctx = parse(TRACEPARENT, f"in={TRACE_ID_32};{PARENT_ID}")
        assert ctx.vendor_trace_id == TRACE_ID_32

    def test_empty_tracestate_not_valid(self) -> None:
        assert not parse(TRACEPARENT, "  ").trace_state_valid
        assert not parse(TRACEPARENT, "Bad=1").trace_state_valid

    def test_member_limit(self) -> None:
        members = [f"v{i}=x" for i in range(40)]
        ctx = parse(TRACEPARENT, ",".join(members))
        assert len(ctx.trace_state_head or []) == MAX_TRACESTATE_MEMBERS

    def test_member_limit_counts_vendor_member(self) -> None:
        members = [f"v{i}=x" for i in range(5)] + ["in=fa2375d711a4ca0f;02468acefdb97531"]
        members += [f"w{i}=x" for i in range(40)]
        ctx = parse(TRACEPARENT, ",".join(members))
        assert len(ctx.trace_state_head or []) == 5
        assert len(ctx.trace_state_tail or []) == MAX_TRACESTATE_MEMBERS - 6


class TestRendering:
    """Tests for rendering and mutation."""

    def test_from_ids_pads_short_trace_id(self) -> None:
        ctx = W3cTraceContext.from_ids("1234567890abcdef", PARENT_ID)
        assert ctx.render_trace_parent() == f"00-{'0' * 16}1234567890abcdef-{PARENT_ID}-01"
        assert ctx.render_trace_state() == f"in=1234567890abcdef;{PARENT_ID}"

    def test_update_parent_moves_vendor_member_leftmost(self) -> None:
        ctx = parse(TRACEPARENT, "rojo=1,in=fa2375d711a4ca0f;02468acefdb97531,congo=2")
        ctx.update_parent("1111111111111111", "2222222222222222")
        assert ctx.render_trace_parent() == f"00-{TRACE_ID_32}-2222222222222222-01"
        assert ctx.render_trace_state() == "in=1111111111111111;2222222222222222,rojo=1,congo=2"

    def test_update_parent_keeps_member_limit(self) -> None:
        members = [f"v{i}=x" for i in range(MAX_TRACESTATE_MEMBERS)]
        ctx = parse(TRACEPARENT, ",".join(members))
        ctx.update_parent("1111111111111111", "2222222222222222")
        rendered = ctx.render_trace_state().split(",")
        assert len(rendered) == MAX_TRACESTATE_MEMBERS
        assert rendered[0] == "in=1111111111111111;2222222222222222"
        assert rendered[-1] == f"v{MAX_TRACESTATE_MEMBERS - 2}=x"

    def test_update_parent_sets_sampled(self) -> None:
        ctx = parse(f"00-{TRACE_ID_32}-{PARENT_ID}-00")
        ctx.update_parent("1111111111111111", "2222222222222222")
        assert ctx.sampled

    def test_future_version_rendered_as_00(self) -> None:
        ctx = parse(f"cc-{TRACE_ID_32}-{PARENT_ID}-01")
        assert ctx.render_trace_parent().startswith("00-")

    def test_disable_sampling_changes_parent(self) -> None:
        ctx = parse(TRACEPARENT)
        ctx.disable_sampling()
        assert not ctx.sampled
        assert ctx.foreign_parent_id != PARENT_ID
        assert ctx.render_trace_parent().endswith("-00")

    def test_reset_trace_state(self) -> None:
        ctx = parse(TRACEPARENT, "rojo=1,in=fa2375d711a4ca0f;02468acefdb97531")
        ctx.reset_trace_state()
        assert ctx.trace_state_valid
        assert ctx.render_trace_state() == ""
        assert not ctx.has_trace_state()

    def test_restart_trace(self) -> None:
        ctx = parse(TRACEPARENT, "rojo=1")
        ctx.restart_trace()
        assert ctx.foreign_trace_id != TRACE_ID_32
        assert len(ctx.vendor_trace_id or "") == 16
        assert ctx.trace_state_head is None

    def test_clone_does_not_share_lists(self) -> None:
        ctx = parse(TRACEPARENT, "rojo=1")
        clone = ctx.clone()
        clone.update_parent("1111111111111111", "2222222222222222")
        assert ctx.trace_state_head == ["rojo=1"]
        assert ctx.foreign_parent_id == PARENT_ID
