"""Tests for the task-scoped tracing context."""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from tests.helpers import make_span
from vigil.core.span import SpanKind
from vigil.tracing import context
from vigil.tracing.w3c import W3cTraceContext


class TestActiveSpan:
    """Tests for scoped activation."""

    def test_nothing_active_by_default(self) -> None:
        assert context.get_active_span() is None
        assert context.get_entry_span() is None

    def test_restored_after_block(self) -> None:
        outer = make_span("outer")
        inner = make_span("inner")
        with context.active_span(outer):
            with context.active_span(inner):
                assert context.get_active_span() is inner
            assert context.get_active_span() is outer
        assert context.get_active_span() is None

    def test_restored_when_block_raises(self) -> None:
        span = make_span()
        with pytest.raises(RuntimeError):
            with context.active_span(span):
                raise RuntimeError("boom")
        assert context.get_active_span() is None

    def test_entry_span_and_w3c_tracked(self) -> None:
        entry = make_span("node.http.server", kind=SpanKind.ENTRY)
        entry.w3c_trace_context = W3cTraceContext.from_ids(entry.trace_id, entry.span_id)
        exit_span = make_span("redis")
        with context.active_span(entry):
            with context.active_span(exit_span):
                assert context.get_entry_span() is entry
                assert context.get_w3c_trace_context() is entry.w3c_trace_context
        assert context.get_entry_span() is None
        assert context.get_w3c_trace_context() is None

    def test_run_with_span(self) -> None:
        span = make_span()
        assert context.run_with_span(span, context.get_active_span) is span
        assert context.get_active_span() is None

    @pytest.mark.asyncio
    async def test_run_with_span_async(self) -> None:
        span = make_span()

        async def read() -> object:
            await asyncio.sleep(0)
            return context.get_active_span()

        assert await context.run_with_span_async(span, read) is span
        assert context.get_active_span() is None


class TestTracingLevel:
    """Tests for tracing suppression."""

    def test_suppressed_block(self) -> None:
        assert not context.tracing_suppressed()
        with context.suppressed():
            assert context.tracing_suppressed()
            assert context.get_tracing_level() == "0"
        assert not context.tracing_suppressed()

    def test_set_and_reset(self) -> None:
        token = context.set_tracing_level("1")
        assert context.get_tracing_level() == "1"
        assert not context.tracing_suppressed()
        context.reset_tracing_level(token)
        assert context.get_tracing_level() is None


class TestPropagation:
    """Tests for carrying the context across tasks, callbacks and threads."""

    @pytest.mark.asyncio
    async def test_tasks_inherit_active_span(self) -> None:
        span = make_span()

        async def child() -> object:
            return context.get_active_span()

        with context.active_span(span):
            task = asyncio.create_task(child())
        assert await task is span

    @pytest.mark.asyncio
    async def test_sibling_tasks_are_isolated(self) -> None:
        first = make_span("first")
        second = make_span("second")

        async def worker(span: object) -> object:
            with context.active_span(span):  # type: ignore[arg-type]
                await asyncio.sleep(0.01)
                return context.get_active_span()

        results = await asyncio.gather(worker(first), worker(second))
        assert results == [first, second]

    def test_bind_context_restores_caller_context(self) -> None:
        captured = make_span("captured")
        caller = make_span("caller")
        with context.active_span(captured):
            bound = context.bind_context(context.get_active_span)
        with context.active_span(caller):
            assert bound() is captured
            assert context.get_active_span() is caller

    @pytest.mark.asyncio
    async def test_bind_context_coroutine(self) -> None:
        span = make_span()

        async def read() -> object:
            return context.get_active_span()

        with context.active_span(span):
            bound = context.bind_context(read)
        assert await bound() is span
        assert context.get_active_span() is None

    @pytest.mark.asyncio
    async def test_run_in_executor_carries_context(self) -> None:
        span = make_span()
        with ThreadPoolExecutor(max_workers=1) as executor, context.active_span(span):
            result = await context.run_in_executor(executor, context.get_active_span)
        assert result is span

    def test_copy_context_to_thread(self) -> None:
        span = make_span()
        seen: list[object] = []
        with context.active_span(span):
            runner = context.copy_context_to_thread(lambda: seen.append(context.get_active_span()))
        thread = threading.Thread(target=runner)
        thread.start()
        thread.join()
        assert seen == [span]

    def test_plain_thread_starts_empty(self) -> None:
        seen: list[object] = []
        with context.active_span(make_span()):
            thread = threading.Thread(target=lambda: seen.append(context.get_active_span()))
            thread.start()
            thread.join()
        assert seen == [None]
