"""Task-scoped "current span" context.

The active span lives in :mod:`contextvars`, so every asyncio task sees
the span that was active when the task was created, and each thread has
its own slot. Work handed to an executor must carry the context
explicitly, via :func:`bind_context` or :func:`run_in_executor`.

Besides the active span, the context holds the current entry span, the
W3C trace context to propagate downstream, and the tracing level
(``"0"`` suppresses tracing for the rest of the request).
"""

from __future__ import annotations

__all__ = [
    "active_span",
    "bind_context",
    "copy_context_to_thread",
    "get_active_span",
    "get_entry_span",
    "get_tracing_level",
    "get_w3c_trace_context",
    "reset_tracing_level",
    "run_in_executor",
    "run_with_span",
    "run_with_span_async",
    "set_tracing_level",
    "suppressed",
    "tracing_suppressed",
]

import asyncio
import contextvars
import functools
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from vigil.core.span import Span, SpanKind

if TYPE_CHECKING:
    from concurrent.futures import Executor

    from vigil.tracing.w3c import W3cTraceContext

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])

_active_span: contextvars.ContextVar[Span | None] = contextvars.ContextVar(
    "vigil_active_span", default=None
)
_entry_span: contextvars.ContextVar[Span | None] = contextvars.ContextVar(
    "vigil_entry_span", default=None
)
_w3c_trace_context: contextvars.ContextVar[W3cTraceContext | None] = contextvars.ContextVar(
    "vigil_w3c_trace_context", default=None
)
_tracing_level: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "vigil_tracing_level", default=None
)

_ALL_VARS: tuple[contextvars.ContextVar[Any], ...] = (
    _active_span,
    _entry_span,
    _w3c_trace_context,
    _tracing_level,
)


# ---------------------------------------------------------------------------
# Read access
# ---------------------------------------------------------------------------


def get_active_span() -> Span | None:
    """Return the span active in the current task, or ``None``."""
    return _active_span.get()


def get_entry_span() -> Span | None:
    """Return the entry span of the current request, or ``None``."""
    return _entry_span.get()


def get_w3c_trace_context() -> W3cTraceContext | None:
    return _w3c_trace_context.get()


def get_tracing_level() -> str | None:
    return _tracing_level.get()


def tracing_suppressed() -> bool:
    """Whether an upstream ``X-INSTANA-L: 0`` switched tracing off."""
    level = _tracing_level.get()
    return isinstance(level, str) and level.startswith("0")


# ---------------------------------------------------------------------------
# Scoped activation
# ---------------------------------------------------------------------------


def _activate(span: Span | None) -> list[tuple[contextvars.ContextVar[Any], contextvars.Token[Any]]]:
    tokens: list[tuple[contextvars.ContextVar[Any], contextvars.Token[Any]]] = [
        (_active_span, _active_span.set(span))
    ]
    if span is not None:
        if span.kind == SpanKind.ENTRY:
            tokens.append((_entry_span, _entry_span.set(span)))
        if span.w3c_trace_context is not None:
            tokens.append((_w3c_trace_context, _w3c_trace_context.set(span.w3c_trace_context)))
    return tokens


def _restore(tokens: list[tuple[contextvars.ContextVar[Any], contextvars.Token[Any]]]) -> None:
    for var, token in reversed(tokens):
        var.reset(token)


@contextmanager
def active_span(span: Span | None) -> Iterator[Span | None]:
    """Make *span* the active span for the duration of the ``with`` block.

    The previous span is restored on exit, also when the block raises.

    Example::

        with active_span(span):
            call_downstream()
    """
    tokens = _activate(span)
    try:
        yield span
    finally:
        _restore(tokens)


def run_with_span(span: Span | None, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call ``fn(*args, **kwargs)`` with *span* active."""
    with active_span(span):
        return fn(*args, **kwargs)


async def run_with_span_async(
    span: Span | None,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)`` with *span* active."""
    with active_span(span):
        return await fn(*args, **kwargs)


@contextmanager
def suppressed() -> Iterator[None]:
    """Switch tracing off for the ``with`` block (tracing level ``"0"``)."""
    token = _tracing_level.set("0")
    try:
        yield
    finally:
        _tracing_level.reset(token)


def set_tracing_level(level: str | None) -> contextvars.Token[str | None]:
    """Set the tracing level for the current task; returns a reset token."""
    return _tracing_level.set(level)


def reset_tracing_level(token: contextvars.Token[str | None]) -> None:
    _tracing_level.reset(token)


# ---------------------------------------------------------------------------
# Binding callbacks to the context active at creation time
# ---------------------------------------------------------------------------


def _snapshot() -> list[tuple[contextvars.ContextVar[Any], Any]]:
    return [(var, var.get()) for var in _ALL_VARS]


def _apply(snapshot: list[tuple[contextvars.ContextVar[Any], Any]]) -> list[
    tuple[contextvars.ContextVar[Any], contextvars.Token[Any]]
]:
    return [(var, var.set(value)) for var, value in snapshot]


def bind_context(fn: F) -> F:
    """Bind *fn* to the tracing context that is active right now.

    When the returned wrapper is called later (from a timer, a socket
    callback, another thread), the captured span is active while *fn*
    runs and the caller's context is restored afterwards. Coroutine
    functions get an async wrapper that applies the context inside the
    awaiting task.
    """
    snapshot = _snapshot()

    if asyncio.iscoroutinefunction(fn):

        @functools.wraps(fn)
        async def async_bound(*args: Any, **kwargs: Any) -> Any:
            tokens = _apply(snapshot)
            try:
                return await fn(*args, **kwargs)
            finally:
                _restore(tokens)

        return async_bound  # type: ignore[return-value]

    @functools.wraps(fn)
    def bound(*args: Any, **kwargs: Any) -> Any:
        tokens = _apply(snapshot)
        try:
            return fn(*args, **kwargs)
        finally:
            _restore(tokens)

    return bound  # type: ignore[return-value]


async def run_in_executor(
    executor: Executor | None,
    fn: Callable[..., T],
    *args: Any,
) -> T:
    """Run *fn* in *executor* with a copy of the current context."""
    loop = asyncio.get_running_loop()
    ctx = contextvars.copy_context()
    return await loop.run_in_executor(executor, functools.partial(ctx.run, fn, *args))


def copy_context_to_thread(fn: Callable[..., T]) -> Callable[..., T]:
    """Return a callable that runs *fn* in a copy of the current context.

    Use it when handing work to a raw :class:`threading.Thread` or an
    executor that is not driven through :func:`run_in_executor`.
    """
    ctx = contextvars.copy_context()

    @functools.wraps(fn)
    def runner(*args: Any, **kwargs: Any) -> T:
        return ctx.run(fn, *args, **kwargs)

    return runner
