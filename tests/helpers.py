"""Test helpers: span factories and HTTP fakes."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx

from vigil.core.ids import generate_span_id, generate_trace_id
from vigil.core.span import Span, SpanKind

TRACE_ID = "0123456789abcdef"
PARENT_ID = "fedcba9876543210"


def make_span(
    name: str = "redis",
    *,
    kind: SpanKind = SpanKind.EXIT,
    trace_id: str | None = TRACE_ID,
    parent_span_id: str | None = PARENT_ID,
    timestamp: int = 1_700_000_000_000,
    duration: int | None = None,
    error_count: int = 0,
    payload: dict[str, Any] | None = None,
) -> Span:
    """Build a span; with *duration* set it is returned finished."""
    span = Span(
        trace_id=trace_id or generate_trace_id(),
        span_id=generate_span_id(),
        parent_span_id=parent_span_id,
        kind=kind,
        name=name,
        timestamp=timestamp,
        error_count=error_count,
    )
    if payload is not None:
        span.set_payload(payload)
    if duration is not None:
        span.finish(timestamp + duration)
    return span


Handler = Callable[[httpx.Request], httpx.Response]


class Router:
    """Routes mock transport requests by ``(method, host, path)``.

    A route holds a queue of responders; the last one is reused once the
    others are used up. Responders may raise ``httpx`` errors.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str, str], list[Handler]] = {}
        self.calls: list[tuple[str, str, str]] = []

    def add(self, method: str, host: str, path: str, *handlers: Handler) -> Router:
        self.routes.setdefault((method, host, path), []).extend(handlers)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.host, request.url.path)
        self.calls.append(key)
        handlers = self.routes.get(key)
        if not handlers:
            raise httpx.ConnectError(f"connect ECONNREFUSED {request.url.host}", request=request)
        handler = handlers.pop(0) if len(handlers) > 1 else handlers[0]
        return handler(request)

    def count(self, method: str, host: str, path: str) -> int:
        return self.calls.count((method, host, path))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def respond(status: int = 200, body: Any = None) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, content=json.dumps(body).encode(), headers={"Content-Type": "application/json"})

    return handler


def refuse() -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"connect ECONNREFUSED {request.url.host}", request=request)

    return handler
