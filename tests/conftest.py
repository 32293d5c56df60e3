"""Shared test fixtures for vigil tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest
import structlog

from vigil.backend.connector import InMemoryConnector
from vigil.config.settings import TracingSettings
from vigil.core.identity import ProcessIdentity
from vigil.observability.metrics import TracingMetrics
from vigil.tracing.span_buffer import SpanBuffer
from vigil.tracing.tracer import Tracer


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    """Undo logging configuration done by a test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def tracing_settings() -> TracingSettings:
    """Fast cadence so loop-driven tests finish quickly."""
    return TracingSettings(
        transmission_delay_ms=20,
        min_delay_before_sending_spans_ms=20,
        stack_trace_length=0,
    )


@pytest.fixture
def connector() -> InMemoryConnector:
    return InMemoryConnector()


@pytest.fixture
def metrics() -> TracingMetrics:
    return TracingMetrics()


@pytest.fixture
def buffer(connector: InMemoryConnector, tracing_settings: TracingSettings, metrics: TracingMetrics) -> SpanBuffer:
    return SpanBuffer(connector, tracing_settings, metrics=metrics)


@pytest.fixture
def identity() -> ProcessIdentity:
    return ProcessIdentity(pid=4711, agent_uuid="agent-uuid-1", args=["app.py"])


@pytest.fixture
def tracer(buffer: SpanBuffer, tracing_settings: TracingSettings, identity: ProcessIdentity) -> Tracer:
    return Tracer(buffer, tracing_settings, identity=identity)
