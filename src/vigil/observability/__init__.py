"""Observability for the tracer itself: structured logging and self-metrics."""

from vigil.observability.logging_config import LogFormat, LoggingConfig, configure_vigil_logging
from vigil.observability.metrics import (
    Counter,
    Gauge,
    MetricsRegistry,
    MetricsTransmitter,
    TracingMetrics,
)

__all__ = [
    "Counter",
    "Gauge",
    "LogFormat",
    "LoggingConfig",
    "MetricsRegistry",
    "MetricsTransmitter",
    "TracingMetrics",
    "configure_vigil_logging",
]
