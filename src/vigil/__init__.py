"""Vigil: application performance monitoring tracing core."""

from vigil.collector import Collector
from vigil.config.settings import VigilSettings, get_settings
from vigil.core.span import Span, SpanKind
from vigil.tracing.context import active_span, bind_context, get_active_span, run_with_span
from vigil.tracing.tracer import Tracer

__all__ = [
    "Collector",
    "Span",
    "SpanKind",
    "Tracer",
    "VigilSettings",
    "active_span",
    "bind_context",
    "get_active_span",
    "get_settings",
    "run_with_span",
]

__version__ = "0.1.0"
