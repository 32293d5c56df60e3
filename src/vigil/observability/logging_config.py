"""Structured logging configuration for the tracer's own log output.

``configure_vigil_logging`` sets up the structlog processor chain:
timestamping, level, static context, the IDs of the span active when the
event was logged, and JSON or console rendering. A stdlib handler is
configured as well so that library loggers (``httpx``) end up in the
same stream.
"""

from __future__ import annotations

__all__ = [
    "LogFormat",
    "LoggingConfig",
    "configure_vigil_logging",
]

import logging
import sys
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from vigil.config.settings import LogSettings


class LogFormat(StrEnum):
    """Supported log output formats."""

    JSON = "json"
    CONSOLE = "console"


class LoggingConfig(BaseModel):
    """Configuration container for vigil's logging.

    Attributes:
        level: Root log level (e.g. ``"INFO"``).
        format: Output format (:class:`LogFormat`).
        output: ``"stdout"`` or ``"stderr"``.
        library_levels: Per stdlib-logger level overrides, e.g.
            ``{"httpx": "WARNING"}``.
        context: Key-value pairs injected into every log event.
        include_span_context: Add ``trace_id``/``span_id`` of the active
            span to every event.
    """

    level: str = "INFO"
    format: LogFormat = LogFormat.JSON
    output: str = "stderr"
    library_levels: dict[str, str] = Field(default_factory=lambda: {"httpx": "WARNING"})
    context: dict[str, str] = Field(default_factory=dict)
    include_span_context: bool = True

    @classmethod
    def from_settings(cls, settings: LogSettings, **context: str) -> LoggingConfig:
        return cls(level=settings.level.upper(), format=LogFormat(settings.format.lower()), context=dict(context))

    def add_context(self, key: str, value: str) -> LoggingConfig:
        """Add a key-value pair injected into every event. Returns self."""
        self.context[key] = value
        return self


# ---------------------------------------------------------------------------
# structlog processors
# ---------------------------------------------------------------------------


def _add_timestamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict["timestamp"] = datetime.now(tz=UTC).isoformat()
    return event_dict


def _add_log_level(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict["level"] = method_name
    return event_dict


def _make_context_injector(context: dict[str, str]) -> structlog.types.Processor:
    """Return a processor that merges *context* into every event."""

    def _inject_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return _inject_context


def _add_span_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the active span's trace and span ID, if any."""
    # vigil.tracing imports vigil.observability; import on first use.
    from vigil.tracing.context import get_active_span

    span = get_active_span()
    if span is not None:
        event_dict.setdefault("trace_id", span.trace_id)
        event_dict.setdefault("span_id", span.span_id)
    return event_dict


def _build_processor_chain(config: LoggingConfig) -> list[structlog.types.Processor]:
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_timestamp,
        _add_log_level,
    ]
    if config.context:
        processors.append(_make_context_injector(config.context))
    if config.include_span_context:
        processors.append(_add_span_context)
    if config.format == LogFormat.JSON:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    return processors


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def configure_vigil_logging(config: LoggingConfig | None = None) -> LoggingConfig:
    """Configure structlog (and the stdlib fallback) according to *config*.

    Args:
        config: A :class:`LoggingConfig`, or ``None`` for JSON on stderr
            at INFO level.

    Returns:
        The :class:`LoggingConfig` that was applied.
    """
    if config is None:
        config = LoggingConfig()

    root_level = getattr(logging, config.level.upper(), logging.INFO)
    stream = sys.stdout if config.output == "stdout" else sys.stderr

    handler = logging.StreamHandler(stream)
    handler.setLevel(root_level)
    logging.basicConfig(format="%(message)s", handlers=[handler], level=root_level, force=True)
    for name, level in config.library_levels.items():
        logging.getLogger(name).setLevel(getattr(logging, level.upper(), logging.WARNING))

    structlog.configure(
        processors=_build_processor_chain(config),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )
    return config
