"""Dropping finished spans that match ignore-endpoints rules."""

from __future__ import annotations

__all__ = [
    "IGNORABLE_SPAN_NAMES",
    "SpanFilter",
    "apply_filter",
    "should_ignore",
]

from typing import Any

import structlog

from vigil.config.ignore_endpoints import IgnoreEndpoints, IgnoreRule
from vigil.core.span import Span
from vigil.core.span_data import payload_field

logger = structlog.get_logger(__name__)

WILDCARD = "*"

# Only these span families can be filtered. Client-side HTTP spans are
# deliberately excluded.
IGNORABLE_SPAN_NAMES = frozenset({"redis", "dynamodb", "kafka", "node.http.server"})


def _config_key(span_name: str) -> str:
    return "http" if span_name == "node.http.server" else span_name


def _span_endpoints(value: Any) -> list[str]:
    # Batch operations (e.g. Kafka sendBatch) report several comma
    # separated endpoints in a single string.
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    if isinstance(value, (list, tuple)):
        return [str(part) for part in value]
    return []


def _match_methods(payload: Any, methods: list[str]) -> bool:
    if WILDCARD in methods:
        return True
    operation = payload_field(payload, "operation")
    if not isinstance(operation, str):
        return False
    return operation.lower() in {m.lower() for m in methods}


def _match_endpoints(payload: Any, endpoints: list[str]) -> bool:
    span_endpoints = _span_endpoints(payload_field(payload, "endpoints"))
    if not span_endpoints:
        return False
    if WILDCARD in endpoints:
        return True
    allowed = {e.lower() for e in endpoints}
    return all(endpoint.lower() in allowed for endpoint in span_endpoints)


def _match_connections(payload: Any, connections: list[str]) -> bool:
    if WILDCARD in connections:
        return True
    connection = payload_field(payload, "connection")
    return isinstance(connection, str) and connection in connections


def _rule_matches(payload: Any, rule: IgnoreRule) -> bool:
    if not rule.has_criteria:
        return False
    if rule.methods is not None and not _match_methods(payload, rule.methods):
        return False
    if rule.endpoints is not None and not _match_endpoints(payload, rule.endpoints):
        return False
    if rule.connections is not None and not _match_connections(payload, rule.connections):
        return False
    return True


def should_ignore(span: Span, ignore_endpoints: IgnoreEndpoints) -> bool:
    """Return ``True`` if any rule for the span's family matches it.

    A rule matches only when every criterion it defines matches; a rule
    without criteria never matches.
    """
    if span.name not in IGNORABLE_SPAN_NAMES:
        return False
    rules = ignore_endpoints.get(_config_key(span.name))
    if not rules:
        return False
    payload = span.payload()
    return any(_rule_matches(payload, rule) for rule in rules)


def apply_filter(span: Span, ignore_endpoints: IgnoreEndpoints | None) -> Span | None:
    """Return *span*, or ``None`` if it must not be transmitted."""
    if ignore_endpoints and should_ignore(span, ignore_endpoints):
        return None
    return span


class SpanFilter:
    """Holds the process-wide ignore-endpoints configuration.

    Args:
        ignore_endpoints: Locally configured rules (in-code, YAML and
            environment, already merged).
    """

    def __init__(self, ignore_endpoints: IgnoreEndpoints | None = None) -> None:
        self._ignore_endpoints: IgnoreEndpoints = dict(ignore_endpoints or {})
        self.ignored_count = 0

    @property
    def ignore_endpoints(self) -> IgnoreEndpoints:
        return self._ignore_endpoints

    def activate(self, agent_ignore_endpoints: IgnoreEndpoints | None) -> None:
        """Adopt the agent's rules, but only if nothing was configured locally."""
        if self._ignore_endpoints or not agent_ignore_endpoints:
            return
        self._ignore_endpoints = dict(agent_ignore_endpoints)
        logger.info("ignore_endpoints_from_agent", services=sorted(self._ignore_endpoints))

    def apply(self, span: Span) -> Span | None:
        result = apply_filter(span, self._ignore_endpoints)
        if result is None:
            self.ignored_count += 1
            logger.debug("span_ignored", span_name=span.name, span_id=span.span_id)
        return result
