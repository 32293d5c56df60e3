"""Core vigil data model: spans, payloads, IDs, identity and errors."""

from vigil.core.errors import (
    AgentUnreachableError,
    AlreadyFinishedError,
    ConnectorError,
    MalformedConfigError,
    VigilError,
)
from vigil.core.identity import ProcessIdentity
from vigil.core.span import BatchInfo, Span, SpanKind, StackFrame
from vigil.core.span_data import DynamoDbData, HttpData, KafkaData, RedisData

__all__ = [
    "AgentUnreachableError",
    "AlreadyFinishedError",
    "BatchInfo",
    "ConnectorError",
    "DynamoDbData",
    "HttpData",
    "KafkaData",
    "MalformedConfigError",
    "ProcessIdentity",
    "RedisData",
    "Span",
    "SpanKind",
    "StackFrame",
    "VigilError",
]
