"""Per-family span payloads.

A span's ``data`` maps a family key to a payload. Known families get a
typed pydantic model; anything else falls back to a plain ``dict``.
Models allow extra fields so instrumentations can attach family-specific
values that are not modelled here.
"""

from __future__ import annotations

__all__ = [
    "DynamoDbData",
    "FamilyPayload",
    "HttpData",
    "KafkaData",
    "PAYLOAD_TYPES",
    "RedisData",
    "family_key",
    "payload_field",
    "to_payload",
]

from typing import Any, ClassVar

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

logger = structlog.get_logger(__name__)

_HTTP_SPAN_NAMES = frozenset({"node.http.server", "node.http.client"})


class FamilyPayload(BaseModel):
    """Base class for typed family payloads."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    family: ClassVar[str] = ""


class RedisData(FamilyPayload):
    family: ClassVar[str] = "redis"

    operation: str | None = None
    connection: str | None = None
    command: str | None = None
    error: str | None = None


class KafkaData(FamilyPayload):
    """Kafka payload; ``endpoints`` may hold several comma separated topics."""

    family: ClassVar[str] = "kafka"

    operation: str | None = None
    endpoints: str | list[str] | None = None
    service: str | None = None
    error: str | None = None


class DynamoDbData(FamilyPayload):
    family: ClassVar[str] = "dynamodb"

    operation: str | None = None
    table: str | None = None
    region: str | None = None
    endpoints: str | list[str] | None = None
    error: str | None = None


class HttpData(FamilyPayload):
    family: ClassVar[str] = "http"

    method: str | None = None
    url: str | None = None
    status: int | None = None
    host: str | None = None
    path_tpl: str | None = None
    operation: str | None = None
    endpoints: str | list[str] | None = None
    connection: str | None = None
    header: dict[str, str] | None = None
    error: str | None = None


PAYLOAD_TYPES: dict[str, type[FamilyPayload]] = {
    model.family: model for model in (RedisData, KafkaData, DynamoDbData, HttpData)
}


def family_key(span_name: str) -> str:
    """Map a span name to the key its payload is stored under."""
    if span_name in _HTTP_SPAN_NAMES:
        return "http"
    return span_name


def to_payload(key: str, value: FamilyPayload | dict[str, Any]) -> FamilyPayload | dict[str, Any]:
    """Coerce a raw mapping into the typed payload registered for *key*.

    A mapping that does not fit the model is kept as a plain ``dict``.
    """
    if isinstance(value, FamilyPayload):
        return value
    model = PAYLOAD_TYPES.get(key)
    if model is None:
        return dict(value)
    try:
        return model.model_validate(value)
    except ValidationError as exc:
        logger.debug("payload_left_untyped", family=key, errors=exc.error_count())
        return dict(value)


def payload_field(payload: FamilyPayload | dict[str, Any] | None, name: str) -> Any:
    """Read *name* from a typed or untyped payload."""
    if payload is None:
        return None
    if isinstance(payload, dict):
        return payload.get(name)
    return getattr(payload, name, None)
