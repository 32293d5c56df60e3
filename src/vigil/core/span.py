"""Span data model.

A :class:`Span` is the unit of trace data. Python attribute names are
descriptive; the wire names used by the backend (``t``, ``s``, ``p``,
``k``, ``n``, ``ts``, ``d``, ``ec``, ``b``, ``sy``, ``crtp``, ``crid``,
...) are pydantic aliases and are part of a fixed contract.

Lifecycle::

    open (duration == 0, mutable)
      -> finish()  duration fixed, further mutation is ignored
      -> filter -> buffer -> transmission
"""

from __future__ import annotations

__all__ = [
    "BatchInfo",
    "Span",
    "SpanKind",
    "StackFrame",
    "now_millis",
]

import time
from enum import IntEnum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from vigil.core.errors import AlreadyFinishedError
from vigil.core.span_data import FamilyPayload, family_key, to_payload

logger = structlog.get_logger(__name__)


def now_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SpanKind(IntEnum):
    """Span kinds with their wire values."""

    ENTRY = 1
    EXIT = 2
    INTERMEDIATE = 3


class StackFrame(BaseModel):
    """One stack frame: method, file (``c``) and line number."""

    model_config = ConfigDict(populate_by_name=True)

    method: str = Field(alias="m")
    file: str = Field(alias="c")
    line: int = Field(alias="n")


class BatchInfo(BaseModel):
    """Present only on spans produced by the batching engine."""

    model_config = ConfigDict(populate_by_name=True)

    size: int = Field(default=2, ge=2, alias="s")
    duration: int = Field(default=0, ge=0, alias="d")


class Span(BaseModel):
    """A single recorded unit of traced work."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    trace_id: str = Field(alias="t")
    span_id: str = Field(alias="s")
    parent_span_id: str | None = Field(default=None, alias="p")
    long_trace_id: str | None = Field(default=None, alias="lt")
    kind: SpanKind = Field(alias="k")
    name: str = Field(alias="n")
    timestamp: int = Field(default_factory=now_millis, alias="ts")
    duration: int = Field(default=0, ge=0, alias="d")
    error_count: int = Field(default=0, ge=0, alias="ec")
    stack_trace: list[StackFrame] = Field(default_factory=list, alias="stack")
    data: dict[str, Any] = Field(default_factory=dict)
    synthetic: bool = Field(default=False, alias="sy")
    correlation_type: str | None = Field(default=None, alias="crtp")
    correlation_id: str | None = Field(default=None, alias="crid")
    batch_info: BatchInfo | None = Field(default=None, alias="b")
    from_: dict[str, str] | None = Field(default=None, alias="f")
    trace_parent_used: bool = Field(default=False, alias="tp")
    ancestor: dict[str, str] | None = Field(default=None, alias="ia")
    w3c_trace_context: Any = Field(default=None, exclude=True)

    _finished: bool = PrivateAttr(default=False)
    _transmit_suppressed: bool = PrivateAttr(default=False)

    # -- lifecycle ---------------------------------------------------------

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def transmit_suppressed(self) -> bool:
        return self._transmit_suppressed

    def suppress_transmission(self) -> None:
        """Mark the span as priority 0: it is dropped at finish time."""
        self._transmit_suppressed = True

    def finish(self, end_time: int | None = None) -> Span:
        """Fix the duration and freeze the span.

        Args:
            end_time: Explicit end timestamp in epoch milliseconds.
                Defaults to now.

        Returns:
            self, ready to be handed to the filter and buffer.

        Raises:
            AlreadyFinishedError: If the span was finished before.
        """
        if self._finished:
            raise AlreadyFinishedError(self.span_id, self.name)
        end = now_millis() if end_time is None else end_time
        self.duration = max(0, end - self.timestamp)
        self._finished = True
        return self

    # -- mutation while open -----------------------------------------------

    def _check_open(self, operation: str) -> bool:
        if self._finished:
            logger.debug("span_mutation_after_finish", span_id=self.span_id, operation=operation)
            return False
        return True

    @property
    def family(self) -> str:
        return family_key(self.name)

    def set_payload(self, payload: FamilyPayload | dict[str, Any]) -> None:
        """Store the family payload under this span's family key."""
        if self._check_open("set_payload"):
            key = self.family
            self.data[key] = to_payload(key, payload)

    def payload(self) -> FamilyPayload | dict[str, Any] | None:
        """Return the payload stored under this span's family key."""
        key = self.family
        value = self.data.get(key)
        if isinstance(value, dict):
            value = to_payload(key, value)
            self.data[key] = value
        return value

    def set_data(self, key: str, value: Any) -> None:
        if self._check_open("set_data"):
            self.data[key] = value

    def mark_error(self, message: str | None = None) -> None:
        """Increment the error count and optionally record a message."""
        if not self._check_open("mark_error"):
            return
        self.error_count += 1
        if message:
            payload = self.payload()
            if isinstance(payload, FamilyPayload):
                payload.error = message
            elif isinstance(payload, dict):
                payload["error"] = message
            else:
                self.data[self.family] = to_payload(self.family, {"error": message})

    def set_stack_trace(self, frames: list[StackFrame]) -> None:
        if self._check_open("set_stack_trace"):
            self.stack_trace = list(frames)

    # -- serialization -----------------------------------------------------

    def to_wire(self) -> dict[str, Any]:
        """Serialize using the backend's field names."""
        wire = self.model_dump(by_alias=True, exclude_none=True, exclude={"data"}, mode="json")
        wire["k"] = int(self.kind)
        if not self.synthetic:
            wire.pop("sy", None)
        if not self.trace_parent_used:
            wire.pop("tp", None)
        wire["data"] = {
            key: value.model_dump(exclude_none=True, mode="json")
            if isinstance(value, BaseModel)
            else value
            for key, value in self.data.items()
        }
        return wire
