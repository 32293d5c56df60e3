"""Error taxonomy for the tracing core.

None of these errors is allowed to reach instrumented application code.
Each one is raised inside a component and recovered at that component's
public boundary (logged, then turned into a no-op or a failed result).
"""

from __future__ import annotations

__all__ = [
    "AgentUnreachableError",
    "AlreadyFinishedError",
    "ConnectorError",
    "MalformedConfigError",
    "VigilError",
]


class VigilError(Exception):
    """Base class for all errors raised inside vigil."""


class MalformedConfigError(VigilError):
    """Invalid ignore-endpoints YAML or environment variable syntax."""


class ConnectorError(VigilError):
    """Network or serialization failure while talking to a backend.

    Args:
        message: Human-readable description.
        status_code: HTTP status code when the failure came from a response.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AlreadyFinishedError(VigilError):
    """A span was finished more than once."""

    def __init__(self, span_id: str, name: str) -> None:
        super().__init__(f"Span {span_id} ({name}) has already been finished")
        self.span_id = span_id
        self.name = name


class AgentUnreachableError(VigilError):
    """No agent answered on the host that was tried."""

    def __init__(self, host: str, port: int, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"No agent reachable at {host}:{port}{detail}")
        self.host = host
        self.port = port
