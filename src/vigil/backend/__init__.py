"""Connectors that deliver spans and metrics to a backend."""

from vigil.backend.connector import (
    AgentConnector,
    BackendConnector,
    InMemoryConnector,
    SendResult,
    ServerlessConnector,
)

__all__ = [
    "AgentConnector",
    "BackendConnector",
    "InMemoryConnector",
    "SendResult",
    "ServerlessConnector",
]
