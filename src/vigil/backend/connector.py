"""Delivering span batches and metrics to a backend.

Three connectors share the :class:`BackendConnector` protocol:

- :class:`AgentConnector` talks to the host agent found by discovery.
- :class:`ServerlessConnector` posts straight to a backend endpoint with
  an agent key, for deployments without a host agent.
- :class:`InMemoryConnector` keeps everything in memory (tests, local
  debugging).

Connectors never raise: every failure, including a timeout, comes back
as a failed :class:`SendResult`.
"""

from __future__ import annotations

__all__ = [
    "AgentConnector",
    "BackendConnector",
    "InMemoryConnector",
    "SendResult",
    "ServerlessConnector",
    "serialize_spans",
]

import json
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel

from vigil.config.settings import BackendSettings
from vigil.core.errors import ConnectorError

if TYPE_CHECKING:
    from vigil.agent.discovery import AgentDiscovery
    from vigil.core.span import Span

logger = structlog.get_logger(__name__)

_JSON_HEADERS = {"Content-Type": "application/json; charset=UTF-8"}


class SendResult(BaseModel):
    """Outcome of a single send."""

    ok: bool
    status_code: int | None = None
    error: str | None = None

    @classmethod
    def success(cls, status_code: int | None = None) -> SendResult:
        return cls(ok=True, status_code=status_code)

    @classmethod
    def failure(cls, error: ConnectorError | str) -> SendResult:
        if isinstance(error, ConnectorError):
            return cls(ok=False, status_code=error.status_code, error=str(error))
        return cls(ok=False, error=error)


@runtime_checkable
class BackendConnector(Protocol):
    """Protocol that all connectors must satisfy."""

    async def send_spans(self, spans: Sequence[Span]) -> SendResult:
        """Transmit a batch of finished spans."""
        ...

    async def send_metrics(self, payload: dict[str, Any]) -> SendResult:
        """Transmit a metrics payload."""
        ...


def serialize_spans(spans: Sequence[Span]) -> bytes:
    """Serialize spans into the backend's JSON array format.

    Raises:
        ConnectorError: If a span holds data that is not JSON serializable.
    """
    try:
        return json.dumps([span.to_wire() for span in spans], separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise ConnectorError(f"cannot serialize spans: {exc}") from exc


def _serialize_payload(payload: dict[str, Any]) -> bytes:
    try:
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise ConnectorError(f"cannot serialize payload: {exc}") from exc


async def _post(client: httpx.AsyncClient, url: str, body: bytes, headers: dict[str, str]) -> int:
    """POST *body*; return the status code of a 2xx response.

    Raises:
        ConnectorError: On transport errors, timeouts and non-2xx status.
    """
    try:
        response = await client.post(url, content=body, headers=headers)
    except httpx.TimeoutException as exc:
        raise ConnectorError(f"timeout posting to {url}") from exc
    except httpx.HTTPError as exc:
        raise ConnectorError(f"error posting to {url}: {exc}") from exc
    if not response.is_success:
        raise ConnectorError(f"{url} answered {response.status_code}", status_code=response.status_code)
    return response.status_code


# ---------------------------------------------------------------------------
# Host agent
# ---------------------------------------------------------------------------


class AgentConnector:
    """Sends to the host agent once discovery reports it ready.

    A 404 on span transmission means the agent no longer knows this
    process; ``on_agent_lost`` is called so discovery can announce again.

    Args:
        discovery: Supplies the agent address, the process identity and
            the readiness flag.
        timeout: Hard timeout per request in seconds.
        client: Optional pre-built client (tests use a mock transport).
        on_agent_lost: Called on 404; defaults to ``discovery.agent_lost``.
    """

    def __init__(
        self,
        discovery: AgentDiscovery,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
        on_agent_lost: Callable[[], None] | None = None,
    ) -> None:
        self._discovery = discovery
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._on_agent_lost = on_agent_lost or discovery.agent_lost

    def _url(self, path: str) -> str:
        return f"{self._discovery.base_url}{path}"

    async def send_spans(self, spans: Sequence[Span]) -> SendResult:
        if not self._discovery.is_ready:
            return SendResult.failure("agent not ready")
        pid = self._discovery.identity.pid
        try:
            status = await _post(
                self._client,
                self._url(f"/com.instana.plugin.python/traces.{pid}"),
                serialize_spans(spans),
                _JSON_HEADERS,
            )
        except ConnectorError as exc:
            if exc.status_code == 404:
                logger.info("agent_lost_announcement", pid=pid)
                self._on_agent_lost()
            return SendResult.failure(exc)
        return SendResult.success(status)

    async def send_metrics(self, payload: dict[str, Any]) -> SendResult:
        if not self._discovery.is_ready:
            return SendResult.failure("agent not ready")
        try:
            status = await _post(self._client, self._url("/tracermetrics"), _serialize_payload(payload), _JSON_HEADERS)
        except ConnectorError as exc:
            return SendResult.failure(exc)
        return SendResult.success(status)

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Direct to backend
# ---------------------------------------------------------------------------


class ServerlessConnector:
    """Posts to ``{endpoint_url}/traces`` and ``{endpoint_url}/metrics``.

    With ``stop_on_failure`` the connector switches itself off after
    ``max_consecutive_failures`` failed sends in a row, for targets where
    the backend going away is permanent. Otherwise every cycle tries again.
    """

    def __init__(self, settings: BackendSettings, *, client: httpx.AsyncClient | None = None) -> None:
        if not settings.endpoint_url:
            msg = "ServerlessConnector requires backend.endpoint_url"
            raise ValueError(msg)
        self._settings = settings
        self._base_url = settings.endpoint_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=settings.timeout)
        self._consecutive_failures = 0
        self._disabled = False

    @property
    def disabled(self) -> bool:
        return self._disabled

    def _headers(self) -> dict[str, str]:
        headers = dict(_JSON_HEADERS)
        headers["x-instana-time"] = str(int(time.time() * 1000))
        if self._settings.agent_key:
            headers["x-instana-key"] = self._settings.agent_key
        return headers

    async def _send(self, path: str, body: Callable[[], bytes]) -> SendResult:
        if self._disabled:
            return SendResult.failure("connector disabled after repeated failures")
        try:
            status = await _post(self._client, f"{self._base_url}{path}", body(), self._headers())
        except ConnectorError as exc:
            self._record_failure(exc)
            return SendResult.failure(exc)
        self._consecutive_failures = 0
        return SendResult.success(status)

    def _record_failure(self, exc: ConnectorError) -> None:
        self._consecutive_failures += 1
        logger.warning(
            "backend_send_failed",
            error=str(exc),
            status_code=exc.status_code,
            consecutive_failures=self._consecutive_failures,
        )
        if self._settings.stop_on_failure and self._consecutive_failures >= self._settings.max_consecutive_failures:
            self._disabled = True
            logger.warning("backend_connector_disabled", failures=self._consecutive_failures)

    async def send_spans(self, spans: Sequence[Span]) -> SendResult:
        return await self._send("/traces", lambda: serialize_spans(spans))

    async def send_metrics(self, payload: dict[str, Any]) -> SendResult:
        return await self._send("/metrics", lambda: _serialize_payload(payload))

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# In memory
# ---------------------------------------------------------------------------


class InMemoryConnector:
    """Test-friendly connector that records everything it is asked to send.

    Example::

        connector = InMemoryConnector()
        buffer = SpanBuffer(connector)
        ...
        assert connector.spans[0]["n"] == "node.http.server"

    Args:
        fail_with: When set, every send fails with this error message.
        fail_status: Status code reported with a simulated failure.
    """

    def __init__(self, *, fail_with: str | None = None, fail_status: int | None = None) -> None:
        self.batches: list[list[dict[str, Any]]] = []
        self.metrics: list[dict[str, Any]] = []
        self.fail_with = fail_with
        self.fail_status = fail_status
        self.attempts = 0

    @property
    def spans(self) -> list[dict[str, Any]]:
        """All transmitted spans in wire format, in send order."""
        return [span for batch in self.batches for span in batch]

    def _failure(self) -> SendResult | None:
        if self.fail_with is None:
            return None
        return SendResult.failure(ConnectorError(self.fail_with, status_code=self.fail_status))

    async def send_spans(self, spans: Sequence[Span]) -> SendResult:
        self.attempts += 1
        failure = self._failure()
        if failure is not None:
            return failure
        try:
            wire = json.loads(serialize_spans(spans))
        except ConnectorError as exc:
            return SendResult.failure(exc)
        self.batches.append(wire)
        return SendResult.success()

    async def send_metrics(self, payload: dict[str, Any]) -> SendResult:
        failure = self._failure()
        if failure is not None:
            return failure
        self.metrics.append(payload)
        return SendResult.success()

    def clear(self) -> None:
        self.batches.clear()
        self.metrics.clear()
        self.attempts = 0
