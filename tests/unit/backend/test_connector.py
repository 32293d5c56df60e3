"""Tests for backend connectors."""

from __future__ import annotations

import json

import httpx
import pytest

from tests.helpers import Router, make_span, refuse, respond
from vigil.agent.discovery import AgentDiscovery, AgentState
from vigil.backend.connector import (
    AgentConnector,
    BackendConnector,
    InMemoryConnector,
    SendResult,
    ServerlessConnector,
    serialize_spans,
)
from vigil.config.settings import AgentSettings, BackendSettings
from vigil.core.errors import ConnectorError
from vigil.core.identity import ProcessIdentity

AGENT = "127.0.0.1"
TRACES_PATH = "/com.instana.plugin.python/traces.4711"


def ready_discovery(router: Router) -> AgentDiscovery:
    discovery = AgentDiscovery(AgentSettings(), ProcessIdentity(pid=4711), client=router.client())
    discovery.agent_host = AGENT
    discovery._state = AgentState.AGENT_READY
    return discovery


class TestSerialization:
    """Tests for the JSON payload."""

    def test_spans_serialized_as_wire_array(self) -> None:
        span = make_span("redis", duration=3, payload={"operation": "get"})
        body = json.loads(serialize_spans([span]))
        assert body == [span.to_wire()]

    def test_unserializable_data_raises(self) -> None:
        span = make_span("mongo", duration=1)
        span.data["mongo"] = {"client": object()}
        with pytest.raises(ConnectorError):
            serialize_spans([span])

    def test_connectors_satisfy_protocol(self) -> None:
        assert isinstance(InMemoryConnector(), BackendConnector)
        assert isinstance(ServerlessConnector(BackendSettings(endpoint_url="http://backend")), BackendConnector)


class TestAgentConnector:
    """Tests for sending to the host agent."""

    @pytest.mark.asyncio
    async def test_sends_spans(self) -> None:
        router = Router().add("POST", AGENT, TRACES_PATH, respond(204))
        connector = AgentConnector(ready_discovery(router), client=router.client())
        result = await connector.send_spans([make_span(duration=1)])
        assert result == SendResult(ok=True, status_code=204)
        assert router.count("POST", AGENT, TRACES_PATH) == 1

    @pytest.mark.asyncio
    async def test_not_ready_fails_without_request(self) -> None:
        router = Router()
        discovery = AgentDiscovery(AgentSettings(), ProcessIdentity(pid=4711), client=router.client())
        connector = AgentConnector(discovery, client=router.client())
        result = await connector.send_spans([make_span(duration=1)])
        assert not result.ok
        assert router.calls == []

    @pytest.mark.asyncio
    async def test_404_reports_agent_lost(self) -> None:
        router = Router().add("POST", AGENT, TRACES_PATH, respond(404))
        discovery = ready_discovery(router)
        connector = AgentConnector(discovery, client=router.client())
        result = await connector.send_spans([make_span(duration=1)])
        assert result.status_code == 404
        assert discovery.state == AgentState.UNANNOUNCED

    @pytest.mark.asyncio
    async def test_transport_error_is_failed_result(self) -> None:
        router = Router().add("POST", AGENT, TRACES_PATH, refuse())
        connector = AgentConnector(ready_discovery(router), client=router.client())
        result = await connector.send_spans([make_span(duration=1)])
        assert not result.ok
        assert result.status_code is None

    @pytest.mark.asyncio
    async def test_timeout_is_failed_result(self) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        router = Router().add("POST", AGENT, TRACES_PATH, slow)
        connector = AgentConnector(ready_discovery(router), client=router.client())
        result = await connector.send_spans([make_span(duration=1)])
        assert not result.ok
        assert "timeout" in (result.error or "")

    @pytest.mark.asyncio
    async def test_sends_metrics(self) -> None:
        received: list[dict] = []

        def capture(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        router = Router().add("POST", AGENT, "/tracermetrics", capture)
        connector = AgentConnector(ready_discovery(router), client=router.client())
        payload = {"tracer": "python", "pid": 4711, "metrics": {"opened": 1, "closed": 1, "dropped": 0}}
        assert (await connector.send_metrics(payload)).ok
        assert received == [payload]


class TestServerlessConnector:
    """Tests for posting straight to a backend endpoint."""

    def settings(self, **overrides: object) -> BackendSettings:
        return BackendSettings(endpoint_url="https://backend.example.com/serverless/", agent_key="key-1", **overrides)

    def test_requires_endpoint(self) -> None:
        with pytest.raises(ValueError):
            ServerlessConnector(BackendSettings())

    @pytest.mark.asyncio
    async def test_posts_traces_with_agent_key(self) -> None:
        seen: list[httpx.Request] = []

        def capture(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        router = Router().add("POST", "backend.example.com", "/serverless/traces", capture)
        connector = ServerlessConnector(self.settings(), client=router.client())
        assert (await connector.send_spans([make_span(duration=1)])).ok
        assert seen[0].headers["x-instana-key"] == "key-1"
        assert seen[0].headers["x-instana-time"].isdigit()

    @pytest.mark.asyncio
    async def test_posts_metrics(self) -> None:
        router = Router().add("POST", "backend.example.com", "/serverless/metrics", respond(200))
        connector = ServerlessConnector(self.settings(), client=router.client())
        assert (await connector.send_metrics({"pid": 1})).ok

    @pytest.mark.asyncio
    async def test_keeps_trying_by_default(self) -> None:
        router = Router().add("POST", "backend.example.com", "/serverless/traces", respond(503))
        connector = ServerlessConnector(self.settings(), client=router.client())
        for _ in range(5):
            result = await connector.send_spans([make_span(duration=1)])
            assert result.status_code == 503
        assert not connector.disabled
        assert router.count("POST", "backend.example.com", "/serverless/traces") == 5

    @pytest.mark.asyncio
    async def test_stop_on_failure(self) -> None:
        router = Router().add("POST", "backend.example.com", "/serverless/traces", respond(503))
        connector = ServerlessConnector(
            self.settings(stop_on_failure=True, max_consecutive_failures=2), client=router.client()
        )
        for _ in range(3):
            await connector.send_spans([make_span(duration=1)])
        assert connector.disabled
        assert router.count("POST", "backend.example.com", "/serverless/traces") == 2

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self) -> None:
        router = Router().add(
            "POST", "backend.example.com", "/serverless/traces", respond(503), respond(200), respond(503)
        )
        connector = ServerlessConnector(
            self.settings(stop_on_failure=True, max_consecutive_failures=2), client=router.client()
        )
        for _ in range(3):
            await connector.send_spans([make_span(duration=1)])
        assert not connector.disabled


class TestInMemoryConnector:
    """Tests for the recording connector."""

    @pytest.mark.asyncio
    async def test_records_wire_spans(self) -> None:
        connector = InMemoryConnector()
        span = make_span(duration=1)
        await connector.send_spans([span])
        assert connector.spans == [span.to_wire()]
        connector.clear()
        assert connector.spans == []

    @pytest.mark.asyncio
    async def test_simulated_failure(self) -> None:
        connector = InMemoryConnector(fail_with="down", fail_status=503)
        result = await connector.send_spans([make_span(duration=1)])
        assert result == SendResult(ok=False, status_code=503, error="down")
        assert connector.attempts == 1
