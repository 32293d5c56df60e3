"""Finding, announcing to and watching the host agent.

State machine::

    LOOKING_UP_AGENT_HOST --agent found--> UNANNOUNCED
    UNANNOUNCED --announce accepted--> ANNOUNCED
    ANNOUNCED --agent ready--> AGENT_READY
    ANNOUNCED --too many readiness failures--> LOOKING_UP_AGENT_HOST
    AGENT_READY --health check failed / agent_lost()--> UNANNOUNCED

A single task drives the machine, so at most one request to the agent is
in flight. Every failed step waits with exponential backoff before the
next attempt; the wait is cancelled by :meth:`AgentDiscovery.stop`.
"""

from __future__ import annotations

__all__ = ["AgentDiscovery", "AgentState", "AnnounceResponse"]

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from vigil.agent.default_gateway import parse_route_file
from vigil.config.ignore_endpoints import IgnoreEndpoints, normalize_config
from vigil.config.settings import AgentSettings
from vigil.core.errors import AgentUnreachableError
from vigil.core.identity import ProcessIdentity

logger = structlog.get_logger(__name__)

DISCOVERY_PATH = "/com.instana.plugin.python.discovery"


class AgentState(StrEnum):
    LOOKING_UP_AGENT_HOST = "agentHostLookup"
    UNANNOUNCED = "unannounced"
    ANNOUNCED = "announced"
    AGENT_READY = "agentready"


class AnnounceResponse(BaseModel):
    """The agent's answer to an announce request."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    pid: int | None = None
    agent_uuid: str | None = Field(default=None, alias="agentUuid")
    secrets: dict[str, Any] = Field(default_factory=dict)
    tracing: dict[str, Any] = Field(default_factory=dict)
    extra_headers: list[str] | None = Field(default=None, alias="extraHeaders")
    span_batching: bool = Field(default=False, alias="spanBatchingEnabled")

    @property
    def secrets_matcher(self) -> tuple[str, list[str]] | None:
        matcher = self.secrets.get("matcher")
        keywords = self.secrets.get("list")
        if isinstance(matcher, str) and isinstance(keywords, list):
            return matcher, [k for k in keywords if isinstance(k, str)]
        return None

    @property
    def extra_http_headers(self) -> list[str]:
        # Newer agents send tracing.extra-http-headers, older ones extraHeaders.
        headers = self.tracing.get("extra-http-headers")
        if not isinstance(headers, list):
            headers = self.extra_headers or []
        return [h.lower() for h in headers if isinstance(h, str)]

    @property
    def span_batching_enabled(self) -> bool:
        return self.span_batching or self.tracing.get("span-batching-enabled") is True

    @property
    def ignore_endpoints(self) -> IgnoreEndpoints:
        return normalize_config(self.tracing.get("ignore-endpoints"))


GatewayResolver = Callable[[], str]
AnnounceListener = Callable[[AnnounceResponse], None]


class AgentDiscovery:
    """Drives the agent connection state machine.

    Args:
        settings: Agent host, port, timeouts and backoff bounds.
        identity: The process identity sent with the announce request and
            updated from its response.
        client: Optional pre-built HTTP client (tests use a mock transport).
        gateway_resolver: Returns the default gateway IP; raises
            ``OSError`` or ``ValueError`` when it cannot be determined.
        sleep: Awaitable used for backoff waits.
    """

    def __init__(
        self,
        settings: AgentSettings | None = None,
        identity: ProcessIdentity | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        gateway_resolver: GatewayResolver = parse_route_file,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or AgentSettings()
        self.identity = identity or ProcessIdentity()
        self._client = client or httpx.AsyncClient(timeout=self._settings.request_timeout)
        self._resolve_gateway = gateway_resolver
        self._sleep = sleep

        self._state = AgentState.LOOKING_UP_AGENT_HOST
        self.agent_host: str | None = None
        self.port = self._settings.port
        self.announce_response: AnnounceResponse | None = None

        self._backoff = self._settings.initial_backoff
        self._readiness_failures = 0
        self._announce_listeners: list[AnnounceListener] = []
        self._ready_listeners: list[Callable[[], None]] = []
        self._ready: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    # -- state -------------------------------------------------------------

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == AgentState.AGENT_READY

    @property
    def base_url(self) -> str:
        return f"http://{self.agent_host or self._settings.host}:{self.port}"

    @property
    def ready(self) -> asyncio.Event:
        """Set while the agent is ready."""
        if self._ready is None:
            self._ready = asyncio.Event()
            if self.is_ready:
                self._ready.set()
        return self._ready

    def on_announced(self, listener: AnnounceListener) -> None:
        self._announce_listeners.append(listener)

    def on_ready(self, listener: Callable[[], None]) -> None:
        self._ready_listeners.append(listener)

    def _transition(self, state: AgentState) -> None:
        if state == self._state:
            return
        logger.info("agent_state_transition", from_state=self._state.value, to_state=state.value)
        self._state = state
        self._backoff = self._settings.initial_backoff
        if state != AgentState.AGENT_READY and self._ready is not None:
            self._ready.clear()

    def agent_lost(self) -> None:
        """The agent no longer knows this process; announce again."""
        if self._state in (AgentState.AGENT_READY, AgentState.ANNOUNCED):
            self._transition(AgentState.UNANNOUNCED)

    # -- host lookup -------------------------------------------------------

    async def _try_host(self, host: str) -> None:
        """Check that an agent answers on *host*.

        Raises:
            AgentUnreachableError: If nothing answers, or what answers is
                not an agent.
        """
        try:
            response = await self._client.get(f"http://{host}:{self.port}/")
            body = response.json()
        except httpx.HTTPError as exc:
            raise AgentUnreachableError(host, self.port, str(exc)) from exc
        except ValueError as exc:
            raise AgentUnreachableError(host, self.port, "response is not JSON") from exc
        if not response.is_success or not isinstance(body, dict) or "version" not in body:
            raise AgentUnreachableError(host, self.port, "not an agent")

    async def lookup_agent_host(self) -> bool:
        """Try the configured host, then the default gateway."""
        configured = self._settings.host
        try:
            await self._try_host(configured)
        except AgentUnreachableError as exc:
            logger.debug("agent_host_lookup_failed", host=configured, error=str(exc))
        else:
            return self._found_agent(configured)

        try:
            gateway = self._resolve_gateway()
        except (OSError, ValueError) as exc:
            logger.debug("default_gateway_unknown", error=str(exc))
            return False
        try:
            await self._try_host(gateway)
        except AgentUnreachableError as exc:
            logger.debug("agent_host_lookup_failed", host=gateway, error=str(exc))
            return False
        return self._found_agent(gateway)

    def _found_agent(self, host: str) -> bool:
        logger.info("agent_host_found", host=host, port=self.port)
        self.agent_host = host
        self._transition(AgentState.UNANNOUNCED)
        return True

    # -- announce ----------------------------------------------------------

    async def announce(self) -> bool:
        payload = self.identity.announce_payload()
        try:
            response = await self._client.put(f"{self.base_url}{DISCOVERY_PATH}", json=payload)
        except httpx.HTTPError as exc:
            logger.debug("agent_announce_error", error=str(exc))
            return False
        if not response.is_success:
            logger.debug("agent_announce_rejected", status_code=response.status_code)
            return False
        try:
            announce = AnnounceResponse.model_validate(response.json())
        except ValueError as exc:
            logger.warning("agent_announce_invalid_response", error=str(exc))
            return False

        self.announce_response = announce
        self.identity.update_from_announce(announce.pid, announce.agent_uuid)
        for listener in self._announce_listeners:
            listener(announce)
        logger.info("agent_announced", pid=self.identity.pid, agent_uuid=announce.agent_uuid)
        self._readiness_failures = 0
        self._transition(AgentState.ANNOUNCED)
        return True

    # -- readiness ---------------------------------------------------------

    async def _agent_knows_us(self) -> bool:
        try:
            response = await self._client.head(f"{self.base_url}/com.instana.plugin.python.{self.identity.pid}")
        except httpx.HTTPError as exc:
            logger.debug("agent_readiness_error", error=str(exc))
            return False
        return response.status_code == 200

    async def check_readiness(self) -> bool:
        if await self._agent_knows_us():
            self._transition(AgentState.AGENT_READY)
            self.ready.set()
            for listener in self._ready_listeners:
                listener()
            return True
        self._readiness_failures += 1
        if self._readiness_failures >= self._settings.max_readiness_attempts:
            logger.warning("agent_not_ready", attempts=self._readiness_failures)
            self._readiness_failures = 0
            self._transition(AgentState.LOOKING_UP_AGENT_HOST)
        return False

    async def health_check(self) -> bool:
        if await self._agent_knows_us():
            return True
        logger.info("agent_health_check_failed", host=self.agent_host)
        self._transition(AgentState.UNANNOUNCED)
        return False

    # -- driving -----------------------------------------------------------

    async def step(self) -> bool:
        """Run the action for the current state once."""
        if self._state == AgentState.LOOKING_UP_AGENT_HOST:
            return await self.lookup_agent_host()
        if self._state == AgentState.UNANNOUNCED:
            return await self.announce()
        if self._state == AgentState.ANNOUNCED:
            return await self.check_readiness()
        return await self.health_check()

    async def _wait(self) -> None:
        delay = self._backoff
        self._backoff = min(self._backoff * 2, self._settings.max_backoff)
        await self._sleep(delay)

    async def run(self) -> None:
        while True:
            succeeded = await self.step()
            if self._state == AgentState.AGENT_READY and succeeded:
                await self._sleep(self._settings.health_check_interval)
            elif not succeeded:
                await self._wait()

    async def run_until(self, state: AgentState, *, max_steps: int = 100) -> bool:
        """Step until *state* is reached; backoff waits still apply."""
        for _ in range(max_steps):
            if self._state == state:
                return True
            if not await self.step():
                await self._wait()
        return self._state == state

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def aclose(self) -> None:
        await self.stop()
        await self._client.aclose()
