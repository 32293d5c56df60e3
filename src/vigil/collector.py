"""Process-wide wiring of the tracing core.

:class:`Collector` builds every component from one :class:`VigilSettings`
and owns their background tasks::

    collector = Collector(get_settings())
    await collector.start()
    tracer = collector.tracer
    ...
    await collector.stop()

Without ``backend.endpoint_url`` spans go to the host agent found by
discovery; with it they are posted straight to that endpoint.
"""

from __future__ import annotations

__all__ = ["Collector"]

from types import TracebackType

import structlog

from vigil.agent.discovery import AgentDiscovery, AnnounceResponse
from vigil.backend.connector import AgentConnector, BackendConnector, ServerlessConnector
from vigil.config.ignore_endpoints import load_ignore_endpoints
from vigil.config.secrets import SecretsMatcher
from vigil.config.settings import VigilSettings, get_settings
from vigil.core.identity import ProcessIdentity
from vigil.observability.logging_config import LoggingConfig, configure_vigil_logging
from vigil.observability.metrics import MetricsTransmitter, TracingMetrics
from vigil.tracing.batching import SpanBatcher
from vigil.tracing.span_buffer import SpanBuffer
from vigil.tracing.span_filter import SpanFilter
from vigil.tracing.tracer import Tracer

logger = structlog.get_logger(__name__)


class Collector:
    """Owns the tracer, buffer, connector and (optionally) agent discovery.

    Args:
        settings: Root settings; read from the environment when omitted.
        connector: Overrides the connector derived from *settings*.
        discovery: Overrides the agent discovery built from *settings*.
    """

    def __init__(
        self,
        settings: VigilSettings | None = None,
        *,
        connector: BackendConnector | None = None,
        discovery: AgentDiscovery | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        tracing = self.settings.tracing

        self.logging_config: LoggingConfig | None = None
        if self.settings.log.configure:
            context = {"service": self.settings.service_name} if self.settings.service_name else {}
            self.logging_config = configure_vigil_logging(LoggingConfig.from_settings(self.settings.log, **context))

        self.identity = discovery.identity if discovery is not None else ProcessIdentity()
        self.metrics = TracingMetrics()
        self.secrets = SecretsMatcher(self.settings.secrets.matcher_mode, self.settings.secrets.keywords)
        self.span_filter = SpanFilter(load_ignore_endpoints(self.settings))
        self.batcher = SpanBatcher(
            tracing.batchable_span_names,
            enabled=tracing.span_batching_enabled,
            batch_threshold_ms=tracing.batch_threshold_ms,
        )

        self.discovery: AgentDiscovery | None = None
        if connector is None:
            if self.settings.backend.endpoint_url:
                connector = ServerlessConnector(self.settings.backend)
            else:
                self.discovery = discovery or AgentDiscovery(self.settings.agent, self.identity)
                connector = AgentConnector(self.discovery, timeout=self.settings.agent.request_timeout)
        else:
            self.discovery = discovery
        if self.discovery is not None:
            self.discovery.on_announced(self._apply_agent_config)
        self.connector = connector

        self.buffer = SpanBuffer(connector, tracing, batcher=self.batcher, metrics=self.metrics)
        self.tracer = Tracer(
            self.buffer,
            tracing,
            identity=self.identity,
            span_filter=self.span_filter,
            metrics=self.metrics,
            secrets=self.secrets,
            service_name=self.settings.service_name,
        )
        self.metrics_transmitter: MetricsTransmitter | None = None
        if self.settings.metrics.enabled:
            self.metrics_transmitter = MetricsTransmitter(
                self.metrics,
                connector,
                self.identity,
                transmission_delay_ms=self.settings.metrics.transmission_delay_ms,
            )

    def _apply_agent_config(self, announce: AnnounceResponse) -> None:
        """Adopt the configuration the agent sent with its announce response."""
        matcher = announce.secrets_matcher
        if matcher is not None:
            self.secrets.set_matcher(*matcher)
        if announce.extra_http_headers:
            self.tracer.set_extra_http_headers(announce.extra_http_headers)
        self.span_filter.activate(announce.ignore_endpoints)
        if announce.span_batching_enabled:
            self.batcher.enable()
        logger.debug(
            "agent_config_applied",
            secrets_mode=self.secrets.mode,
            span_batching=self.batcher.enabled,
        )

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if not self.settings.tracing.enabled:
            logger.info("tracing_disabled")
            return
        if self.discovery is not None:
            await self.discovery.start()
        await self.buffer.start()
        if self.metrics_transmitter is not None:
            await self.metrics_transmitter.start()
        logger.info("collector_started", connector=type(self.connector).__name__)

    async def stop(self) -> None:
        """Stop background tasks; buffered spans get one last flush."""
        if self.metrics_transmitter is not None:
            await self.metrics_transmitter.stop()
        await self.buffer.stop()
        if self.discovery is not None:
            await self.discovery.stop()
        aclose = getattr(self.connector, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.discovery is not None:
            await self.discovery.aclose()
        logger.info("collector_stopped")

    async def __aenter__(self) -> Collector:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
