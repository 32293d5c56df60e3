"""Tracer self-metrics: how many spans were opened, closed and dropped.

Counters are thread-safe so they can be updated from any thread that
creates or finishes spans. :class:`MetricsTransmitter` periodically takes
the counts (resetting them) and sends them through a backend connector.
"""

from __future__ import annotations

__all__ = [
    "Counter",
    "Gauge",
    "MetricsRegistry",
    "MetricsTransmitter",
    "TracingMetrics",
]

import asyncio
import contextlib
import threading
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from vigil.backend.connector import BackendConnector
    from vigil.core.identity import ProcessIdentity

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Metric types
# ---------------------------------------------------------------------------


class Counter:
    """Monotonically increasing counter that can be drained."""

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._lock = threading.Lock()
        self._value = 0

    def inc(self, value: int = 1) -> None:
        """Increment the counter.

        Raises:
            ValueError: If *value* is negative.
        """
        if value < 0:
            msg = "Counter increment must be non-negative"
            raise ValueError(msg)
        with self._lock:
            self._value += value

    def get(self) -> int:
        with self._lock:
            return self._value

    def take(self) -> int:
        """Return the current value and reset to zero atomically."""
        with self._lock:
            value, self._value = self._value, 0
            return value

    def reset(self) -> None:
        with self._lock:
            self._value = 0


class Gauge:
    """Metric that can go up and down."""

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._lock = threading.Lock()
        self._value = 0

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value

    def inc(self, value: int = 1) -> None:
        with self._lock:
            self._value += value

    def dec(self, value: int = 1) -> None:
        with self._lock:
            self._value -= value

    def get(self) -> int:
        with self._lock:
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0


class MetricsRegistry:
    """Named collection of counters and gauges."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, Counter | Gauge] = {}

    def counter(self, name: str, description: str = "") -> Counter:
        """Register and return a :class:`Counter`.

        An existing counter with the same *name* is returned unchanged.

        Raises:
            TypeError: If *name* is already registered as a gauge.
        """
        return self._register(Counter, name, description)

    def gauge(self, name: str, description: str = "") -> Gauge:
        """Register and return a :class:`Gauge`.

        Raises:
            TypeError: If *name* is already registered as a counter.
        """
        return self._register(Gauge, name, description)

    def _register(self, cls: type, name: str, description: str) -> Any:
        with self._lock:
            existing = self._metrics.get(name)
            if existing is not None:
                if not isinstance(existing, cls):
                    msg = (
                        f"Metric {name!r} already registered as "
                        f"{type(existing).__name__}, cannot register as {cls.__name__}"
                    )
                    raise TypeError(msg)
                return existing
            metric = cls(name, description)
            self._metrics[name] = metric
            return metric

    def get(self, name: str) -> Counter | Gauge | None:
        with self._lock:
            return self._metrics.get(name)

    def snapshot(self) -> dict[str, int]:
        """Current value of every registered metric, keyed by name."""
        with self._lock:
            metrics = list(self._metrics.values())
        return {metric.name: metric.get() for metric in metrics}

    def reset(self) -> None:
        with self._lock:
            for metric in self._metrics.values():
                metric.reset()


# ---------------------------------------------------------------------------
# Tracing metrics
# ---------------------------------------------------------------------------


class TracingMetrics:
    """Counters the tracer maintains about its own span pipeline.

    Example::

        metrics = TracingMetrics()
        metrics.opened.inc()
        metrics.snapshot_and_reset()  # {"opened": 1, "closed": 0, "dropped": 0}
    """

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        self.registry = registry or MetricsRegistry()
        self.opened: Counter = self.registry.counter("opened", "Spans created")
        self.closed: Counter = self.registry.counter("closed", "Spans finished")
        self.dropped: Counter = self.registry.counter(
            "dropped", "Spans discarded by buffer overflow or failed transmission"
        )
        self.buffered: Gauge = self.registry.gauge("buffered", "Spans waiting for transmission")

    def snapshot_and_reset(self) -> dict[str, int]:
        return {
            "opened": self.opened.take(),
            "closed": self.closed.take(),
            "dropped": self.dropped.take(),
        }


class MetricsTransmitter:
    """Sends :class:`TracingMetrics` to the backend on a fixed cadence.

    If the backend answers 404 it does not support tracer metrics; the
    transmitter then stops for the rest of the process lifetime.

    Args:
        metrics: The counters to drain.
        connector: Where to send the payload.
        identity: Supplies the PID reported with every payload.
        transmission_delay_ms: Interval between two transmissions.
    """

    def __init__(
        self,
        metrics: TracingMetrics,
        connector: BackendConnector,
        identity: ProcessIdentity,
        *,
        transmission_delay_ms: int = 1000,
    ) -> None:
        self._metrics = metrics
        self._connector = connector
        self._identity = identity
        self._delay = transmission_delay_ms / 1000.0
        self._task: asyncio.Task[None] | None = None
        self._unsupported = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def payload(self) -> dict[str, Any]:
        return {
            "tracer": "python",
            "pid": self._identity.pid,
            "metrics": self._metrics.snapshot_and_reset(),
        }

    async def transmit_once(self) -> bool:
        """Send one payload. Returns ``False`` once sending is disabled."""
        if self._unsupported:
            return False
        result = await self._connector.send_metrics(self.payload())
        if result.ok:
            return True
        if result.status_code == 404:
            self._unsupported = True
            logger.info("tracing_metrics_unsupported")
            return False
        logger.debug("tracing_metrics_send_failed", error=result.error, status_code=result.status_code)
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._delay)
            if not await self.transmit_once():
                return

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
