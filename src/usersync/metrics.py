"""
Prometheus metrics over the engine state.

Values are read from :class:`usersync.state.EngineState` at scrape time
by a custom collector registered on a private ``CollectorRegistry``, so
no second set of counters has to be kept in step with the engine.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, Optional

from prometheus_client import CollectorRegistry, generate_latest, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.registry import Collector

from usersync.state import EngineState, ListenerStatus

logger = logging.getLogger("usersync.metrics")


class EngineStateCollector(Collector):
    """Exposes one snapshot of ``EngineState`` per scrape.

    Args:
        state: Engine state to read.
        health: Optional callable returning the coordinator's health dict;
                drives ``user_sync_healthy``.
    """

    def __init__(
        self,
        state: EngineState,
        health: Optional[Callable[[], Dict[str, Any]]] = None,
    ) -> None:
        self._state = state
        self._health = health

    def collect(self) -> Iterator[Any]:
        snap = self._state.snapshot()

        yield CounterMetricFamily(
            "user_sync_synced_total",
            "Users successfully written to the chat store",
            value=snap.total_synced,
        )
        yield CounterMetricFamily(
            "user_sync_errors_total",
            "Sync operations that failed after retries",
            value=snap.total_errors,
        )
        yield GaugeMetricFamily(
            "user_sync_consecutive_failures",
            "Batch passes failed in a row",
            value=snap.consecutive_failures,
        )
        yield GaugeMetricFamily(
            "user_sync_last_success_timestamp_seconds",
            "Unix time of the last successful batch pass (0 if none)",
            value=snap.last_sync_time.timestamp() if snap.last_sync_time else 0,
        )
        yield GaugeMetricFamily(
            "user_sync_last_pass_duration_seconds",
            "Duration of the most recent batch pass",
            value=snap.last_sync_duration or 0,
        )
        yield GaugeMetricFamily(
            "user_sync_realtime_listening",
            "1 while the change feed listener is subscribed",
            value=1 if snap.listener_status == ListenerStatus.LISTENING else 0,
        )
        yield GaugeMetricFamily(
            "user_sync_reconnect_attempts",
            "Current change feed reconnection attempt count",
            value=snap.reconnect_attempts,
        )
        yield GaugeMetricFamily(
            "user_sync_batch_in_progress",
            "1 while a batch pass holds the mutex",
            value=1 if snap.batch_in_progress else 0,
        )
        if self._health is not None:
            try:
                healthy = bool(self._health().get("healthy"))
            except Exception:
                logger.warning("Health evaluation failed during scrape", exc_info=True)
                healthy = False
            yield GaugeMetricFamily(
                "user_sync_healthy",
                "1 when all health checks pass",
                value=1 if healthy else 0,
            )


def build_registry(
    state: EngineState,
    health: Optional[Callable[[], Dict[str, Any]]] = None,
) -> CollectorRegistry:
    """Private registry holding only the engine collector."""
    registry = CollectorRegistry()
    registry.register(EngineStateCollector(state, health))
    return registry


def render_metrics(registry: CollectorRegistry) -> str:
    """Prometheus text exposition of ``registry``."""
    return generate_latest(registry).decode("utf-8")


def start_metrics_server(
    registry: CollectorRegistry,
    port: int,
    host: str = "0.0.0.0",
) -> bool:
    """Serve ``/metrics`` from a background thread.

    Returns:
        ``False`` when disabled (``port <= 0``).
    """
    if port <= 0:
        logger.debug("Metrics server disabled")
        return False
    start_http_server(port, addr=host, registry=registry)
    logger.info("Metrics server listening on %s:%d", host, port)
    return True
