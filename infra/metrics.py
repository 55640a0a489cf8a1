"""Prometheus-backed metrics hooks for the exit monitor loop and dispatcher."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "scalp_"


@dataclass
class TickStats:
    status: str
    positions: int
    exits: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose monitor stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    When disabled every record_* call is a no-op apart from remembering the
    last tick for summaries.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True
        self.last_tick: Optional[TickStats] = None

        if not self._enabled:
            self._tick_summary = None
            self._tick_counter = None
            self._positions_gauge = None
            self._exits_counter = None
            self._execution_failures_counter = None
            self._persistence_failures_counter = None
            self._price_cache_counter = None
            self._missing_price_counter = None
            return

        self._tick_summary = Summary(
            "scalp_tick_duration_seconds",
            "Duration of one monitor tick",
        )
        self._tick_counter = Counter(
            "scalp_ticks_total",
            "Monitor ticks by status",
            labelnames=("status",),
        )
        self._positions_gauge = Gauge(
            "scalp_positions_monitored",
            "Open managed positions seen by the last tick",
        )
        self._exits_counter = Counter(
            "scalp_exits_total",
            "Committed exits by reason and mode",
            labelnames=("reason", "mode"),
        )
        self._execution_failures_counter = Counter(
            "scalp_execution_failures_total",
            "Exits the executor did not confirm",
            labelnames=("reason", "mode"),
        )
        self._persistence_failures_counter = Counter(
            "scalp_persistence_failures_total",
            "Position writes the store did not confirm",
            labelnames=("kind",),
        )
        self._price_cache_counter = Counter(
            "scalp_price_cache_lookups_total",
            "Price cache lookups by result",
            labelnames=("result",),
        )
        self._missing_price_counter = Counter(
            "scalp_positions_skipped_no_price_total",
            "Positions skipped because no source priced the token",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass
        cls._instance = None
        cls._initialized = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            logger.warning("Prometheus exporter could not bind port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def record_tick(self, stats: TickStats) -> None:
        self.last_tick = stats
        if not self._enabled:
            return
        self._tick_summary.observe(stats.duration_seconds)
        self._tick_counter.labels(status=stats.status).inc()
        self._positions_gauge.set(stats.positions)

    def record_exit(self, reason: str, mode: str) -> None:
        if not self._enabled:
            return
        self._exits_counter.labels(reason=reason, mode=mode).inc()

    def record_execution_failure(self, reason: str, mode: str) -> None:
        if not self._enabled:
            return
        self._execution_failures_counter.labels(reason=reason, mode=mode).inc()

    def record_persistence_failure(self, kind: str) -> None:
        if not self._enabled:
            return
        self._persistence_failures_counter.labels(kind=kind).inc()

    def record_price_cache(self, hits: int, misses: int) -> None:
        if not self._enabled:
            return
        if hits:
            self._price_cache_counter.labels(result="hit").inc(hits)
        if misses:
            self._price_cache_counter.labels(result="miss").inc(misses)

    def record_missing_price(self) -> None:
        if not self._enabled:
            return
        self._missing_price_counter.inc()
