"""
Scalp Monitor - Main Loop

Time-boxed polling loop that evaluates every open managed position:
1. List managed open positions from the store
2. Batch-fetch token prices (cached) and the quote-asset price once
3. Decide per position (stop-loss, take-profit, ladders, dump protection)
4. Dispatch exits to the simulated or real executor
5. Sleep adaptively; stop before the run budget is exhausted

Designed for a host that kills the process at a hard ceiling (60s): the
default budget is 50s with 5s of headroom, so no tick is cut off mid-way.
"""

import json
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from core.audit_log import AuditLogger
from core.exceptions import ConfigurationError, PersistenceFailure, PriceSourceExhausted
from core.execution import ExecutionDispatcher, ExecutionResult, RealExecutor, SimulatedExecutor
from core.position import ExitDefaults, NoAction
from core.position_manager import PositionManager
from core.price_oracle import PriceCache, PriceOracle
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder, TickStats
from infra.price_sources import (
    BatchPriceSource,
    BatchQuoteAssetSource,
    CoinGeckoQuoteAssetSource,
    SingleTokenPriceSource,
)
from infra.state_store import create_position_store_from_config
from infra.trade_executor import TradeExecutorClient

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

COUNTER_NAMES = (
    "positions_evaluated",
    "exits_executed",
    "execution_failures",
    "persistence_failures",
    "skipped_no_price",
    "peak_updates",
    "list_failures",
    "quote_price_failures",
    "errors",
)


def compute_sleep(interval: float, tick_duration: float, floor: float) -> float:
    """Time left in the interval after a tick, never below `floor`."""
    return max(interval - tick_duration, floor)


def has_budget_for_next_tick(elapsed: float, interval: float, headroom: float, budget: float) -> bool:
    """False once another interval plus headroom would overrun the budget."""
    return elapsed + interval + headroom <= budget


@dataclass
class MonitorSettings:
    poll_interval_seconds: float = 5.0
    max_runtime_seconds: float = 50.0
    headroom_seconds: float = 5.0
    min_sleep_seconds: float = 1.0
    stop_when_idle: bool = False


@dataclass
class PriceSeries:
    first: float
    low: float
    high: float
    count: int = 1

    def add(self, price: float) -> None:
        self.low = min(self.low, price)
        self.high = max(self.high, price)
        self.count += 1

    def to_dict(self) -> Dict[str, Optional[float]]:
        volatility = None
        if self.count >= 2 and self.first > 0:
            volatility = round((self.high - self.low) / self.first * 100.0, 4)
        return {
            "samples": self.count,
            "min": self.low,
            "max": self.high,
            "volatility_pct": volatility,
        }


class PriceSampleTracker:
    """Per-token price statistics across the ticks of one run"""

    def __init__(self):
        self._series: Dict[str, PriceSeries] = {}

    def record(self, prices: Dict[str, float]) -> None:
        for token_id, price in prices.items():
            series = self._series.get(token_id)
            if series is None:
                self._series[token_id] = PriceSeries(first=price, low=price, high=price)
            else:
                series.add(price)

    def summary(self) -> Dict[str, Dict[str, Optional[float]]]:
        return {token_id: series.to_dict() for token_id, series in self._series.items()}


@dataclass
class RunSummary:
    tick_count: int
    elapsed_ms: int
    executed: List[ExecutionResult] = field(default_factory=list)
    price_samples: Dict[str, Dict[str, Optional[float]]] = field(default_factory=dict)
    counters: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "tickCount": self.tick_count,
            "elapsedMs": self.elapsed_ms,
            "executed": [result.to_dict() for result in self.executed],
            "priceSamples": self.price_samples,
            "counters": dict(self.counters),
        }


class ExitMonitor:
    """
    Bounded polling loop over the exit engine.

    Clock and sleep are injected so tests can drive time deterministically;
    the price cache inside `oracle` should share the same clock.
    """

    def __init__(self,
                 store,
                 oracle: PriceOracle,
                 manager: PositionManager,
                 dispatcher: ExecutionDispatcher,
                 settings: Optional[MonitorSettings] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 audit_logger: Optional[AuditLogger] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.oracle = oracle
        self.manager = manager
        self.dispatcher = dispatcher
        self.settings = settings or MonitorSettings()
        self.metrics = metrics
        self.audit_logger = audit_logger
        self._clock = clock
        self._sleep = sleep
        self._running = True
        self._run_started: Optional[float] = None
        self._reset_run_state()

    def _reset_run_state(self) -> None:
        self.executed: List[ExecutionResult] = []
        self.counters: Dict[str, int] = {name: 0 for name in COUNTER_NAMES}
        self.samples = PriceSampleTracker()

    def install_signal_handlers(self) -> Dict[int, object]:
        """
        Stop after the in-flight tick on SIGINT/SIGTERM (main thread only).

        Returns:
            The previous handlers, for restore_signal_handlers()
        """
        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, self._handle_stop)
        return previous

    @staticmethod
    def restore_signal_handlers(previous: Dict[int, object]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _handle_stop(self, signum, _frame) -> None:
        logger.warning(f"Received signal {signum}, stopping after current tick")
        self.request_stop()

    def request_stop(self) -> None:
        self._running = False

    def tick(self) -> Optional[int]:
        """
        Run one evaluation pass.

        Returns:
            Number of open positions seen, or None if the store listing failed
        """
        try:
            positions = self.store.list_managed_open_positions()
        except PersistenceFailure as e:
            logger.error(f"Failed to list open positions: {e.reason}")
            self.counters["list_failures"] += 1
            return None

        if not positions:
            logger.debug("No open managed positions")
            return 0

        prices = self.oracle.get_prices(p.token_id for p in positions)
        self.samples.record(prices)

        quote_price = None
        if any(not p.is_test for p in positions):
            try:
                quote_price = self.oracle.get_quote_asset_price()
            except PriceSourceExhausted as e:
                logger.warning(f"{e}; real exits this tick fall back to estimated PnL")
                self.counters["quote_price_failures"] += 1

        for position in positions:
            price = prices.get(position.token_id)
            if price is None:
                logger.debug(f"No price for {position.label} ({position.token_id}), skipping")
                self.counters["skipped_no_price"] += 1
                if self.metrics is not None:
                    self.metrics.record_missing_price()
                continue

            try:
                self._process(position, price, quote_price)
            except Exception as e:
                logger.exception(f"Unexpected error processing position {position.id}: {e}")
                self.counters["errors"] += 1

        return len(positions)

    def _process(self, position, price: float, quote_price: Optional[float]) -> None:
        prepared, decision = self.manager.evaluate(position, price)
        self.counters["positions_evaluated"] += 1

        if isinstance(decision, NoAction) and decision.peak is not None:
            self.counters["peak_updates"] += 1

        result = self.dispatcher.execute(prepared, decision, price, quote_price, self._time_left())
        if result is None:
            return
        if result.success and result.persisted:
            self.executed.append(result)
            self.counters["exits_executed"] += 1
        elif result.success:
            self.counters["persistence_failures"] += 1
        else:
            self.counters["execution_failures"] += 1

    def _time_left(self) -> Optional[float]:
        """Seconds of run budget left, or None outside run()."""
        if self._run_started is None:
            return None
        return max(self.settings.max_runtime_seconds - (self._clock() - self._run_started), 0.0)

    def run(self, single_pass: bool = False) -> RunSummary:
        """
        Tick until the budget, a stop signal or (optionally) idleness ends the run.

        Args:
            single_pass: Run exactly one tick

        Returns:
            RunSummary for this run
        """
        cfg = self.settings
        self._reset_run_state()
        self._running = True
        started = self._clock()
        self._run_started = started
        tick_count = 0

        logger.info(
            f"Starting exit monitor (interval={cfg.poll_interval_seconds}s, "
            f"budget={cfg.max_runtime_seconds}s, headroom={cfg.headroom_seconds}s, "
            f"single_pass={single_pass})"
        )

        while self._running:
            tick_started = self._clock()
            exits_before = len(self.executed)
            seen = self.tick()
            tick_duration = self._clock() - tick_started
            tick_count += 1

            status = "list_failed" if seen is None else ("idle" if seen == 0 else "ok")
            if self.metrics is not None:
                self.metrics.record_tick(TickStats(
                    status=status,
                    positions=seen or 0,
                    exits=len(self.executed) - exits_before,
                    duration_seconds=tick_duration,
                ))
            logger.debug(f"Tick {tick_count} ({status}) took {tick_duration * 1000:.0f}ms")

            if single_pass or not self._running:
                break
            if seen == 0 and cfg.stop_when_idle:
                logger.info("No open positions, stopping early")
                break

            elapsed = self._clock() - started
            if not has_budget_for_next_tick(elapsed, cfg.poll_interval_seconds,
                                            cfg.headroom_seconds, cfg.max_runtime_seconds):
                logger.info(f"Run budget reached after {elapsed:.1f}s, stopping")
                break

            if seen is None:
                sleep_for = cfg.poll_interval_seconds
            else:
                sleep_for = compute_sleep(cfg.poll_interval_seconds, tick_duration, cfg.min_sleep_seconds)
            self._sleep(sleep_for)

        summary = RunSummary(
            tick_count=tick_count,
            elapsed_ms=int(round((self._clock() - started) * 1000)),
            executed=list(self.executed),
            price_samples=self.samples.summary(),
            counters=dict(self.counters),
        )
        logger.info(
            f"Exit monitor finished: {summary.tick_count} tick(s), {len(summary.executed)} exit(s), "
            f"{summary.elapsed_ms}ms"
        )
        if self.audit_logger is not None:
            self.audit_logger.log_run({
                "tick_count": summary.tick_count,
                "elapsed_ms": summary.elapsed_ms,
                "exits": len(summary.executed),
                "counters": summary.counters,
            })
        return summary


def build_monitor_from_config(config,
                              clock: Callable[[], float] = time.monotonic,
                              sleep: Callable[[float], None] = time.sleep) -> ExitMonitor:
    """Wire an ExitMonitor from a validated AppConfigSchema."""
    metrics = MetricsRecorder(enabled=config.metrics.enabled, port=config.metrics.port)

    prices_cfg = config.prices
    primary = BatchPriceSource(
        url=prices_cfg.primary_url,
        api_key_env=prices_cfg.primary_api_key_env,
        batch_size=prices_cfg.batch_size,
        timeout=prices_cfg.timeout_seconds,
    )
    secondary = None
    if prices_cfg.secondary_enabled:
        secondary = SingleTokenPriceSource(url=prices_cfg.secondary_url, timeout=prices_cfg.timeout_seconds)
    quote_sources = [BatchQuoteAssetSource(primary, asset_id=prices_cfg.quote_asset_id)]
    if prices_cfg.coingecko_enabled:
        quote_sources.append(CoinGeckoQuoteAssetSource(
            coin_id=prices_cfg.coingecko_id,
            url=prices_cfg.coingecko_url,
            api_key_env=prices_cfg.coingecko_api_key_env,
            timeout=prices_cfg.timeout_seconds,
        ))
    oracle = PriceOracle(
        primary=primary,
        secondary=secondary,
        quote_sources=quote_sources,
        cache=PriceCache(ttl_seconds=config.monitor.price_cache_ttl_seconds, clock=clock),
        metrics=metrics,
    )

    exits_cfg = config.exits
    manager = PositionManager(ExitDefaults(
        take_profit_pct=exits_cfg.take_profit_pct,
        stop_loss_pct=exits_cfg.stop_loss_pct,
        moon_bag_pct=exits_cfg.moon_bag_pct,
        slippage_bps=exits_cfg.slippage_bps,
        priority_fee_mode=exits_cfg.priority_fee_mode,
    ))

    exec_cfg = config.execution
    client = TradeExecutorClient(
        url=exec_cfg.url,
        api_key_env=exec_cfg.api_key_env,
        timeout=exec_cfg.timeout_seconds,
        max_retries=exec_cfg.max_retries,
        quote_decimals=exec_cfg.quote_decimals,
    )
    audit_logger = AuditLogger(config.audit.file) if config.audit.enabled else None
    store = create_position_store_from_config(config.state.model_dump())
    dispatcher = ExecutionDispatcher(
        store=store,
        simulated=SimulatedExecutor(),
        real=RealExecutor(client),
        notifier=AlertService.from_config(config.alerts.model_dump()),
        audit_logger=audit_logger,
        metrics=metrics,
    )

    monitor_cfg = config.monitor
    settings = MonitorSettings(
        poll_interval_seconds=monitor_cfg.poll_interval_seconds,
        max_runtime_seconds=monitor_cfg.max_runtime_seconds,
        headroom_seconds=monitor_cfg.headroom_seconds,
        min_sleep_seconds=monitor_cfg.min_sleep_seconds,
        stop_when_idle=monitor_cfg.stop_when_idle,
    )
    return ExitMonitor(
        store=store,
        oracle=oracle,
        manager=manager,
        dispatcher=dispatcher,
        settings=settings,
        metrics=metrics,
        audit_logger=audit_logger,
        clock=clock,
        sleep=sleep,
    )


def run_monitor(config_dir: str = "config", single_pass: bool = False) -> RunSummary:
    """
    Load configuration and run the monitor once to completion.

    Raises:
        ConfigurationError: app.yaml failed validation
    """
    from tools.config_validator import load_app_config

    config = load_app_config(config_dir)
    monitor = build_monitor_from_config(config)
    return monitor.run(single_pass=single_pass)


def configure_logging(log_cfg) -> None:
    log_path = Path(log_cfg.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, log_cfg.level.upper()),
        format=LOG_FORMAT,
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    from infra.instance_lock import check_single_instance
    from tools.config_validator import load_app_config

    parser = argparse.ArgumentParser(description="Scalp position exit monitor")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--no-lock", action="store_true", help="Skip the single-instance lock")
    args = parser.parse_args(argv)

    try:
        config = load_app_config(args.config_dir)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        for error in e.errors:
            logger.error(error)
        return 2

    configure_logging(config.logging)

    lock = None
    if config.app.single_instance and not args.no_lock:
        lock = check_single_instance(config.app.name, lock_dir=config.app.lock_dir)
        if lock is None:
            return 1

    try:
        monitor = build_monitor_from_config(config)
        if monitor.metrics is not None:
            monitor.metrics.start()
        previous_handlers = monitor.install_signal_handlers()
        try:
            summary = monitor.run(single_pass=args.once)
        finally:
            monitor.restore_signal_handlers(previous_handlers)
    finally:
        if lock is not None:
            lock.release()

    print(json.dumps(summary.to_dict(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
