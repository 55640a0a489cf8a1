"""
Tests for the bounded polling loop.

Time is driven by FakeClock: ticks take zero time unless a stub advances it,
and every sleep advances the clock by the requested amount.
"""
import json
from unittest.mock import Mock

import pytest

from core.exceptions import PersistenceFailure
from core.execution import ExecutionDispatcher, RealExecutor, SimulatedExecutor
from core.position import Stage
from core.position_manager import PositionManager
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from runner.monitor_loop import (
    ExitMonitor,
    MonitorSettings,
    RunSummary,
    compute_sleep,
    has_budget_for_next_tick,
    main,
)
from tests.helpers import FakeClock, FakeOracle, FakeStore, make_position


def _monitor(store, oracle, clock, settings=None, metrics=None, audit_logger=None, client=None,
             notifier=None):
    dispatcher = ExecutionDispatcher(
        store=store,
        simulated=SimulatedExecutor(wall_clock=lambda: 1_700_000_000.0),
        real=RealExecutor(client or Mock()),
        notifier=notifier,
    )
    return ExitMonitor(
        store=store,
        oracle=oracle,
        manager=PositionManager(),
        dispatcher=dispatcher,
        settings=settings or MonitorSettings(),
        metrics=metrics,
        audit_logger=audit_logger,
        clock=clock,
        sleep=clock.sleep,
    )


class TestScheduling:

    def test_adaptive_sleep(self):
        assert compute_sleep(5.0, 1.2, 1.0) == pytest.approx(3.8)

    def test_sleep_floor(self):
        assert compute_sleep(5.0, 4.8, 1.0) == 1.0
        assert compute_sleep(5.0, 9.0, 1.0) == 1.0

    def test_budget_check(self):
        assert has_budget_for_next_tick(40.0, 5.0, 5.0, 50.0)
        assert not has_budget_for_next_tick(40.1, 5.0, 5.0, 50.0)
        assert not has_budget_for_next_tick(45.0, 5.0, 5.0, 50.0)


class TestRun:

    def test_single_pass_runs_one_tick(self):
        clock = FakeClock()
        store = FakeStore([make_position()])
        monitor = _monitor(store, FakeOracle({"MintA111": 1.5}), clock)

        summary = monitor.run(single_pass=True)

        assert summary.tick_count == 1
        assert clock.sleeps == []
        assert [r.action for r in summary.executed] == ["tp1"]
        assert store.get("pos-1").stage == Stage.TP1_HIT

    def test_continuous_run_stops_inside_budget(self):
        clock = FakeClock()
        store = FakeStore([make_position()])
        monitor = _monitor(store, FakeOracle({"MintA111": 1.2}), clock)

        summary = monitor.run()

        # ticks start at 0, 5, ..., 45; the check after 45s refuses another
        assert summary.tick_count == 10
        assert clock.sleeps == [5.0] * 9
        assert summary.elapsed_ms == 45_000
        assert summary.elapsed_ms / 1000 + 5.0 <= 50.0

    def test_sleep_accounts_for_tick_duration(self):
        clock = FakeClock()
        store = FakeStore([make_position()])
        oracle = FakeOracle({"MintA111": 1.2})
        original = oracle.get_prices

        def slow_prices(token_ids):
            clock.advance(1.2)
            return original(token_ids)

        oracle.get_prices = slow_prices
        settings = MonitorSettings(max_runtime_seconds=12.0)

        _monitor(store, oracle, clock, settings=settings).run()

        assert clock.sleeps[0] == pytest.approx(3.8)

    def test_stop_when_idle(self):
        clock = FakeClock()
        monitor = _monitor(FakeStore(), FakeOracle(), clock, settings=MonitorSettings(stop_when_idle=True))

        summary = monitor.run()

        assert summary.tick_count == 1

    def test_idle_run_keeps_polling_by_default(self):
        clock = FakeClock()
        summary = _monitor(FakeStore(), FakeOracle(), clock).run()
        assert summary.tick_count == 10

    def test_list_failure_retries_after_interval(self):
        clock = FakeClock()
        store = FakeStore([make_position()])
        store.list_error = PersistenceFailure("*", "disk gone")
        settings = MonitorSettings(max_runtime_seconds=20.0)

        summary = _monitor(store, FakeOracle({"MintA111": 1.2}), clock, settings=settings).run()

        assert summary.counters["list_failures"] == summary.tick_count
        assert set(clock.sleeps) == {5.0}

    def test_exit_committed_across_ticks(self):
        clock = FakeClock()
        store = FakeStore([make_position()])
        oracle = FakeOracle([{"MintA111": 1.2}, {"MintA111": 1.5}, {"MintA111": 2.2}, {"MintA111": 4.5}])

        summary = _monitor(store, oracle, clock).run()

        assert [r.action for r in summary.executed] == ["tp1", "ladder_100", "ladder_300"]
        assert store.get("pos-1").stage == Stage.COMPLETED
        assert summary.counters["exits_executed"] == 3

    def test_unpriced_position_skipped(self):
        clock = FakeClock()
        store = FakeStore([make_position()])
        metrics = Mock()

        summary = _monitor(store, FakeOracle({}), clock, metrics=metrics).run(single_pass=True)

        assert summary.counters["skipped_no_price"] == 1
        assert store.updates == []
        metrics.record_missing_price.assert_called_once()

    def test_quote_price_failure_does_not_stop_tick(self):
        clock = FakeClock()
        store = FakeStore([make_position(is_test=False)])
        client = Mock()
        client.sell.return_value = Mock(success=True, reference_id="sig", realized_pnl_usd=None,
                                        out_amount_quote=3.0)
        oracle = FakeOracle({"MintA111": 1.5}, quote_price=None)

        summary = _monitor(store, oracle, clock, client=client).run(single_pass=True)

        assert summary.counters["quote_price_failures"] == 1
        assert summary.executed[0].pnl_estimated

    def test_quote_price_fetched_once_per_tick(self):
        clock = FakeClock()
        store = FakeStore([
            make_position(position_id="a", is_test=False),
            make_position(position_id="b", is_test=False),
        ])
        oracle = FakeOracle({"MintA111": 1.2})

        _monitor(store, oracle, clock).run(single_pass=True)

        assert oracle.quote_calls == 1

    def test_execution_failure_counted_and_retried(self):
        clock = FakeClock()
        store = FakeStore([make_position(is_test=False)])
        client = Mock()
        client.sell.return_value = Mock(success=False, error="slippage")
        settings = MonitorSettings(max_runtime_seconds=15.0)

        summary = _monitor(store, FakeOracle({"MintA111": 1.5}), clock, settings=settings, client=client).run()

        assert summary.executed == []
        assert summary.counters["execution_failures"] == summary.tick_count
        assert client.sell.call_count == summary.tick_count
        assert store.get("pos-1").stage == Stage.INITIAL

    def test_real_sell_bounded_by_remaining_budget(self):
        clock = FakeClock()
        store = FakeStore([make_position(is_test=False)])
        client = Mock()
        client.sell.return_value = Mock(success=True, reference_id="sig", realized_pnl_usd=1.0,
                                        out_amount_quote=None)
        oracle = FakeOracle({"MintA111": 1.5})
        original = oracle.get_prices

        def slow_prices(token_ids):
            clock.advance(12.0)
            return original(token_ids)

        oracle.get_prices = slow_prices

        _monitor(store, oracle, clock, settings=MonitorSettings(max_runtime_seconds=50.0), client=client).run(single_pass=True)

        assert client.sell.call_args.kwargs["time_left"] == pytest.approx(38.0)

    def test_broken_webhook_does_not_hide_committed_exit(self):
        clock = FakeClock()
        store = FakeStore([make_position()])
        notifier = AlertService(AlertConfig(enabled=True, webhook_url="not-a-url",
                                            min_severity=AlertSeverity.INFO, dry_run=False))

        summary = _monitor(store, FakeOracle({"MintA111": 1.5}), clock, notifier=notifier).run(single_pass=True)

        assert [r.action for r in summary.executed] == ["tp1"]
        assert summary.counters["exits_executed"] == 1
        assert summary.counters["errors"] == 0
        assert store.get("pos-1").stage == Stage.TP1_HIT

    def test_request_stop_ends_after_current_tick(self):
        clock = FakeClock()
        store = FakeStore([make_position()])
        oracle = FakeOracle({"MintA111": 1.2})
        monitor = _monitor(store, oracle, clock)
        original = oracle.get_prices

        def stop_during_tick(token_ids):
            monitor.request_stop()
            return original(token_ids)

        oracle.get_prices = stop_during_tick

        summary = monitor.run()

        assert summary.tick_count == 1

    def test_price_samples(self):
        clock = FakeClock()
        store = FakeStore([make_position()])
        oracle = FakeOracle([{"MintA111": 1.0}, {"MintA111": 1.2}, {"MintA111": 0.9}])

        summary = _monitor(store, oracle, clock, settings=MonitorSettings(max_runtime_seconds=20.0)).run()

        sample = summary.price_samples["MintA111"]
        assert sample["samples"] == summary.tick_count
        assert sample["min"] == 0.9
        assert sample["max"] == 1.2
        assert sample["volatility_pct"] == pytest.approx(30.0)

    def test_audit_run_summary(self):
        clock = FakeClock()
        audit = Mock()

        _monitor(FakeStore(), FakeOracle(), clock, audit_logger=audit).run(single_pass=True)

        audit.log_run.assert_called_once()
        assert audit.log_run.call_args.args[0]["tick_count"] == 1


class TestSummary:

    def test_json_shape(self):
        summary = RunSummary(tick_count=2, elapsed_ms=5000, counters={"exits_executed": 0})
        payload = json.loads(json.dumps(summary.to_dict()))
        assert set(payload) == {"tickCount", "elapsedMs", "executed", "priceSamples", "counters"}


class TestCli:

    def test_invalid_config_exits_non_zero(self, tmp_path):
        (tmp_path / "app.yaml").write_text("monitor:\n  poll_interval_seconds: -1\n")
        assert main(["--once", "--config-dir", str(tmp_path)]) == 2

    def test_single_pass_prints_summary(self, tmp_path, monkeypatch, capsys):
        state_file = tmp_path / "positions.json"
        (tmp_path / "app.yaml").write_text(
            "execution:\n"
            "  url: https://executor.test/sell\n"
            "state:\n"
            f"  file: {state_file}\n"
            "audit:\n"
            f"  file: {tmp_path / 'audit.jsonl'}\n"
            "logging:\n"
            f"  file: {tmp_path / 'monitor.log'}\n"
        )
        monkeypatch.setattr("infra.price_sources.requests.get", Mock(side_effect=AssertionError("no network")))

        code = main(["--once", "--no-lock", "--config-dir", str(tmp_path)])

        assert code == 0
        out = capsys.readouterr().out
        payload = json.loads(out[out.index("{"):])
        assert payload["tickCount"] == 1
        assert payload["executed"] == []
