"""Tests for the audit trail and Prometheus metrics recorder."""
import json

from prometheus_client import REGISTRY

from core.audit_log import AuditLogger
from infra.metrics import MetricsRecorder, TickStats


class TestAuditLogger:

    def test_appends_json_lines(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit" / "exits.jsonl"))

        audit.log_exit({"position_id": "pos-1", "action": "tp1", "profit_usd": 450.0})
        audit.log_run({"tick_count": 10, "exits": 1})

        lines = (tmp_path / "audit" / "exits.jsonl").read_text().splitlines()
        first, second = (json.loads(line) for line in lines)
        assert first["type"] == "exit"
        assert first["action"] == "tp1"
        assert "timestamp" in first
        assert second["type"] == "run"
        assert second["tick_count"] == 10

    def test_write_failure_does_not_raise(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "exits.jsonl"))
        audit.audit_file = tmp_path  # a directory cannot be opened for append
        audit.log_exit({"action": "tp1"})


class TestMetricsRecorder:

    def test_singleton(self):
        assert MetricsRecorder(enabled=True) is MetricsRecorder(enabled=False)

    def test_records_exits_and_ticks(self):
        metrics = MetricsRecorder(enabled=True)

        metrics.record_exit("tp1", "simulated")
        metrics.record_exit("tp1", "simulated")
        metrics.record_tick(TickStats(status="ok", positions=3, exits=2, duration_seconds=0.4))
        metrics.record_price_cache(hits=2, misses=1)

        assert REGISTRY.get_sample_value(
            "scalp_exits_total", {"reason": "tp1", "mode": "simulated"}) == 2.0
        assert REGISTRY.get_sample_value("scalp_ticks_total", {"status": "ok"}) == 1.0
        assert REGISTRY.get_sample_value("scalp_positions_monitored") == 3.0
        assert REGISTRY.get_sample_value("scalp_price_cache_lookups_total", {"result": "hit"}) == 2.0
        assert metrics.last_tick.exits == 2

    def test_disabled_recorder_is_noop(self):
        metrics = MetricsRecorder(enabled=False)

        metrics.record_exit("tp1", "real")
        metrics.record_execution_failure("tp1", "real")
        metrics.record_persistence_failure("write")
        metrics.record_missing_price()
        metrics.record_tick(TickStats(status="idle", positions=0, exits=0, duration_seconds=0.0))

        assert metrics.last_tick.status == "idle"
        assert REGISTRY.get_sample_value("scalp_exits_total", {"reason": "tp1", "mode": "real"}) is None
