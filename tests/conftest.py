"""
Pytest configuration and fixtures for the scalp monitor tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from tests.helpers import FakeClock, make_position


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture(autouse=True)
def no_api_keys(monkeypatch):
    """Keep real credentials from leaking into request headers."""
    for name in ("JUPITER_API_KEY", "COINGECKO_API_KEY", "TRADE_EXECUTOR_API_KEY", "ALERT_WEBHOOK_URL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    from infra.state_store import JsonPositionStore

    return JsonPositionStore(state_file=str(tmp_path / "positions.json"))


@pytest.fixture
def position_factory():
    return make_position
