"""Tests for the trade executor HTTP client (requests is patched)."""
from unittest.mock import patch

import pytest
import requests

from infra.trade_executor import TradeExecutorClient
from tests.helpers import FakeClock, mock_response

SELL_ARGS = dict(
    position_id="pos-1",
    exit_percent=90.0,
    reason="tp1",
    slippage_bps=1500,
    priority_fee_mode="high",
)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(sleeps):
    return TradeExecutorClient(url="https://executor.test/sell", max_retries=3, sleep=sleeps.append)


class TestSell:

    def test_request_body(self, client):
        response = mock_response(json_data={"success": True, "signature": "sig-1"})
        with patch("infra.trade_executor.requests.post", return_value=response) as post:
            client.sell(**SELL_ARGS)

        assert post.call_args.kwargs["json"] == {
            "positionId": "pos-1",
            "exitPercent": 90.0,
            "reason": "tp1",
            "slippageBps": 1500,
            "priorityFeeMode": "high",
        }
        assert post.call_args.kwargs["timeout"] == 4.0

    def test_success_with_realized_pnl(self, client):
        payload = {"success": True, "referenceId": "ref-9", "realizedPnlUsd": 42.5}
        with patch("infra.trade_executor.requests.post", return_value=mock_response(json_data=payload)):
            result = client.sell(**SELL_ARGS)

        assert result.success
        assert result.reference_id == "ref-9"
        assert result.realized_pnl_usd == 42.5

    def test_out_amount_converted_from_lamports(self, client):
        payload = {"success": True, "data": {"signatures": ["sig-2"], "outAmount": "2500000000"}}
        with patch("infra.trade_executor.requests.post", return_value=mock_response(json_data=payload)):
            result = client.sell(**SELL_ARGS)

        assert result.reference_id == "sig-2"
        assert result.out_amount_quote == pytest.approx(2.5)
        assert result.realized_pnl_usd is None

    def test_error_payload_is_failure(self, client):
        payload = {"success": False, "error": "route not found"}
        with patch("infra.trade_executor.requests.post", return_value=mock_response(json_data=payload)):
            result = client.sell(**SELL_ARGS)

        assert not result.success
        assert result.error == "route not found"

    def test_error_code_is_failure(self, client):
        payload = {"success": True, "error_code": "NO_BALANCE", "error": "wallet empty"}
        with patch("infra.trade_executor.requests.post", return_value=mock_response(json_data=payload)):
            result = client.sell(**SELL_ARGS)

        assert not result.success
        assert result.error_code == "NO_BALANCE"

    def test_missing_reference_is_failure(self, client):
        with patch("infra.trade_executor.requests.post",
                   return_value=mock_response(json_data={"success": True})):
            assert not client.sell(**SELL_ARGS).success

    def test_invalid_json_is_failure(self, client):
        with patch("infra.trade_executor.requests.post",
                   return_value=mock_response(json_data=ValueError("not json"))):
            result = client.sell(**SELL_ARGS)
        assert not result.success
        assert "invalid response" in result.error


class TestRetries:

    def test_retries_server_errors_then_succeeds(self, client, sleeps):
        responses = [
            mock_response(status_code=502),
            mock_response(status_code=429),
            mock_response(json_data={"success": True, "signature": "sig-3"}),
        ]
        with patch("infra.trade_executor.requests.post", side_effect=responses) as post:
            result = client.sell(**SELL_ARGS)

        assert result.success
        assert post.call_count == 3
        assert len(sleeps) == 2

    def test_client_error_not_retried(self, client, sleeps):
        with patch("infra.trade_executor.requests.post",
                   return_value=mock_response(status_code=400, text="bad position")) as post:
            result = client.sell(**SELL_ARGS)

        assert not result.success
        assert "400" in result.error
        assert post.call_count == 1
        assert sleeps == []

    def test_network_errors_exhaust_attempts(self, client, sleeps):
        with patch("infra.trade_executor.requests.post",
                   side_effect=requests.exceptions.ConnectionError("refused")) as post:
            result = client.sell(**SELL_ARGS)

        assert not result.success
        assert post.call_count == 3
        assert len(sleeps) == 2


class TestRunBudget:

    def _client(self, clock):
        return TradeExecutorClient(url="https://executor.test/sell", timeout=4.0, max_retries=3,
                                   sleep=clock.sleep, clock=clock)

    def test_timeout_clipped_to_time_left(self):
        clock = FakeClock()
        response = mock_response(json_data={"success": True, "signature": "sig-1"})
        with patch("infra.trade_executor.requests.post", return_value=response) as post:
            assert self._client(clock).sell(**SELL_ARGS, time_left=2.5).success

        assert post.call_args.kwargs["timeout"] == 2.5

    def test_no_retry_past_time_left(self):
        clock = FakeClock()

        def timed_out(*args, **kwargs):
            clock.advance(kwargs["timeout"])
            raise requests.exceptions.Timeout("read timed out")

        with patch("infra.trade_executor.requests.post", side_effect=timed_out) as post:
            result = self._client(clock).sell(**SELL_ARGS, time_left=1.0)

        assert not result.success
        assert post.call_count == 1
        assert clock.sleeps == []
        assert clock.now == pytest.approx(1.0)

    def test_exhausted_budget_skips_request(self):
        clock = FakeClock()
        with patch("infra.trade_executor.requests.post") as post:
            result = self._client(clock).sell(**SELL_ARGS, time_left=0.0)

        assert not result.success
        assert result.error == "run budget exhausted"
        post.assert_not_called()

    def test_worst_case_stays_inside_time_left(self):
        clock = FakeClock()

        def server_error(*args, **kwargs):
            clock.advance(kwargs["timeout"])
            return mock_response(status_code=503)

        with patch("infra.trade_executor.requests.post", side_effect=server_error):
            self._client(clock).sell(**SELL_ARGS, time_left=5.0)

        assert clock.now <= 5.0 + 1e-9
