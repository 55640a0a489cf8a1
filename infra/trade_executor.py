"""
Scalp Monitor Infrastructure: Trade Executor Client

Thin HTTP client for the external swap executor. The executor owns signing,
routing and settlement; this client only asks it to sell a percentage of a
position and reports what it answered.
"""

import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)


@dataclass
class TradeExecutorResponse:
    """Normalized executor reply"""
    success: bool
    reference_id: Optional[str] = None
    realized_pnl_usd: Optional[float] = None
    out_amount_quote: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


def _first_reference(payload: Dict[str, Any]) -> Optional[str]:
    """Pick the transaction reference from the shapes the executor returns."""
    for key in ("referenceId", "signature"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    signatures = payload.get("signatures")
    if not signatures and isinstance(payload.get("data"), dict):
        signatures = payload["data"].get("signatures")
    if isinstance(signatures, list) and signatures and isinstance(signatures[0], str) and signatures[0]:
        return signatures[0]
    return None


def _opt_number(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class TradeExecutorClient:
    """
    POSTs exit requests to the executor endpoint with bounded retries.

    Retries on:
    - 429 (rate limit)
    - 5xx (server errors)
    - Network errors (timeout, connection)

    Does NOT retry on other 4xx; those come back as failed responses.

    When the caller passes `time_left`, each attempt's timeout is clipped to
    it and no retry starts once the remaining time is used up.
    """

    def __init__(self,
                 url: str,
                 api_key_env: Optional[str] = "TRADE_EXECUTOR_API_KEY",
                 timeout: float = 4.0,
                 max_retries: int = 2,
                 quote_decimals: int = 9,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.url = url
        self.api_key = os.getenv(api_key_env, "") if api_key_env else ""
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.quote_decimals = int(quote_decimals)
        self._sleep = sleep
        self._clock = clock

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def sell(self,
             position_id: str,
             exit_percent: float,
             reason: str,
             slippage_bps: int,
             priority_fee_mode: str,
             time_left: Optional[float] = None) -> TradeExecutorResponse:
        body = {
            "positionId": position_id,
            "exitPercent": exit_percent,
            "reason": reason,
            "slippageBps": slippage_bps,
            "priorityFeeMode": priority_fee_mode,
        }

        deadline = self._clock() + time_left if time_left is not None else None
        last_error: Optional[str] = None
        for attempt in range(self.max_retries):
            timeout = self.timeout
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    logger.error(f"Run budget exhausted before trade executor attempt {attempt + 1} for {position_id}")
                    last_error = last_error or "run budget exhausted"
                    break
                timeout = min(timeout, remaining)

            try:
                response = requests.post(self.url, json=body, headers=self._headers(), timeout=timeout)
                response.raise_for_status()
                payload = response.json() or {}
                return self._parse(payload, self.quote_decimals)

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    text = e.response.text if e.response is not None else ""
                    logger.error(f"Trade executor client error: {status_code} - {text}")
                    return TradeExecutorResponse(success=False, error=f"HTTP {status_code}: {text}")
                logger.warning(
                    f"Trade executor returned {status_code} for {position_id}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
                last_error = f"HTTP {status_code}"

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error calling trade executor: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_error = str(e)

            except ValueError as e:
                logger.error(f"Trade executor returned invalid JSON for {position_id}: {e}")
                return TradeExecutorResponse(success=False, error=f"invalid response: {e}")

            except requests.exceptions.RequestException as e:
                logger.warning(f"Trade executor request failed: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_error = str(e)

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) * 0.5 + random.uniform(0, 0.25)
                if deadline is not None and self._clock() + backoff >= deadline:
                    logger.warning(f"No run budget left to retry trade executor for {position_id}")
                    break
                logger.info(f"Retrying trade executor in {backoff:.2f}s...")
                self._sleep(backoff)

        logger.error(f"Trade executor attempts failed for {position_id}: {last_error}")
        return TradeExecutorResponse(success=False, error=last_error or "executor unreachable")

    @staticmethod
    def _parse(payload: Dict[str, Any], quote_decimals: int = 9) -> TradeExecutorResponse:
        """outAmount arrives in the quote asset's smallest unit (lamports for SOL)."""
        error_code = payload.get("error_code") or payload.get("errorCode")
        if error_code:
            return TradeExecutorResponse(
                success=False,
                error=f"[{error_code}] {payload.get('error') or 'executor error'}",
                error_code=str(error_code),
                raw=payload,
            )

        if not payload.get("success") or payload.get("error"):
            return TradeExecutorResponse(
                success=False,
                error=str(payload.get("error") or "executor reported failure"),
                raw=payload,
            )

        reference_id = _first_reference(payload)
        if not reference_id:
            return TradeExecutorResponse(
                success=False,
                error="executor returned no transaction reference (sell did not confirm)",
                raw=payload,
            )

        out_amount = _opt_number(payload.get("outAmount"))
        if out_amount is None and isinstance(payload.get("data"), dict):
            out_amount = _opt_number(payload["data"].get("outAmount"))

        if out_amount is not None:
            out_amount = out_amount / (10 ** quote_decimals)

        return TradeExecutorResponse(
            success=True,
            reference_id=reference_id,
            realized_pnl_usd=_opt_number(payload.get("realizedPnlUsd")),
            out_amount_quote=out_amount if out_amount else None,
            raw=payload,
        )
