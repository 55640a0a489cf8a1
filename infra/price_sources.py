"""
Scalp Monitor Infrastructure: Price Sources

HTTP adapters for the token and quote-asset price vendors. Every call is
best effort: token lookups return only what the vendor priced, quote lookups
raise when the vendor has no usable price.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import requests

logger = logging.getLogger(__name__)

JUPITER_PRICE_URL = "https://api.jup.ag/price/v2"
DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex/tokens"
COINGECKO_SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"


def _positive_price(value) -> Optional[float]:
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BatchPriceSource:
    """
    Primary source: one request prices many tokens.

    Expects `GET {url}?ids=a,b,c` → `{"data": {"a": {"price": "1.23"}, ...}}`.
    """

    name = "jupiter"

    def __init__(self, url: str = JUPITER_PRICE_URL, api_key_env: Optional[str] = "JUPITER_API_KEY",
                 batch_size: int = 100, timeout: float = 4.0):
        self.url = url
        self.api_key = os.getenv(api_key_env, "") if api_key_env else ""
        self.batch_size = max(1, int(batch_size))
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def get_prices(self, token_ids: Iterable[str]) -> Dict[str, float]:
        ids = list(token_ids)
        prices: Dict[str, float] = {}
        for chunk in _chunks(ids, self.batch_size):
            try:
                r = requests.get(
                    self.url,
                    params={"ids": ",".join(chunk)},
                    headers=self._headers(),
                    timeout=self.timeout,
                )
                r.raise_for_status()
                data = (r.json() or {}).get("data") or {}
            except (requests.exceptions.RequestException, ValueError) as e:
                logger.warning(f"{self.name} batch price fetch failed ({len(chunk)} ids): {e}")
                continue

            for token_id in chunk:
                entry = data.get(token_id) or {}
                price = _positive_price(entry.get("price"))
                if price:
                    prices[token_id] = price
        return prices


class SingleTokenPriceSource:
    """
    Secondary source: one request per token.

    Expects `GET {url}/{token}` → `{"pairs": [{"priceUsd": "1.23"}, ...]}`;
    the first pair wins.
    """

    name = "dexscreener"

    def __init__(self, url: str = DEXSCREENER_TOKENS_URL, timeout: float = 4.0):
        self.url = url.rstrip("/")
        self.timeout = timeout

    def get_price(self, token_id: str) -> Optional[float]:
        try:
            r = requests.get(f"{self.url}/{token_id}", timeout=self.timeout)
            if not r.ok:
                logger.debug(f"{self.name} returned {r.status_code} for {token_id}")
                return None
            pairs = (r.json() or {}).get("pairs") or []
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"{self.name} price fetch failed for {token_id}: {e}")
            return None

        if not pairs:
            return None
        return _positive_price(pairs[0].get("priceUsd"))


class QuoteAssetSource(ABC):
    """A single vendor for the quote (settlement) asset price in USD."""

    name = "quote"

    @abstractmethod
    def get_quote_price(self) -> float:
        """USD price; raises on any vendor failure."""


class BatchQuoteAssetSource(QuoteAssetSource):
    """Quote price read through the batch endpoint using the asset's mint."""

    def __init__(self, source: BatchPriceSource, asset_id: str = WRAPPED_SOL_MINT):
        self.source = source
        self.asset_id = asset_id
        self.name = source.name

    def get_quote_price(self) -> float:
        price = self.source.get_prices([self.asset_id]).get(self.asset_id)
        if not price:
            raise ValueError(f"{self.name} has no price for {self.asset_id}")
        return price


class CoinGeckoQuoteAssetSource(QuoteAssetSource):
    """Expects `GET {url}?ids=solana&vs_currencies=usd` → `{"solana": {"usd": 150.0}}`."""

    name = "coingecko"

    def __init__(self, coin_id: str = "solana", url: str = COINGECKO_SIMPLE_PRICE_URL,
                 api_key_env: Optional[str] = "COINGECKO_API_KEY", timeout: float = 4.0):
        self.coin_id = coin_id
        self.url = url
        self.api_key = os.getenv(api_key_env, "") if api_key_env else ""
        self.timeout = timeout

    def get_quote_price(self) -> float:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        r = requests.get(
            self.url,
            params={"ids": self.coin_id, "vs_currencies": "usd"},
            headers=headers,
            timeout=self.timeout,
        )
        r.raise_for_status()
        price = _positive_price(((r.json() or {}).get(self.coin_id) or {}).get("usd"))
        if not price:
            raise ValueError(f"{self.name} has no usd price for {self.coin_id}")
        return price
