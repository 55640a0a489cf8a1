"""
Scalp Monitor Core: Price Oracle

Batched, cached, multi-source token price lookup plus a quote-asset price
with an ordered fallback chain.

Lookup order for token prices:
1. In-memory TTL cache (owned by the oracle instance)
2. One batched request to the primary source for cache misses
3. Secondary source, one token at a time, for whatever is still missing

Tokens nobody priced are simply absent from the result.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from core.exceptions import PriceSourceExhausted

logger = logging.getLogger(__name__)

QUOTE_CACHE_KEY = "__quote_asset__"


@dataclass
class CachedPrice:
    price: float
    fetched_at: float


class PriceCache:
    """
    TTL-keyed price map.

    `clock` must be monotonic; tests inject a fake to step time.
    """

    def __init__(self, ttl_seconds: float = 3.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, CachedPrice] = {}

    def get(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return entry.price

    def put(self, key: str, price: float) -> None:
        self._entries[key] = CachedPrice(price=price, fetched_at=self._clock())

    def __len__(self) -> int:
        return len(self._entries)


class PriceOracle:
    """
    Aggregates token prices across sources.

    Usage:
        oracle = PriceOracle(primary=BatchPriceSource(), secondary=SingleTokenPriceSource(),
                             quote_sources=[...])
        prices = oracle.get_prices({"mintA", "mintB"})
        sol_usd = oracle.get_quote_asset_price()
    """

    def __init__(self,
                 primary,
                 secondary=None,
                 quote_sources: Optional[Sequence] = None,
                 cache: Optional[PriceCache] = None,
                 metrics=None):
        self.primary = primary
        self.secondary = secondary
        self.quote_sources = list(quote_sources or [])
        self.cache = cache or PriceCache()
        self.metrics = metrics

    def get_prices(self, token_ids: Iterable[str]) -> Dict[str, float]:
        """
        Best-effort prices for `token_ids`.

        Returns:
            token_id -> price for every token some source priced
        """
        prices: Dict[str, float] = {}
        to_fetch: List[str] = []

        for token_id in sorted(set(token_ids)):
            cached = self.cache.get(token_id)
            if cached is not None:
                prices[token_id] = cached
            else:
                to_fetch.append(token_id)

        self._record_cache(hits=len(prices), misses=len(to_fetch))
        if not to_fetch:
            return prices

        try:
            fetched = self.primary.get_prices(to_fetch) or {}
        except Exception as e:
            logger.error(f"Primary price source {getattr(self.primary, 'name', '?')} failed: {e}")
            fetched = {}

        for token_id in to_fetch:
            price = fetched.get(token_id)
            if price and price > 0:
                prices[token_id] = price
                self.cache.put(token_id, price)

        missing = [t for t in to_fetch if t not in prices]
        if missing and self.secondary is not None:
            logger.debug(f"Falling back to {self.secondary.name} for {len(missing)} token(s)")
            for token_id in missing:
                try:
                    price = self.secondary.get_price(token_id)
                except Exception as e:
                    logger.warning(f"Secondary price lookup failed for {token_id}: {e}")
                    continue
                if price and price > 0:
                    prices[token_id] = price
                    self.cache.put(token_id, price)

        unresolved = [t for t in to_fetch if t not in prices]
        if unresolved:
            logger.debug(f"No price from any source for: {', '.join(unresolved)}")

        return prices

    def get_quote_asset_price(self) -> float:
        """
        Quote asset price in USD from the first source that answers.

        Raises:
            PriceSourceExhausted: every source failed (never falls back to a constant)
        """
        cached = self.cache.get(QUOTE_CACHE_KEY)
        if cached is not None:
            return cached

        tried: List[str] = []
        last_error: Optional[Exception] = None
        for source in self.quote_sources:
            name = getattr(source, "name", type(source).__name__)
            tried.append(name)
            try:
                price = source.get_quote_price()
            except Exception as e:
                logger.error(f"{name} quote asset price failed: {e}")
                last_error = e
                continue
            if price and price > 0:
                self.cache.put(QUOTE_CACHE_KEY, price)
                return price
            logger.error(f"{name} returned unusable quote asset price {price!r}")

        raise PriceSourceExhausted(tried, original=last_error)

    def _record_cache(self, hits: int, misses: int) -> None:
        if self.metrics is None:
            return
        self.metrics.record_price_cache(hits=hits, misses=misses)
