from __future__ import annotations

import logging

from autotrader.data.candle_cache import CandleCache, cache_key
from autotrader.data.candles import Candle
from autotrader.data.contracts import MarketDataProvider
from autotrader.errors import DataUnavailableError, RateLimitedError, TradingError

LOGGER = logging.getLogger(__name__)


class MarketDataService:
    def __init__(self, provider: MarketDataProvider, cache: CandleCache):
        self.provider = provider
        self.cache = cache

    def fetch_candles(
        self,
        account_handle: str,
        symbol: str,
        timeframe: str,
        count: int,
    ) -> list[Candle] | None:
        """Cached candles; stale candles when rate limited; None when nothing usable exists."""
        key = cache_key(symbol, timeframe, count)
        fresh = self.cache.get_fresh(key)
        if fresh is not None:
            return fresh

        with self.cache.key_lock(key):
            fresh = self.cache.get_fresh(key)
            if fresh is not None:
                return fresh
            try:
                candles = self.provider.get_candles(account_handle, symbol, timeframe, count)
            except RateLimitedError as exc:
                stale = self.cache.get_stale(key)
                if stale is not None:
                    LOGGER.warning(
                        "Rate limited, serving stale candles symbol=%s timeframe=%s age=%.1fs",
                        symbol,
                        timeframe,
                        self.cache.age_seconds(key) or 0.0,
                    )
                    return stale
                LOGGER.warning("Rate limited with no cached candles symbol=%s: %s", symbol, exc)
                return None
            except DataUnavailableError as exc:
                LOGGER.info("No candle data symbol=%s timeframe=%s: %s", symbol, timeframe, exc)
                return None
            except TradingError as exc:
                LOGGER.warning("Candle fetch failed symbol=%s timeframe=%s: %s", symbol, timeframe, exc)
                return None

            if not candles:
                LOGGER.info("Empty candle response symbol=%s timeframe=%s", symbol, timeframe)
                return None
            self.cache.put(key, candles)
            return candles
