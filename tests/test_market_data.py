from __future__ import annotations

import threading
import time
from datetime import datetime, timezone

from autotrader.data.candle_cache import CandleCache, cache_key
from autotrader.data.candles import Candle
from autotrader.data.market_data import MarketDataService
from autotrader.errors import DataUnavailableError, RateLimitedError


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _candles(n: int = 3) -> list[Candle]:
    ts = datetime(2026, 3, 2, tzinfo=timezone.utc)
    return [Candle(timestamp=ts, open=1.0, high=1.1, low=0.9, close=1.0 + i / 100) for i in range(n)]


class _Provider:
    def __init__(self, responses: list) -> None:
        self.responses = list(responses)
        self.calls = 0

    def get_candles(self, account_handle, symbol, timeframe, count):
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def test_cache_serves_fresh_candles_without_refetch() -> None:
    clock = _Clock()
    provider = _Provider([_candles()])
    service = MarketDataService(provider, CandleCache(ttl_seconds=55, clock=clock))

    first = service.fetch_candles("acc", "eurusd", "H1", 250)
    clock.now += 30
    second = service.fetch_candles("acc", "EURUSD", "h1", 250)

    assert first == second
    assert provider.calls == 1


def test_expired_entry_refetches() -> None:
    clock = _Clock()
    provider = _Provider([_candles(2), _candles(4)])
    service = MarketDataService(provider, CandleCache(ttl_seconds=55, clock=clock))

    service.fetch_candles("acc", "EURUSD", "H1", 250)
    clock.now += 56
    refreshed = service.fetch_candles("acc", "EURUSD", "H1", 250)

    assert len(refreshed) == 4
    assert provider.calls == 2


def test_rate_limit_serves_stale_candles() -> None:
    clock = _Clock()
    provider = _Provider([_candles(2), RateLimitedError("429", retry_after=3.0)])
    service = MarketDataService(provider, CandleCache(ttl_seconds=55, clock=clock))

    original = service.fetch_candles("acc", "EURUSD", "H1", 250)
    clock.now += 120
    stale = service.fetch_candles("acc", "EURUSD", "H1", 250)

    assert stale == original


def test_rate_limit_without_cache_returns_none() -> None:
    service = MarketDataService(_Provider([RateLimitedError("429")]), CandleCache(ttl_seconds=55))
    assert service.fetch_candles("acc", "EURUSD", "H1", 250) is None


def test_unavailable_or_empty_data_returns_none() -> None:
    service = MarketDataService(_Provider([DataUnavailableError("no data")]), CandleCache(ttl_seconds=55))
    assert service.fetch_candles("acc", "EURUSD", "H1", 250) is None

    empty = MarketDataService(_Provider([[]]), CandleCache(ttl_seconds=55))
    assert empty.fetch_candles("acc", "EURUSD", "H1", 250) is None
    assert len(empty.cache) == 0


def test_concurrent_callers_share_one_fetch() -> None:
    class _SlowProvider:
        def __init__(self) -> None:
            self.calls = 0

        def get_candles(self, account_handle, symbol, timeframe, count):
            self.calls += 1
            time.sleep(0.05)
            return _candles()

    provider = _SlowProvider()
    service = MarketDataService(provider, CandleCache(ttl_seconds=55))
    results: list = []
    threads = [
        threading.Thread(target=lambda: results.append(service.fetch_candles("acc", "EURUSD", "H1", 250)))
        for _ in range(5)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert provider.calls == 1
    assert len(results) == 5


def test_cache_evicts_least_recently_used() -> None:
    cache = CandleCache(ttl_seconds=55, max_entries=2)
    cache.put(cache_key("A", "H1", 10), _candles())
    cache.put(cache_key("B", "H1", 10), _candles())
    cache.get_fresh(cache_key("A", "H1", 10))
    cache.put(cache_key("C", "H1", 10), _candles())

    assert cache.get_stale(cache_key("B", "H1", 10)) is None
    assert cache.get_stale(cache_key("A", "H1", 10)) is not None
    assert len(cache) == 2
