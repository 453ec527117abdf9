from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from autotrader.data.candles import Candle

CacheKey = tuple[str, str, int]


def cache_key(symbol: str, timeframe: str, count: int) -> CacheKey:
    return (symbol.strip().upper(), timeframe.strip().upper(), int(count))


@dataclass(slots=True)
class _CacheEntry:
    candles: list[Candle]
    stored_at: float


class CandleCache:
    """TTL cache keyed by (symbol, timeframe, count).

    Expired entries are kept (up to ``max_entries``) so callers can fall back
    to stale candles when the upstream is rate limiting.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._entries: OrderedDict[CacheKey, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._key_locks: dict[CacheKey, threading.Lock] = {}

    def key_lock(self, key: CacheKey) -> threading.Lock:
        """Serialises fetches for one key without blocking other keys."""
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def get_fresh(self, key: CacheKey) -> list[Candle] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at > self.ttl_seconds:
                return None
            self._entries.move_to_end(key)
            return entry.candles

    def get_stale(self, key: CacheKey) -> list[Candle] | None:
        with self._lock:
            entry = self._entries.get(key)
            return entry.candles if entry is not None else None

    def age_seconds(self, key: CacheKey) -> float | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return max(0.0, self._clock() - entry.stored_at)

    def put(self, key: CacheKey, candles: list[Candle]) -> None:
        with self._lock:
            self._entries[key] = _CacheEntry(candles=list(candles), stored_at=self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._key_locks.pop(evicted, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
