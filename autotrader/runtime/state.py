from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime

from autotrader.config import CacheConfig
from autotrader.data.candle_cache import CandleCache
from autotrader.storage.models import AccountInfo, Position, StrategyPositionLink


class KeyedLocks:
    """One re-entrant lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[object, threading.RLock] = {}

    def get(self, key: object) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


class CooldownMap:
    """Last trade time per (account, symbol)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_trade: dict[tuple[str, str], datetime] = {}

    def last_trade(self, account_id: str, symbol: str) -> datetime | None:
        with self._lock:
            return self._last_trade.get((account_id, symbol.upper()))

    def mark(self, account_id: str, symbol: str, at: datetime) -> None:
        with self._lock:
            self._last_trade[(account_id, symbol.upper())] = at

    def is_cooling_down(self, account_id: str, symbol: str, now: datetime, cooldown_seconds: float) -> bool:
        last = self.last_trade(account_id, symbol)
        if last is None:
            return False
        return (now - last).total_seconds() < cooldown_seconds


class LinkStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._links: dict[str, StrategyPositionLink] = {}

    def put(self, link: StrategyPositionLink) -> None:
        with self._lock:
            self._links[link.position_id] = link

    def get(self, position_id: str) -> StrategyPositionLink | None:
        with self._lock:
            return self._links.get(position_id)

    def discard(self, position_id: str) -> None:
        with self._lock:
            self._links.pop(position_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._links)


@dataclass(slots=True)
class AccountSnapshot:
    account_id: str
    owner_id: str | None
    info: AccountInfo | None = None
    positions: list[Position] = field(default_factory=list)
    updated_at: datetime | None = None


class SnapshotStore:
    """Latest account info and open positions per account, written by the trading cycle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[str, AccountSnapshot] = {}

    def update(
        self,
        account_id: str,
        owner_id: str | None,
        info: AccountInfo | None,
        positions: list[Position],
        at: datetime,
    ) -> AccountSnapshot | None:
        """Store the snapshot and return the previous one."""
        with self._lock:
            previous = self._snapshots.get(account_id)
            self._snapshots[account_id] = AccountSnapshot(
                account_id=account_id,
                owner_id=owner_id,
                info=info,
                positions=list(positions),
                updated_at=at,
            )
            return previous

    def get(self, account_id: str) -> AccountSnapshot | None:
        with self._lock:
            return self._snapshots.get(account_id)

    def all(self) -> list[AccountSnapshot]:
        with self._lock:
            return list(self._snapshots.values())

    def remove(self, account_id: str) -> None:
        with self._lock:
            self._snapshots.pop(account_id, None)


@dataclass(slots=True)
class SchedulerState:
    """Process-wide mutable state owned by one scheduler instance."""

    candle_cache: CandleCache
    cooldowns: CooldownMap = field(default_factory=CooldownMap)
    links: LinkStore = field(default_factory=LinkStore)
    snapshots: SnapshotStore = field(default_factory=SnapshotStore)
    account_locks: KeyedLocks = field(default_factory=KeyedLocks)
    connections: dict[str, object] = field(default_factory=dict)
    connections_lock: threading.Lock = field(default_factory=threading.Lock)

    @classmethod
    def from_config(cls, cache: CacheConfig) -> "SchedulerState":
        return cls(candle_cache=CandleCache(ttl_seconds=cache.candle_ttl_seconds, max_entries=cache.max_entries))
