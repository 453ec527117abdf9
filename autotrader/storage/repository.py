from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Protocol

from autotrader.config import BotConfig
from autotrader.storage.models import RobotAccountPair, TradeRecord
from autotrader.strategy.contracts import Direction


class Repository(Protocol):
    def get_enabled_robot_account_pairs(self) -> list[RobotAccountPair]:
        ...

    def record_trade(self, trade: TradeRecord) -> int:
        ...

    def mark_trade_closed(
        self,
        account_id: str,
        position_id: str,
        *,
        closed_at: datetime,
        profit: float | None,
    ) -> bool:
        ...


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SqliteRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    def upsert_robot_account(
        self,
        *,
        robot_id: str,
        account_id: str,
        broker_handle: str,
        bot_config: BotConfig | dict[str, Any],
        owner_id: str | None = None,
        robot_name: str | None = None,
        enabled: bool = True,
    ) -> None:
        if isinstance(bot_config, BotConfig):
            payload = bot_config.model_dump(mode="json")
        else:
            payload = dict(bot_config)
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO robot_accounts (
                    robot_id, account_id, broker_handle, owner_id, robot_name, bot_config, enabled
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(robot_id, account_id) DO UPDATE SET
                    broker_handle=excluded.broker_handle,
                    owner_id=excluded.owner_id,
                    robot_name=excluded.robot_name,
                    bot_config=excluded.bot_config,
                    enabled=excluded.enabled
                """,
                (
                    robot_id,
                    account_id,
                    broker_handle,
                    owner_id,
                    robot_name,
                    json.dumps(payload),
                    int(enabled),
                ),
            )
            self.conn.commit()

    def get_enabled_robot_account_pairs(self) -> list[RobotAccountPair]:
        """Raw ``bot_config`` mappings are returned; validation happens per cycle."""
        with self.lock:
            rows = self.conn.execute(
                """
                SELECT robot_id, account_id, broker_handle, owner_id, robot_name, bot_config
                FROM robot_accounts
                WHERE enabled = 1
                ORDER BY account_id, robot_id
                """
            ).fetchall()
        pairs: list[RobotAccountPair] = []
        for row in rows:
            try:
                raw_config = json.loads(row["bot_config"])
            except (TypeError, ValueError):
                raw_config = {}
            pairs.append(
                RobotAccountPair(
                    robot_id=str(row["robot_id"]),
                    bot_config=raw_config,
                    account_id=str(row["account_id"]),
                    broker_handle=str(row["broker_handle"]),
                    owner_id=row["owner_id"],
                    robot_name=row["robot_name"],
                )
            )
        return pairs

    def record_trade(self, trade: TradeRecord) -> int:
        with self.lock:
            cursor = self.conn.execute(
                """
                INSERT INTO trades (
                    robot_id, account_id, position_id, symbol, direction, volume, entry_price,
                    stop_loss, take_profit, confidence, strategy_name, rationale, status,
                    opened_at, closed_at, profit
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.robot_id,
                    trade.account_id,
                    trade.position_id,
                    trade.symbol,
                    trade.direction.value,
                    trade.volume,
                    trade.entry_price,
                    trade.stop_loss,
                    trade.take_profit,
                    trade.confidence,
                    trade.strategy_name,
                    trade.rationale,
                    trade.status,
                    _to_iso(trade.opened_at),
                    _to_iso(trade.closed_at),
                    trade.profit,
                ),
            )
            self.conn.commit()
            trade_id = int(cursor.lastrowid)
        trade.trade_id = trade_id
        return trade_id

    def mark_trade_closed(
        self,
        account_id: str,
        position_id: str,
        *,
        closed_at: datetime,
        profit: float | None,
    ) -> bool:
        with self.lock:
            cursor = self.conn.execute(
                """
                UPDATE trades
                SET status = 'CLOSED', closed_at = ?, profit = ?
                WHERE account_id = ? AND position_id = ? AND status = 'OPEN'
                """,
                (_to_iso(closed_at), profit, account_id, position_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0

    def get_open_trades(self, account_id: str | None = None) -> list[TradeRecord]:
        query = "SELECT * FROM trades WHERE status = 'OPEN'"
        params: tuple[Any, ...] = ()
        if account_id is not None:
            query += " AND account_id = ?"
            params = (account_id,)
        with self.lock:
            rows = self.conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_trade(row) for row in rows]

    def get_trade(self, trade_id: int) -> TradeRecord | None:
        with self.lock:
            row = self.conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return self._row_to_trade(row) if row is not None else None

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> TradeRecord:
        return TradeRecord(
            trade_id=int(row["id"]),
            robot_id=str(row["robot_id"]),
            account_id=str(row["account_id"]),
            position_id=str(row["position_id"]),
            symbol=str(row["symbol"]),
            direction=Direction(row["direction"]),
            volume=float(row["volume"]),
            entry_price=float(row["entry_price"]),
            stop_loss=float(row["stop_loss"]),
            take_profit=float(row["take_profit"]),
            confidence=float(row["confidence"]),
            strategy_name=str(row["strategy_name"]),
            rationale=str(row["rationale"]),
            status=str(row["status"]),
            opened_at=_from_iso(row["opened_at"]) or datetime.now(timezone.utc),
            closed_at=_from_iso(row["closed_at"]),
            profit=row["profit"],
        )
