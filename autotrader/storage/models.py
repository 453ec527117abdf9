from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from autotrader.config import BotConfig
from autotrader.strategy.contracts import Direction


@dataclass(slots=True)
class Position:
    """Broker-owned open position; only ``stop_loss`` is changed locally."""

    position_id: str
    symbol: str
    direction: Direction
    volume: float
    open_price: float
    current_price: float
    stop_loss: float | None = None
    take_profit: float | None = None
    profit: float = 0.0
    comment: str | None = None
    opened_at: datetime | None = None


@dataclass(slots=True)
class AccountInfo:
    balance: float
    equity: float
    margin: float = 0.0
    free_margin: float | None = None
    currency: str = "USD"


@dataclass(slots=True)
class AccountRiskState:
    """Risk inputs for one account, read fresh from the broker each cycle."""

    balance: float
    equity: float
    open_position_count: int
    floating_pl: float
    daily_loss_accumulated: float = 0.0

    @classmethod
    def from_account(
        cls,
        info: AccountInfo,
        positions: list[Position],
        daily_loss_accumulated: float = 0.0,
    ) -> "AccountRiskState":
        return cls(
            balance=info.balance,
            equity=info.equity,
            open_position_count=len(positions),
            floating_pl=sum(position.profit for position in positions),
            daily_loss_accumulated=daily_loss_accumulated,
        )


@dataclass(slots=True)
class RobotAccountPair:
    robot_id: str
    bot_config: BotConfig | dict[str, Any]
    account_id: str
    broker_handle: str
    owner_id: str | None = None
    robot_name: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    position_id: str
    fill_price: float | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TradeRecord:
    robot_id: str
    account_id: str
    position_id: str
    symbol: str
    direction: Direction
    volume: float
    entry_price: float
    stop_loss: float
    take_profit: float
    confidence: float
    strategy_name: str
    rationale: str
    opened_at: datetime
    status: str = "OPEN"
    closed_at: datetime | None = None
    profit: float | None = None
    trade_id: int | None = None


@dataclass(slots=True)
class StrategyPositionLink:
    position_id: str
    strategy_name: str
    entry_sl_pips: float
    entry_tp_pips: float
    robot_label: str | None = None
