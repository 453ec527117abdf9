from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable

from autotrader.clock import trading_day, utc_now
from autotrader.config import BotConfig, RiskConfig, RiskTierConfig
from autotrader.execution.sizing import floor_to_step, lots_for_risk, pip_value_per_lot
from autotrader.runtime.state import KeyedLocks
from autotrader.storage.models import AccountInfo, AccountRiskState, Position
from autotrader.strategy.contracts import Direction

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RiskDecision:
    allowed: bool
    reason: str
    reason_codes: list[str] = field(default_factory=list)
    metadata: dict[str, float | int | str] = field(default_factory=dict)


@dataclass(slots=True)
class _DailyLossState:
    day: date
    realised_loss: float = 0.0
    breached: bool = False


class DailyLossTracker:
    """Realised plus floating loss per account for the current trading day.

    A breach latches until the trading-day boundary even if floating P/L recovers.
    """

    def __init__(
        self,
        limit_pct: float,
        *,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.limit_pct = limit_pct
        self.timezone_name = timezone_name
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, _DailyLossState] = {}

    def _state(self, account_id: str) -> _DailyLossState:
        today = trading_day(self._clock(), self.timezone_name)
        state = self._states.get(account_id)
        if state is None or state.day != today:
            state = _DailyLossState(day=today)
            self._states[account_id] = state
        return state

    def record_realised(self, account_id: str, profit: float) -> None:
        if profit >= 0:
            return
        with self._lock:
            self._state(account_id).realised_loss += -profit

    def daily_loss(self, account_id: str, floating_pl: float = 0.0) -> float:
        with self._lock:
            return self._state(account_id).realised_loss + max(0.0, -floating_pl)

    def check(self, account_id: str, balance: float, floating_pl: float) -> tuple[bool, float]:
        """Return (breached, loss so far today)."""
        with self._lock:
            state = self._state(account_id)
            loss = state.realised_loss + max(0.0, -floating_pl)
            if not state.breached and balance > 0 and loss >= self.limit_pct * balance:
                state.breached = True
                LOGGER.warning(
                    "Daily loss limit breached account=%s loss=%.2f limit=%.2f",
                    account_id,
                    loss,
                    self.limit_pct * balance,
                )
            return state.breached, loss

    def is_breached(self, account_id: str) -> bool:
        with self._lock:
            return self._state(account_id).breached


def has_opposing_position(positions: list[Position], symbol: str, direction: Direction) -> bool:
    key = symbol.strip().upper()
    return any(p.symbol.strip().upper() == key and p.direction is not direction for p in positions)


class RiskGate:
    def __init__(
        self,
        risk: RiskConfig,
        *,
        tracker: DailyLossTracker | None = None,
        locks: KeyedLocks | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.risk = risk
        self.daily_loss = tracker or DailyLossTracker(
            risk.daily_loss_limit_pct,
            timezone_name=risk.trading_day_timezone,
            clock=clock,
        )
        self._locks = locks or KeyedLocks()

    def account_lock(self, account_id: str) -> threading.RLock:
        """Hold across ``can_open`` and order placement for one account."""
        return self._locks.get(("risk", account_id))

    def account_state(self, account_id: str, info: AccountInfo, positions: list[Position]) -> AccountRiskState:
        state = AccountRiskState.from_account(info, positions)
        state.daily_loss_accumulated = self.daily_loss.daily_loss(account_id, state.floating_pl)
        return state

    def tier_for(self, balance: float) -> RiskTierConfig:
        selected = self.risk.tiers[0]
        for tier in self.risk.tiers:
            if balance >= tier.min_balance:
                selected = tier
        return selected

    def can_open(
        self,
        balance: float,
        equity: float,
        open_position_count: int,
        floating_pl: float,
        confidence: float,
        account_id: str,
        *,
        symbol: str | None = None,
        direction: Direction | None = None,
        positions: list[Position] | None = None,
    ) -> RiskDecision:
        reasons: list[str] = []
        metadata: dict[str, float | int | str] = {}

        if balance <= 0 or equity <= 0:
            reasons.append("NON_POSITIVE_EQUITY")
        breached, loss = self.daily_loss.check(account_id, balance, floating_pl)
        metadata["daily_loss"] = round(loss, 2)
        metadata["daily_loss_limit"] = round(self.risk.daily_loss_limit_pct * balance, 2)
        if breached:
            reasons.append("DAILY_LOSS_LIMIT")
        if symbol is not None and direction is not None and positions:
            if has_opposing_position(positions, symbol, direction):
                reasons.append("HEDGE_BLOCKED")
        if self.risk.min_confidence is not None and confidence < self.risk.min_confidence:
            reasons.append("LOW_CONFIDENCE")
        tier = self.tier_for(balance)
        if tier.max_positions is not None and open_position_count >= tier.max_positions:
            reasons.append("TIER_MAX_POSITIONS")
            metadata["tier_max_positions"] = tier.max_positions

        return RiskDecision(
            allowed=not reasons,
            reason=reasons[0] if reasons else "OK",
            reason_codes=reasons,
            metadata=metadata,
        )

    def size_position(
        self,
        balance: float,
        sl_pips: float,
        symbol: str,
        confidence: float,
        bot: BotConfig,
        lot_multiplier: float = 1.0,
    ) -> float:
        tier = self.tier_for(balance)
        risk_amount = balance * tier.risk_percent / 100.0
        pip_value = pip_value_per_lot(symbol, self.risk.pip_value_per_lot)
        lots = lots_for_risk(risk_amount, sl_pips, pip_value)
        if confidence < self.risk.low_confidence_threshold:
            lots *= self.risk.low_confidence_factor
        lots *= max(0.0, lot_multiplier)
        lots = min(lots, tier.max_lot)
        lots = floor_to_step(lots, self.risk.lot_step)
        lots = max(self.risk.min_lot, min(lots, bot.max_lot_size))
        return round(lots, 2)
