from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from autotrader.config import BotConfig, RiskConfig, RiskTierConfig
from autotrader.storage.models import AccountInfo, Position
from autotrader.strategy.contracts import Direction
from autotrader.strategy.risk import DailyLossTracker, RiskGate


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _position(symbol: str, direction: Direction, position_id: str = "1") -> Position:
    return Position(
        position_id=position_id,
        symbol=symbol,
        direction=direction,
        volume=0.1,
        open_price=1.1,
        current_price=1.1,
    )


BOT = BotConfig(allowed_pairs=["EURUSD"], max_lot_size=0.5)


def test_size_position_from_tier_risk() -> None:
    gate = RiskGate(RiskConfig())
    # 1000 balance -> 2% tier -> 20 USD over 20 pips at 10 USD/pip/lot = 0.1 lots
    assert gate.size_position(1000, 20, "EURUSD", 80, BOT) == 0.1


def test_size_position_halves_low_confidence() -> None:
    gate = RiskGate(RiskConfig())
    assert gate.size_position(1000, 20, "EURUSD", 60, BOT) == 0.05


def test_multiplier_never_exceeds_tier_max_lot() -> None:
    gate = RiskGate(RiskConfig())
    assert gate.size_position(1000, 20, "EURUSD", 80, BOT, lot_multiplier=2.0) == 0.2
    assert gate.size_position(1000, 10, "EURUSD", 80, BOT, lot_multiplier=2.0) == 0.2


def test_bot_max_lot_size_caps_volume() -> None:
    gate = RiskGate(RiskConfig())
    bot = BotConfig(allowed_pairs=["EURUSD"], max_lot_size=0.1)
    assert gate.size_position(1000, 10, "EURUSD", 80, bot, lot_multiplier=2.0) == 0.1


def test_tiny_risk_rounds_up_to_min_lot() -> None:
    gate = RiskGate(RiskConfig())
    assert gate.size_position(50, 50, "EURUSD", 80, BOT) == 0.01


def test_gold_uses_gold_pip_value() -> None:
    gate = RiskGate(RiskConfig())
    bot = BotConfig(allowed_pairs=["XAUUSD"], max_lot_size=5.0)
    assert gate.size_position(10000, 40, "XAUUSD", 80, bot) == 0.5


def test_tier_for_balance() -> None:
    gate = RiskGate(RiskConfig())
    assert gate.tier_for(0).max_lot == 0.01
    assert gate.tier_for(999.99).max_lot == 0.1
    assert gate.tier_for(25000).max_lot == 2.0


def test_daily_loss_latches_until_next_trading_day() -> None:
    clock = _Clock(datetime(2026, 3, 2, 10, tzinfo=timezone.utc))
    gate = RiskGate(RiskConfig(daily_loss_limit_pct=0.05), clock=clock)

    gate.daily_loss.record_realised("acc", -30.0)
    gate.daily_loss.record_realised("acc", 12.0)
    assert gate.can_open(1000, 970, 0, -10.0, 80, "acc").allowed is True

    blocked = gate.can_open(1000, 955, 0, -25.0, 80, "acc")
    assert blocked.allowed is False
    assert blocked.reason == "DAILY_LOSS_LIMIT"
    assert blocked.metadata["daily_loss"] == 55.0

    assert gate.can_open(1000, 1100, 0, 100.0, 80, "acc").allowed is False
    assert gate.daily_loss.is_breached("acc") is True

    clock.now += timedelta(days=1)
    assert gate.can_open(1000, 1000, 0, 0.0, 80, "acc").allowed is True


def test_daily_loss_is_per_account() -> None:
    tracker = DailyLossTracker(0.05, clock=_Clock(datetime(2026, 3, 2, tzinfo=timezone.utc)))
    tracker.record_realised("a", -100.0)
    assert tracker.check("a", 1000, 0.0) == (True, 100.0)
    assert tracker.check("b", 1000, 0.0) == (False, 0.0)
    assert tracker.is_breached("a") is True
    assert tracker.is_breached("b") is False


def test_account_state_combines_realised_and_floating_loss() -> None:
    gate = RiskGate(RiskConfig(), clock=_Clock(datetime(2026, 3, 2, 10, tzinfo=timezone.utc)))
    gate.daily_loss.record_realised("acc", -20.0)
    losing = _position("EURUSD", Direction.BUY)
    losing.profit = -15.0
    winning = _position("GBPUSD", Direction.SELL, position_id="2")
    winning.profit = 5.0

    state = gate.account_state("acc", AccountInfo(balance=1000.0, equity=990.0), [losing, winning])

    assert state.balance == 1000.0
    assert state.equity == 990.0
    assert state.open_position_count == 2
    assert state.floating_pl == -10.0
    assert state.daily_loss_accumulated == 30.0


def test_non_positive_equity_blocks() -> None:
    decision = RiskGate(RiskConfig()).can_open(1000, 0, 0, 0.0, 80, "acc")
    assert decision.allowed is False
    assert "NON_POSITIVE_EQUITY" in decision.reason_codes


def test_opposing_position_blocks_hedge() -> None:
    gate = RiskGate(RiskConfig())
    positions = [_position("EURUSD", Direction.BUY)]

    hedge = gate.can_open(1000, 1000, 1, 0.0, 80, "acc", symbol="eurusd", direction=Direction.SELL, positions=positions)
    same_side = gate.can_open(1000, 1000, 1, 0.0, 80, "acc", symbol="EURUSD", direction=Direction.BUY, positions=positions)
    other_symbol = gate.can_open(1000, 1000, 1, 0.0, 80, "acc", symbol="GBPUSD", direction=Direction.SELL, positions=positions)

    assert hedge.reason == "HEDGE_BLOCKED"
    assert same_side.allowed is True
    assert other_symbol.allowed is True


def test_min_confidence_and_tier_position_cap() -> None:
    risk = RiskConfig(
        tiers=[RiskTierConfig(min_balance=0, max_lot=1.0, risk_percent=1.0, max_positions=2)],
        min_confidence=60,
    )
    gate = RiskGate(risk)
    low = gate.can_open(1000, 1000, 0, 0.0, 55, "acc")
    full = gate.can_open(1000, 1000, 2, 0.0, 80, "acc")
    assert low.reason_codes == ["LOW_CONFIDENCE"]
    assert full.reason_codes == ["TIER_MAX_POSITIONS"]


def test_account_lock_serializes_check_and_place() -> None:
    risk = RiskConfig(tiers=[RiskTierConfig(min_balance=0, max_lot=1.0, risk_percent=1.0, max_positions=1)])
    gate = RiskGate(risk)
    positions: list[Position] = []

    def worker(index: int) -> None:
        with gate.account_lock("acc"):
            decision = gate.can_open(1000, 1000, len(positions), 0.0, 80, "acc")
            if decision.allowed:
                time.sleep(0.01)
                positions.append(_position("EURUSD", Direction.BUY, str(index)))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(positions) == 1


def test_invalid_risk_config_rejected() -> None:
    with pytest.raises(ValueError):
        RiskConfig(daily_loss_limit_pct=0)
