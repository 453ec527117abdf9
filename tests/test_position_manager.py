from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from autotrader.data.candles import Candle
from autotrader.errors import BrokerExecutionError
from autotrader.execution.position_manager import PositionLifecycleManager
from autotrader.runtime.state import LinkStore
from autotrader.storage.models import Position, StrategyPositionLink
from autotrader.strategy.contracts import Direction

START = datetime(2026, 3, 2, tzinfo=timezone.utc)


def _doji(count: int = 40) -> list[Candle]:
    return [
        Candle(timestamp=START + timedelta(hours=i), open=1.1, high=1.101, low=1.099, close=1.1)
        for i in range(count)
    ]


def _falling(count: int = 40) -> list[Candle]:
    candles = []
    for i in range(count):
        open_price = 1.1 - 0.001 * i
        close = open_price - 0.001
        candles.append(
            Candle(
                timestamp=START + timedelta(hours=i),
                open=open_price,
                high=open_price + 0.0005,
                low=close - 0.0005,
                close=close,
            )
        )
    return candles


class _FakeMarketData:
    def __init__(self, candles: list[Candle] | None):
        self.candles = candles

    def fetch_candles(self, account_handle, symbol, timeframe, count):
        return self.candles


class _FakeConnection:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.modified: list[tuple[str, float | None, float | None]] = []

    def modify_position(self, position_id, stop_loss, take_profit):
        if self.fail:
            raise BrokerExecutionError("TRADE_RETCODE_INVALID_STOPS")
        self.modified.append((position_id, stop_loss, take_profit))


def _position(direction: Direction = Direction.BUY, **overrides) -> Position:
    values = dict(
        position_id="p1",
        symbol="EURUSD",
        direction=direction,
        volume=0.1,
        open_price=1.1000,
        current_price=1.1025,
        stop_loss=1.0980,
        take_profit=1.1100,
        profit=0.0,
    )
    values.update(overrides)
    return Position(**values)


def _manage(position: Position, candles=None, links: LinkStore | None = None, connection=None):
    manager = PositionLifecycleManager(_FakeMarketData(_doji() if candles is None else candles), links=links)
    connection = connection or _FakeConnection()
    outcome = manager.manage(connection, "acc", [position])[0]
    return outcome, connection


def test_promotes_when_profit_exceeds_one_atr() -> None:
    position = _position()
    outcome, connection = _manage(position)

    assert outcome.reason == "PROMOTED"
    assert outcome.new_stop_loss == pytest.approx(1.1002)
    assert position.stop_loss == pytest.approx(1.1002)
    assert connection.modified == [("p1", pytest.approx(1.1002), 1.1100)]


def test_sell_breakeven_sits_below_entry() -> None:
    position = _position(Direction.SELL, current_price=1.0970, stop_loss=1.1020, take_profit=1.0900)
    outcome, _ = _manage(position)
    assert outcome.reason == "PROMOTED"
    assert outcome.new_stop_loss == pytest.approx(1.0998)


def test_small_profit_waits() -> None:
    outcome, connection = _manage(_position(current_price=1.1010, profit=5.0))
    assert outcome.reason == "PROFIT_TOO_SMALL"
    assert connection.modified == []


def test_usd_profit_trigger_promotes() -> None:
    outcome, _ = _manage(_position(current_price=1.1010, profit=20.0))
    assert outcome.reason == "PROMOTED"


def test_price_too_close_to_breakeven() -> None:
    outcome, connection = _manage(_position(current_price=1.1001, profit=20.0))
    assert outcome.reason == "PRICE_TOO_CLOSE"
    assert connection.modified == []


def test_losing_position_untouched() -> None:
    outcome, _ = _manage(_position(current_price=1.0990))
    assert outcome.reason == "NOT_IN_PROFIT"


def test_stop_never_moves_backwards() -> None:
    position = _position(stop_loss=1.1005)
    outcome, connection = _manage(position)
    assert outcome.reason == "ALREADY_PROTECTED"
    assert position.stop_loss == 1.1005
    assert connection.modified == []


def test_swing_position_needs_more_profit() -> None:
    links = LinkStore()
    links.put(StrategyPositionLink(position_id="p1", strategy_name="order_block", entry_sl_pips=40.0, entry_tp_pips=80.0))

    outcome, _ = _manage(_position(current_price=1.1025), links=links)
    assert outcome.reason == "SWING_PROFIT_TOO_SMALL"

    outcome, _ = _manage(_position(current_price=1.1040), links=links)
    assert outcome.reason == "PROMOTED"


def test_swing_position_needs_momentum() -> None:
    position = _position(
        open_price=1.0000,
        current_price=1.0040,
        stop_loss=None,
        comment="Swing entry",
    )
    outcome, _ = _manage(position, candles=_falling())
    assert outcome.reason == "SWING_NO_MOMENTUM"


def test_modify_failure_keeps_stop() -> None:
    position = _position()
    outcome, _ = _manage(position, connection=_FakeConnection(fail=True))
    assert outcome.reason == "MODIFY_FAILED"
    assert position.stop_loss == 1.0980


def test_missing_candles_skip_position() -> None:
    outcome, _ = _manage(_position(), candles=[])
    assert outcome.reason == "NO_CANDLES"


class _BrokenForSymbol(_FakeMarketData):
    def __init__(self, broken_symbol: str):
        super().__init__(_doji())
        self.broken_symbol = broken_symbol

    def fetch_candles(self, account_handle, symbol, timeframe, count):
        if symbol == self.broken_symbol:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.candles


def test_unexpected_error_is_isolated_to_one_position() -> None:
    manager = PositionLifecycleManager(_BrokenForSymbol("XAUUSD"))
    connection = _FakeConnection()
    gold = _position(position_id="g1", symbol="XAUUSD", open_price=2000.0, current_price=2010.0, stop_loss=1990.0)
    euro = _position(position_id="e1")

    outcomes = manager.manage(connection, "acc", [gold, euro])

    assert [(o.position_id, o.reason) for o in outcomes] == [("g1", "ERROR"), ("e1", "PROMOTED")]
    assert [item[0] for item in connection.modified] == ["e1"]
