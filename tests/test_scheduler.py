from __future__ import annotations

import itertools
import time
from datetime import datetime, timedelta, timezone

import pytest

from autotrader.config import AppConfig, RiskConfig, SchedulerConfig
from autotrader.data.candle_cache import CandleCache
from autotrader.data.candles import Candle
from autotrader.errors import BrokerExecutionError
from autotrader.execution.position_manager import PositionLifecycleManager
from autotrader.runtime.scheduler import TradingScheduler, group_by_account
from autotrader.runtime.state import SchedulerState
from autotrader.storage.models import AccountInfo, ExecutionResult, Position, RobotAccountPair
from autotrader.strategy.aggregator import SignalAggregator
from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal
from autotrader.strategy.risk import RiskGate

NOW = datetime(2026, 3, 2, 10, tzinfo=timezone.utc)


def _doji(count: int = 40) -> list[Candle]:
    return [
        Candle(timestamp=NOW - timedelta(hours=count - i), open=1.1, high=1.101, low=1.099, close=1.1)
        for i in range(count)
    ]


class _MarketData:
    def __init__(self, failing: set[str] | None = None):
        self.failing = failing or set()
        self.calls: list[str] = []

    def fetch_candles(self, account_handle, symbol, timeframe, count):
        self.calls.append(symbol)
        if symbol in self.failing:
            raise RuntimeError(f"feed exploded for {symbol}")
        return _doji()


class _Connection:
    _ids = itertools.count(100)

    def __init__(self, balance: float = 1000.0, positions: list[Position] | None = None):
        self.info = AccountInfo(balance=balance, equity=balance)
        self.positions = positions or []
        self.executed: list[tuple[str, Direction, float]] = []
        self.fail_execution = False
        self.broker_calls = 0

    def get_account_info(self) -> AccountInfo:
        self.broker_calls += 1
        return self.info

    def get_open_positions(self) -> list[Position]:
        self.broker_calls += 1
        return list(self.positions)

    def execute_trade(self, signal, volume, comment=None) -> ExecutionResult:
        if self.fail_execution:
            raise BrokerExecutionError("market closed")
        position_id = str(next(self._ids))
        self.executed.append((signal.symbol, signal.direction, volume))
        self.positions.append(
            Position(
                position_id=position_id,
                symbol=signal.symbol,
                direction=signal.direction,
                volume=volume,
                open_price=signal.entry_price,
                current_price=signal.entry_price,
            )
        )
        return ExecutionResult(position_id=position_id, fill_price=signal.entry_price)

    def modify_position(self, position_id, stop_loss, take_profit) -> None:
        pass


class _Connections:
    def __init__(self, connections: dict[str, _Connection]):
        self.connections = connections
        self.connects: list[str] = []

    def connect(self, broker_handle: str) -> _Connection:
        self.connects.append(broker_handle)
        return self.connections[broker_handle]


class _Repository:
    def __init__(self, pairs: list[RobotAccountPair]):
        self.pairs = pairs
        self.fail = False
        self.loads = 0
        self.trades: list = []
        self.closed: list[tuple[str, str, float | None]] = []

    def get_enabled_robot_account_pairs(self) -> list[RobotAccountPair]:
        self.loads += 1
        if self.fail:
            raise RuntimeError("database is locked")
        return list(self.pairs)

    def record_trade(self, trade) -> int:
        self.trades.append(trade)
        return len(self.trades)

    def mark_trade_closed(self, account_id, position_id, *, closed_at, profit) -> bool:
        self.closed.append((account_id, position_id, profit))
        return True


class _Sink:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.position_updates: list[tuple[str | None, int]] = []
        self.balance_updates: list[str | None] = []

    def publish_position_update(self, owner_id, positions) -> None:
        self.position_updates.append((owner_id, len(positions)))

    def publish_balance_update(self, owner_id, info) -> None:
        self.balance_updates.append(owner_id)

    def publish_trade_event(self, owner_id, event, message, context=None) -> None:
        self.events.append((event, message))


def _agreeing(direction: Direction | None = Direction.SELL, count: int = 2):
    def build(name: StrategyName):
        def strategy(candles, symbol, bot):
            if direction is None:
                return None
            sign = direction.sign
            return TradeProposal(
                symbol=symbol,
                direction=direction,
                entry_price=1.1,
                stop_loss=1.1 - sign * 0.002,
                take_profit=1.1 + sign * 0.004,
                confidence=70,
                strategy_name=name,
                rationale="stub",
                sl_distance=20.0,
                tp_distance=40.0,
            )

        return strategy

    return [(name, build(name)) for name in list(StrategyName)[:count]]


def _pair(robot_id: str, account_id: str = "acc", **bot) -> RobotAccountPair:
    bot.setdefault("allowed_pairs", ["EURUSD"])
    return RobotAccountPair(
        robot_id=robot_id,
        bot_config=bot,
        account_id=account_id,
        broker_handle=account_id,
        owner_id=f"owner-{account_id}",
    )


def _scheduler(
    pairs: list[RobotAccountPair],
    connections: dict[str, _Connection],
    *,
    direction: Direction | None = Direction.SELL,
    market_data: _MarketData | None = None,
    scheduler_config: SchedulerConfig | None = None,
):
    config = AppConfig(scheduler=scheduler_config or SchedulerConfig())
    state = SchedulerState(candle_cache=CandleCache(ttl_seconds=55))
    market_data = market_data or _MarketData()
    repository = _Repository(pairs)
    sink = _Sink()
    factory = _Connections(connections)
    scheduler = TradingScheduler(
        config=config,
        repository=repository,
        connections=factory,
        market_data=market_data,
        aggregator=SignalAggregator(strategies=_agreeing(direction)),
        risk_gate=RiskGate(RiskConfig(), locks=state.account_locks, clock=lambda: NOW),
        position_manager=PositionLifecycleManager(market_data, links=state.links),
        notifications=sink,
        state=state,
        clock=lambda: NOW,
    )
    return scheduler, repository, sink, factory


def test_cycle_executes_recorded_trade() -> None:
    connection = _Connection()
    scheduler, repository, sink, _ = _scheduler([_pair("r1")], {"acc": connection})

    report = scheduler.run_trading_cycle()

    assert report.executed == 1
    assert connection.executed == [("EURUSD", Direction.SELL, 0.1)]
    trade = repository.trades[0]
    assert trade.robot_id == "r1"
    assert trade.strategy_name == list(StrategyName)[0].value
    assert trade.volume == 0.1
    link = scheduler.state.links.get(trade.position_id)
    assert link is not None
    assert link.entry_sl_pips == 20.0
    assert ("trade_executed", "EURUSD sell 0.10 lots") in sink.events


def test_cooldown_blocks_repeat_trade() -> None:
    scheduler, _, _, _ = _scheduler([_pair("r1")], {"acc": _Connection()})
    scheduler.run_trading_cycle()

    report = scheduler.run_trading_cycle()

    assert report.outcomes["COOLDOWN"] == 1
    assert report.executed == 0


def test_invalid_robot_config_is_skipped() -> None:
    pairs = [_pair("bad", allowed_pairs=[]), _pair("good")]
    scheduler, _, _, _ = _scheduler(pairs, {"acc": _Connection()})

    report = scheduler.run_trading_cycle()

    assert report.outcomes["INVALID_CONFIG"] == 1
    assert report.executed == 1


def test_repository_failure_aborts_cycle() -> None:
    scheduler, repository, _, factory = _scheduler([_pair("r1")], {"acc": _Connection()})
    repository.fail = True

    report = scheduler.run_trading_cycle()

    assert report.aborted is True
    assert factory.connects == []


def test_symbol_failure_does_not_stop_other_symbols() -> None:
    market_data = _MarketData(failing={"GBPUSD"})
    pairs = [_pair("r1", allowed_pairs=["GBPUSD", "EURUSD"])]
    scheduler, _, _, _ = _scheduler(pairs, {"acc": _Connection()}, market_data=market_data)

    report = scheduler.run_trading_cycle()

    assert report.outcomes["ERROR"] == 1
    assert report.executed == 1


def test_position_management_error_does_not_skip_other_accounts() -> None:
    gold = Position(
        position_id="g1",
        symbol="XAUUSD",
        direction=Direction.BUY,
        volume=0.1,
        open_price=2000.0,
        current_price=2010.0,
    )
    market_data = _MarketData(failing={"XAUUSD"})
    pairs = [_pair("r-a", account_id="a"), _pair("r-b", account_id="b")]
    connections = {"a": _Connection(positions=[gold]), "b": _Connection()}
    scheduler, _, _, _ = _scheduler(pairs, connections, market_data=market_data)

    report = scheduler.run_trading_cycle()

    assert report.executed == 2
    assert market_data.calls.count("EURUSD") == 2
    assert all(len(connection.executed) == 1 for connection in connections.values())


class _ExplodingManager:
    def __init__(self, broken_handle: str):
        self.broken_handle = broken_handle

    def manage(self, connection, account_handle, positions):
        if account_handle == self.broken_handle:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return []


@pytest.mark.parametrize("workers", [1, 2])
def test_account_failure_is_isolated(workers: int) -> None:
    connections = {"a": _Connection(), "b": _Connection()}
    pairs = [_pair("r-a", account_id="a"), _pair("r-b", account_id="b")]
    scheduler, _, _, _ = _scheduler(
        pairs,
        connections,
        scheduler_config=SchedulerConfig(max_concurrent_accounts=workers),
    )
    scheduler.position_manager = _ExplodingManager("a")

    report = scheduler.run_trading_cycle()

    assert report.aborted is False
    assert report.outcomes["ACCOUNT_ERROR"] == 1
    assert report.executed == 1
    assert connections["a"].executed == []
    assert len(connections["b"].executed) == 1


def test_opposing_position_blocks_hedge() -> None:
    existing = Position(
        position_id="1", symbol="EURUSD", direction=Direction.BUY, volume=0.1, open_price=1.1, current_price=1.1
    )
    connection = _Connection(positions=[existing])
    scheduler, _, _, _ = _scheduler([_pair("r1")], {"acc": connection})

    report = scheduler.run_trading_cycle()

    assert report.outcomes["HEDGE_BLOCKED"] == 1
    assert connection.executed == []


def test_robot_position_cap() -> None:
    existing = Position(
        position_id="1", symbol="EURUSD", direction=Direction.SELL, volume=0.1, open_price=1.1, current_price=1.1
    )
    scheduler, _, _, _ = _scheduler([_pair("r1", max_positions=1)], {"acc": _Connection(positions=[existing])})

    report = scheduler.run_trading_cycle()

    assert report.outcomes["ROBOT_MAX_POSITIONS"] == 1


def test_daily_loss_limit_blocks_new_trades() -> None:
    losing = Position(
        position_id="1",
        symbol="GBPUSD",
        direction=Direction.SELL,
        volume=0.5,
        open_price=1.25,
        current_price=1.26,
        profit=-60.0,
    )
    connection = _Connection(positions=[losing])
    market_data = _MarketData()
    scheduler, _, _, _ = _scheduler([_pair("r1")], {"acc": connection}, market_data=market_data)

    report = scheduler.run_trading_cycle()

    assert report.outcomes["DAILY_LOSS_LIMIT"] == 1
    assert connection.executed == []
    assert market_data.calls.count("EURUSD") == 1

    again = scheduler.run_trading_cycle()

    assert again.outcomes["DAILY_LOSS_LIMIT"] == 1
    assert market_data.calls.count("EURUSD") == 1


def test_execution_failure_is_reported_without_cooldown() -> None:
    connection = _Connection()
    connection.fail_execution = True
    scheduler, repository, sink, _ = _scheduler([_pair("r1")], {"acc": connection})

    report = scheduler.run_trading_cycle()

    assert report.outcomes["EXECUTION_FAILED"] == 1
    assert repository.trades == []
    assert scheduler.state.cooldowns.last_trade("acc", "EURUSD") is None
    assert sink.events[0][0] == "trade_failed"


def test_closed_positions_are_synced() -> None:
    position = Position(
        position_id="p1",
        symbol="EURUSD",
        direction=Direction.BUY,
        volume=0.1,
        open_price=1.1,
        current_price=1.096,
        profit=-40.0,
    )
    connection = _Connection(positions=[position])
    scheduler, repository, sink, _ = _scheduler([_pair("r1")], {"acc": connection}, direction=None)
    scheduler.run_trading_cycle()

    connection.positions = []
    scheduler.run_trading_cycle()

    assert repository.closed == [("acc", "p1", -40.0)]
    assert scheduler.risk_gate.daily_loss.daily_loss("acc") == 40.0
    assert sink.events[-1][0] == "trade_closed"


def test_accounts_run_concurrently_with_isolated_state() -> None:
    connections = {name: _Connection() for name in ("a1", "a2", "a3")}
    pairs = [_pair(f"r-{name}", account_id=name) for name in connections]
    scheduler, _, _, _ = _scheduler(
        pairs,
        connections,
        scheduler_config=SchedulerConfig(max_concurrent_accounts=2),
    )

    report = scheduler.run_trading_cycle()

    assert report.accounts == 3
    assert report.executed == 3
    assert all(len(connection.executed) == 1 for connection in connections.values())


def test_live_updates_read_only_from_snapshots() -> None:
    connection = _Connection()
    scheduler, _, sink, _ = _scheduler([_pair("r1")], {"acc": connection})
    scheduler.run_trading_cycle()
    calls_after_cycle = connection.broker_calls

    published = scheduler.publish_live_updates()

    assert published == 1
    assert sink.balance_updates == ["owner-acc"]
    assert sink.position_updates == [("owner-acc", 1)]
    assert connection.broker_calls == calls_after_cycle


def test_start_and_stop_are_idempotent() -> None:
    scheduler, repository, _, _ = _scheduler(
        [_pair("r1")],
        {"acc": _Connection()},
        direction=None,
        scheduler_config=SchedulerConfig(trading_interval_seconds=3600, stream_interval_seconds=3600),
    )

    assert scheduler.stop() is False
    assert scheduler.start() is True
    assert scheduler.start() is False
    deadline = time.monotonic() + 5
    while repository.loads == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert scheduler.is_running is True
    assert scheduler.stop() is True
    assert scheduler.is_running is False
    assert scheduler.stop() is False
    assert repository.loads == 1


def test_group_by_account_keeps_order() -> None:
    pairs = [_pair("r1", "b"), _pair("r2", "a"), _pair("r3", "b")]
    grouped = group_by_account(pairs)
    assert list(grouped) == ["b", "a"]
    assert [p.robot_id for p in grouped["b"]] == ["r1", "r3"]
