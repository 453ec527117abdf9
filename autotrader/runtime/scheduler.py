from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from autotrader.clock import utc_now
from autotrader.config import AppConfig, BotConfig, parse_bot_config
from autotrader.data.contracts import BrokerConnection, ConnectionFactory
from autotrader.data.market_data import MarketDataService
from autotrader.errors import ConfigurationInvalidError, TradingError
from autotrader.execution.position_manager import PositionLifecycleManager
from autotrader.monitoring.notifications import NotificationSink
from autotrader.runtime.state import AccountSnapshot, SchedulerState
from autotrader.storage.models import AccountInfo, Position, RobotAccountPair, StrategyPositionLink, TradeRecord
from autotrader.storage.repository import Repository
from autotrader.strategy.aggregator import SignalAggregator
from autotrader.strategy.contracts import AggregatedSignal, strategy_label
from autotrader.strategy.risk import RiskGate, has_opposing_position

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleReport:
    started_at: datetime
    finished_at: datetime | None = None
    accounts: int = 0
    robots: int = 0
    outcomes: Counter = field(default_factory=Counter)
    aborted: bool = False
    skipped: bool = False
    error: str | None = None

    @property
    def executed(self) -> int:
        return self.outcomes.get("EXECUTED", 0)


def group_by_account(pairs: list[RobotAccountPair]) -> dict[str, list[RobotAccountPair]]:
    grouped: dict[str, list[RobotAccountPair]] = {}
    for pair in pairs:
        grouped.setdefault(pair.account_id, []).append(pair)
    return grouped


class TradingScheduler:
    """Runs the trading cycle and the live position stream on two independent threads."""

    def __init__(
        self,
        *,
        config: AppConfig,
        repository: Repository,
        connections: ConnectionFactory,
        market_data: MarketDataService,
        aggregator: SignalAggregator,
        risk_gate: RiskGate,
        position_manager: PositionLifecycleManager,
        notifications: NotificationSink,
        state: SchedulerState,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.repository = repository
        self.connections = connections
        self.market_data = market_data
        self.aggregator = aggregator
        self.risk_gate = risk_gate
        self.position_manager = position_manager
        self.notifications = notifications
        self.state = state
        self.clock = clock
        self._lifecycle_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @classmethod
    def build(
        cls,
        *,
        config: AppConfig,
        repository: Repository,
        client: ConnectionFactory,
        market_data_provider,
        notifications: NotificationSink,
        clock: Callable[[], datetime] = utc_now,
    ) -> "TradingScheduler":
        state = SchedulerState.from_config(config.cache)
        market_data = MarketDataService(market_data_provider, state.candle_cache)
        return cls(
            config=config,
            repository=repository,
            connections=client,
            market_data=market_data,
            aggregator=SignalAggregator(
                weights=config.strategy_weights,
                config=config.aggregator,
                strategy_settings=config.strategies,
            ),
            risk_gate=RiskGate(config.risk, locks=state.account_locks, clock=clock),
            position_manager=PositionLifecycleManager(market_data, config.breakeven, state.links),
            notifications=notifications,
            state=state,
            clock=clock,
        )

    @property
    def is_running(self) -> bool:
        with self._lifecycle_lock:
            return bool(self._threads)

    def start(self) -> bool:
        with self._lifecycle_lock:
            if self._threads:
                LOGGER.info("Scheduler already running")
                return False
            self._stop_event = threading.Event()
            self._threads = [
                threading.Thread(target=self._trading_loop, args=(self._stop_event,), name="trading-cycle", daemon=True),
                threading.Thread(target=self._stream_loop, args=(self._stop_event,), name="position-stream", daemon=True),
            ]
            for thread in self._threads:
                thread.start()
        LOGGER.info(
            "Scheduler started trading_interval=%ss stream_interval=%ss",
            self.config.scheduler.trading_interval_seconds,
            self.config.scheduler.stream_interval_seconds,
        )
        return True

    def stop(self) -> bool:
        """Signal both loops and wait for any in-flight cycle to finish."""
        with self._lifecycle_lock:
            if not self._threads:
                return False
            threads = self._threads
            self._stop_event.set()
            self._threads = []
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout=self.config.scheduler.join_timeout_seconds)
        LOGGER.info("Scheduler stopped")
        return True

    def _trading_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.run_trading_cycle()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Trading cycle crashed")
            if stop_event.wait(self.config.scheduler.trading_interval_seconds):
                break

    def _stream_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.config.scheduler.stream_interval_seconds):
            try:
                self.publish_live_updates()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Position stream crashed")

    def run_trading_cycle(self) -> CycleReport:
        report = CycleReport(started_at=self.clock())
        if not self._cycle_lock.acquire(blocking=False):
            LOGGER.warning("Previous trading cycle still running, skipping")
            report.skipped = True
            return report
        try:
            try:
                pairs = self.repository.get_enabled_robot_account_pairs()
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("Cycle aborted: could not load robot accounts: %s", exc)
                report.aborted = True
                report.error = str(exc)
                return report

            grouped = group_by_account(pairs)
            report.accounts = len(grouped)
            report.robots = len(pairs)
            for snapshot in self.state.snapshots.all():
                if snapshot.account_id not in grouped:
                    self.state.snapshots.remove(snapshot.account_id)

            workers = min(self.config.scheduler.max_concurrent_accounts, len(grouped))
            if workers > 1:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="account") as pool:
                    for outcomes in pool.map(lambda item: self._process_account_safely(*item), grouped.items()):
                        report.outcomes.update(outcomes)
            else:
                for account_id, account_pairs in grouped.items():
                    report.outcomes.update(self._process_account_safely(account_id, account_pairs))
            return report
        finally:
            report.finished_at = self.clock()
            self._cycle_lock.release()
            if not report.skipped and not report.aborted:
                LOGGER.info(
                    "Cycle finished accounts=%d robots=%d outcomes=%s",
                    report.accounts,
                    report.robots,
                    dict(report.outcomes),
                )

    def _connection_for(self, broker_handle: str) -> BrokerConnection:
        with self.state.connections_lock:
            connection = self.state.connections.get(broker_handle)
            if connection is None:
                connection = self.connections.connect(broker_handle)
                self.state.connections[broker_handle] = connection
            return connection

    def _drop_connection(self, broker_handle: str) -> None:
        with self.state.connections_lock:
            self.state.connections.pop(broker_handle, None)

    def _process_account_safely(self, account_id: str, pairs: list[RobotAccountPair]) -> Counter:
        try:
            return self._process_account(account_id, pairs)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Account processing failed account=%s", account_id)
            return Counter({"ACCOUNT_ERROR": 1})

    def _process_account(self, account_id: str, pairs: list[RobotAccountPair]) -> Counter:
        outcomes: Counter = Counter()
        head = pairs[0]
        try:
            connection = self._connection_for(head.broker_handle)
            info = connection.get_account_info()
            positions = connection.get_open_positions()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Skipping account=%s: broker unavailable: %s", account_id, exc)
            self._drop_connection(head.broker_handle)
            outcomes["ACCOUNT_UNAVAILABLE"] += 1
            return outcomes

        previous = self.state.snapshots.update(account_id, head.owner_id, info, positions, self.clock())
        self._sync_closed_positions(account_id, head.owner_id, previous, positions)
        self.position_manager.manage(connection, head.broker_handle, positions)

        for pair in pairs:
            try:
                bot = parse_bot_config(pair.bot_config)
            except ConfigurationInvalidError as exc:
                LOGGER.warning("Skipping robot=%s account=%s: invalid config: %s", pair.robot_id, account_id, exc)
                outcomes["INVALID_CONFIG"] += 1
                continue
            for symbol in bot.allowed_pairs:
                try:
                    outcome = self._process_symbol(pair, bot, symbol, connection, info, positions)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Symbol processing failed robot=%s symbol=%s", pair.robot_id, symbol)
                    outcome = "ERROR"
                outcomes[outcome] += 1
        if outcomes["EXECUTED"]:
            self.state.snapshots.update(account_id, head.owner_id, info, positions, self.clock())
        return outcomes

    def _sync_closed_positions(
        self,
        account_id: str,
        owner_id: str | None,
        previous: AccountSnapshot | None,
        positions: list[Position],
    ) -> None:
        if previous is None:
            return
        current_ids = {position.position_id for position in positions}
        now = self.clock()
        for position in previous.positions:
            if position.position_id in current_ids:
                continue
            self.risk_gate.daily_loss.record_realised(account_id, position.profit)
            self.state.links.discard(position.position_id)
            try:
                self.repository.mark_trade_closed(
                    account_id,
                    position.position_id,
                    closed_at=now,
                    profit=position.profit,
                )
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("Could not mark trade closed position=%s: %s", position.position_id, exc)
            LOGGER.info(
                "Position closed by broker account=%s position=%s symbol=%s profit=%.2f",
                account_id,
                position.position_id,
                position.symbol,
                position.profit,
            )
            self.notifications.publish_trade_event(
                owner_id,
                "trade_closed",
                f"{position.symbol} {position.direction.value} closed",
                {"position_id": position.position_id, "profit": round(position.profit, 2)},
            )

    def _process_symbol(
        self,
        pair: RobotAccountPair,
        bot: BotConfig,
        symbol: str,
        connection: BrokerConnection,
        info: AccountInfo,
        positions: list[Position],
    ) -> str:
        account_id = pair.account_id
        now = self.clock()
        if self.state.cooldowns.is_cooling_down(account_id, symbol, now, bot.cooldown_seconds):
            return "COOLDOWN"
        if bot.max_positions is not None:
            robot_positions = sum(1 for p in positions if p.symbol.upper() in bot.allowed_pairs)
            if robot_positions >= bot.max_positions:
                return "ROBOT_MAX_POSITIONS"
        if self.risk_gate.daily_loss.is_breached(account_id):
            return "DAILY_LOSS_LIMIT"

        timeframe = bot.timeframe or self.config.scheduler.timeframe
        candles = self.market_data.fetch_candles(pair.broker_handle, symbol, timeframe, self.config.scheduler.candle_count)
        if not candles:
            return "NO_DATA"
        signal = self.aggregator.decide(candles, symbol, bot)
        if signal is None:
            return "NO_SIGNAL"
        if has_opposing_position(positions, symbol, signal.direction):
            LOGGER.info("Signal rejected symbol=%s direction=%s reason=HEDGE_BLOCKED", symbol, signal.direction.value)
            return "HEDGE_BLOCKED"

        with self.risk_gate.account_lock(account_id):
            risk_state = self.risk_gate.account_state(account_id, info, positions)
            decision = self.risk_gate.can_open(
                risk_state.balance,
                risk_state.equity,
                risk_state.open_position_count,
                risk_state.floating_pl,
                signal.confidence,
                account_id,
                symbol=symbol,
                direction=signal.direction,
                positions=positions,
            )
            if not decision.allowed:
                LOGGER.info(
                    "Signal rejected symbol=%s direction=%s reason=%s codes=%s daily_loss=%.2f",
                    symbol,
                    signal.direction.value,
                    decision.reason,
                    ",".join(decision.reason_codes),
                    risk_state.daily_loss_accumulated,
                )
                return decision.reason
            volume = self.risk_gate.size_position(
                info.balance,
                signal.sl_distance,
                symbol,
                signal.confidence,
                bot,
                signal.lot_multiplier,
            )
            try:
                result = connection.execute_trade(signal, volume, comment=strategy_label(signal.strategy_name))
            except TradingError as exc:
                LOGGER.warning("Trade failed robot=%s symbol=%s: %s", pair.robot_id, symbol, exc)
                self.notifications.publish_trade_event(
                    pair.owner_id,
                    "trade_failed",
                    f"{symbol} {signal.direction.value} failed",
                    {"error": str(exc)},
                )
                return "EXECUTION_FAILED"
            self.state.cooldowns.mark(account_id, symbol, now)
            positions.append(self._position_from_signal(result.position_id, signal, volume, result.fill_price))

        self._after_execution(pair, bot, signal, volume, result.position_id, now)
        return "EXECUTED"

    @staticmethod
    def _position_from_signal(
        position_id: str,
        signal: AggregatedSignal,
        volume: float,
        fill_price: float | None,
    ) -> Position:
        price = fill_price if fill_price is not None else signal.entry_price
        return Position(
            position_id=position_id,
            symbol=signal.symbol.upper(),
            direction=signal.direction,
            volume=volume,
            open_price=price,
            current_price=price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
        )

    def _after_execution(
        self,
        pair: RobotAccountPair,
        bot: BotConfig,
        signal: AggregatedSignal,
        volume: float,
        position_id: str,
        now: datetime,
    ) -> None:
        label = strategy_label(signal.strategy_name)
        self.state.links.put(
            StrategyPositionLink(
                position_id=position_id,
                strategy_name=label,
                entry_sl_pips=signal.sl_distance,
                entry_tp_pips=signal.tp_distance,
                robot_label=bot.strategy,
            )
        )
        try:
            self.repository.record_trade(
                TradeRecord(
                    robot_id=pair.robot_id,
                    account_id=pair.account_id,
                    position_id=position_id,
                    symbol=signal.symbol,
                    direction=signal.direction,
                    volume=volume,
                    entry_price=signal.entry_price,
                    stop_loss=signal.stop_loss,
                    take_profit=signal.take_profit,
                    confidence=signal.confidence,
                    strategy_name=label,
                    rationale=signal.rationale,
                    opened_at=now,
                )
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Trade executed but not recorded position=%s: %s", position_id, exc)
        LOGGER.info(
            "Trade executed robot=%s account=%s symbol=%s direction=%s volume=%.2f confidence=%.1f "
            "confluence=%d strategy=%s position=%s",
            pair.robot_id,
            pair.account_id,
            signal.symbol,
            signal.direction.value,
            volume,
            signal.confidence,
            signal.confluence_count,
            label,
            position_id,
        )
        self.notifications.publish_trade_event(
            pair.owner_id,
            "trade_executed",
            f"{signal.symbol} {signal.direction.value} {volume:.2f} lots",
            {
                "confidence": round(signal.confidence, 1),
                "confluence": signal.confluence_count,
                "strategy": label,
                "sl": round(signal.stop_loss, 5),
                "tp": round(signal.take_profit, 5),
            },
        )

    def publish_live_updates(self) -> int:
        """Publish cached account snapshots; never calls the broker."""
        published = 0
        for snapshot in self.state.snapshots.all():
            try:
                if snapshot.info is not None:
                    self.notifications.publish_balance_update(snapshot.owner_id, snapshot.info)
                self.notifications.publish_position_update(snapshot.owner_id, list(snapshot.positions))
                published += 1
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Live update failed account=%s: %s", snapshot.account_id, exc)
        return published
