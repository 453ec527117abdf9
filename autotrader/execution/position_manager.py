from __future__ import annotations

import logging
from dataclasses import dataclass

from autotrader.config import BreakevenConfig
from autotrader.data.candles import Candle, closes
from autotrader.data.contracts import BrokerConnection
from autotrader.data.market_data import MarketDataService
from autotrader.errors import TradingError
from autotrader.execution.sizing import profit_in_price
from autotrader.runtime.state import LinkStore
from autotrader.storage.models import Position, StrategyPositionLink
from autotrader.strategy.contracts import Direction
from autotrader.strategy.indicators import atr, rsi
from autotrader.strategy.structure import pip_size

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BreakevenOutcome:
    position_id: str
    promoted: bool
    reason: str
    new_stop_loss: float | None = None


class PositionLifecycleManager:
    """Promotes stops to breakeven once a position has earned it.

    Exits stay with the broker-side SL/TP: this class never closes a
    position, never takes partial profit and never moves a stop away from price.
    """

    def __init__(
        self,
        market_data: MarketDataService,
        config: BreakevenConfig | None = None,
        links: LinkStore | None = None,
    ):
        self.market_data = market_data
        self.config = config or BreakevenConfig()
        self.links = links or LinkStore()

    def manage(
        self,
        connection: BrokerConnection,
        account_handle: str,
        positions: list[Position],
    ) -> list[BreakevenOutcome]:
        outcomes: list[BreakevenOutcome] = []
        for position in positions:
            try:
                outcome = self._manage_position(connection, account_handle, position)
            except TradingError as exc:
                LOGGER.warning("Position management failed position=%s: %s", position.position_id, exc)
                outcome = BreakevenOutcome(position.position_id, False, "ERROR")
            except Exception:  # noqa: BLE001
                LOGGER.exception("Position management crashed position=%s", position.position_id)
                outcome = BreakevenOutcome(position.position_id, False, "ERROR")
            outcomes.append(outcome)
        return outcomes

    def is_swing_position(self, position: Position, link: StrategyPositionLink | None) -> bool:
        if link is not None and link.entry_sl_pips >= self.config.swing_sl_pips_threshold:
            return True
        labels = [position.comment or ""]
        if link is not None:
            labels.extend([link.strategy_name, link.robot_label or ""])
        text = " ".join(labels).lower()
        return any(tag in text for tag in self.config.swing_tags)

    def has_momentum(self, candles: list[Candle], direction: Direction) -> bool:
        recent = candles[-self.config.momentum_lookback :]
        favorable = sum(1 for c in recent if (c.close - c.open) * direction.sign > 0)
        if favorable >= self.config.momentum_min_favorable:
            return True
        rsi_value = rsi(closes(candles), self.config.rsi_period)[-1]
        low, high = self.config.buy_rsi_band if direction is Direction.BUY else self.config.sell_rsi_band
        return low <= rsi_value <= high

    def breakeven_price(self, position: Position, atr_value: float) -> float:
        if self.config.buffer_pips is not None:
            buffer = self.config.buffer_pips * pip_size(position.symbol)
        else:
            buffer = self.config.buffer_atr_multiple * atr_value
        return position.open_price + position.direction.sign * buffer

    def _manage_position(
        self,
        connection: BrokerConnection,
        account_handle: str,
        position: Position,
    ) -> BreakevenOutcome:
        position_id = position.position_id
        sign = position.direction.sign
        candles = self.market_data.fetch_candles(
            account_handle,
            position.symbol,
            self.config.timeframe,
            self.config.candle_count,
        )
        if not candles:
            LOGGER.info("Skipping position=%s: no candles for %s", position_id, position.symbol)
            return BreakevenOutcome(position_id, False, "NO_CANDLES")
        atr_value = atr(candles, self.config.atr_period)
        if atr_value <= 0:
            return BreakevenOutcome(position_id, False, "NO_ATR")

        profit = profit_in_price(position)
        if profit <= 0:
            return BreakevenOutcome(position_id, False, "NOT_IN_PROFIT")
        new_stop = self.breakeven_price(position, atr_value)
        if position.stop_loss is not None and (position.stop_loss - new_stop) * sign >= 0:
            return BreakevenOutcome(position_id, False, "ALREADY_PROTECTED")

        link = self.links.get(position_id)
        profit_pips = profit / pip_size(position.symbol)
        if self.is_swing_position(position, link):
            if profit_pips < self.config.swing_min_profit_pips:
                return BreakevenOutcome(position_id, False, "SWING_PROFIT_TOO_SMALL")
            if not self.has_momentum(candles, position.direction):
                return BreakevenOutcome(position_id, False, "SWING_NO_MOMENTUM")
        else:
            by_atr = profit >= self.config.standard_atr_multiple * atr_value
            by_usd = (
                self.config.standard_profit_usd is not None
                and position.profit >= self.config.standard_profit_usd
            )
            if not (by_atr or by_usd):
                return BreakevenOutcome(position_id, False, "PROFIT_TOO_SMALL")

        if (position.current_price - new_stop) * sign <= 0:
            return BreakevenOutcome(position_id, False, "PRICE_TOO_CLOSE")

        try:
            connection.modify_position(position_id, new_stop, position.take_profit)
        except TradingError as exc:
            LOGGER.warning("Could not move stop to breakeven position=%s: %s", position_id, exc)
            return BreakevenOutcome(position_id, False, "MODIFY_FAILED")

        LOGGER.info(
            "Breakeven promoted position=%s symbol=%s profit_pips=%.1f old_sl=%s new_sl=%.5f",
            position_id,
            position.symbol,
            profit_pips,
            position.stop_loss,
            new_stop,
        )
        position.stop_loss = new_stop
        return BreakevenOutcome(position_id, True, "PROMOTED", new_stop)
