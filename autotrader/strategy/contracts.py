from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from autotrader.data.candles import Candle

if TYPE_CHECKING:
    from autotrader.config import BotConfig


class Direction(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.BUY else -1

    @property
    def opposite(self) -> "Direction":
        return Direction.SELL if self is Direction.BUY else Direction.BUY


class StrategyName(str, Enum):
    EMA200_PULLBACK = "ema200_pullback"
    BREAK_AND_RETEST = "break_and_retest"
    LIQUIDITY_SWEEP = "liquidity_sweep"
    LONDON_BREAKOUT = "london_breakout"
    ORDER_BLOCK = "order_block"
    VWAP_MEAN_REVERSION = "vwap_mean_reversion"
    FIB_CONTINUATION = "fib_continuation"
    RSI_DIVERGENCE = "rsi_divergence"


# Configured names are lower-cased and stripped of spaces, dashes and
# underscores before lookup.
STRATEGY_ALIASES: dict[str, StrategyName] = {
    "ema200pullback": StrategyName.EMA200_PULLBACK,
    "ema200": StrategyName.EMA200_PULLBACK,
    "emapullback": StrategyName.EMA200_PULLBACK,
    "pullback": StrategyName.EMA200_PULLBACK,
    "trendpullback": StrategyName.EMA200_PULLBACK,
    "breakandretest": StrategyName.BREAK_AND_RETEST,
    "breakretest": StrategyName.BREAK_AND_RETEST,
    "retest": StrategyName.BREAK_AND_RETEST,
    "liquiditysweep": StrategyName.LIQUIDITY_SWEEP,
    "sweep": StrategyName.LIQUIDITY_SWEEP,
    "stophunt": StrategyName.LIQUIDITY_SWEEP,
    "londonbreakout": StrategyName.LONDON_BREAKOUT,
    "londonsessionbreakout": StrategyName.LONDON_BREAKOUT,
    "london": StrategyName.LONDON_BREAKOUT,
    "sessionbreakout": StrategyName.LONDON_BREAKOUT,
    "orderblock": StrategyName.ORDER_BLOCK,
    "ob": StrategyName.ORDER_BLOCK,
    "vwapmeanreversion": StrategyName.VWAP_MEAN_REVERSION,
    "vwap": StrategyName.VWAP_MEAN_REVERSION,
    "meanreversion": StrategyName.VWAP_MEAN_REVERSION,
    "fibcontinuation": StrategyName.FIB_CONTINUATION,
    "fibonaccicontinuation": StrategyName.FIB_CONTINUATION,
    "fib": StrategyName.FIB_CONTINUATION,
    "fibonacci": StrategyName.FIB_CONTINUATION,
    "rsidivergence": StrategyName.RSI_DIVERGENCE,
    "divergence": StrategyName.RSI_DIVERGENCE,
}


def _alias_key(name: str) -> str:
    return "".join(ch for ch in str(name).strip().lower() if ch.isalnum())


def resolve_strategy_name(name: str | StrategyName) -> StrategyName:
    if isinstance(name, StrategyName):
        return name
    raw = str(name).strip().lower()
    for member in StrategyName:
        if raw == member.value:
            return member
    resolved = STRATEGY_ALIASES.get(_alias_key(raw))
    if resolved is None:
        raise ValueError(f"Unknown strategy name: {name!r}")
    return resolved


@dataclass(frozen=True, slots=True)
class TradeProposal:
    symbol: str
    direction: Direction
    entry_price: float
    stop_loss: float | None
    take_profit: float | None
    confidence: float
    strategy_name: StrategyName
    rationale: str = ""
    sl_distance: float | None = None
    tp_distance: float | None = None


@dataclass(frozen=True, slots=True)
class AggregatedSignal:
    symbol: str
    direction: Direction
    entry_price: float
    stop_loss: float
    take_profit: float
    confidence: float
    strategy_name: StrategyName | str
    rationale: str
    sl_distance: float
    tp_distance: float
    weighted_confidence: float
    confluence_count: int
    agreeing_strategies: tuple[StrategyName, ...] = field(default_factory=tuple)
    lot_multiplier: float = 1.0


class StrategyFunction(Protocol):
    def __call__(
        self,
        candles: list[Candle],
        symbol: str,
        bot: "BotConfig",
    ) -> TradeProposal | None:
        ...


def strategy_label(name: StrategyName | str) -> str:
    return name.value if isinstance(name, StrategyName) else str(name)
