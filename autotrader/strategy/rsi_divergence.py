from __future__ import annotations

from autotrader.config import BotConfig, StrategiesConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal
from autotrader.strategy.indicators import atr, rsi
from autotrader.strategy.structure import finalize_proposal
from autotrader.strategy.swings import detect_swings

MIN_CANDLES = 60
RSI_PERIOD = 14
SWING_WINDOW = 50
RECENT_BARS = 10
MIN_SEPARATION = 5


def analyze_rsi_divergence(
    candles: list[Candle],
    symbol: str,
    bot: BotConfig,
    settings: StrategiesConfig | None = None,
) -> TradeProposal | None:
    settings = settings or StrategiesConfig()
    if len(candles) < MIN_CANDLES:
        return None
    atr_value = atr(candles, 14)
    if atr_value <= 0:
        return None

    values = closes(candles)
    rsi_values = rsi(values, RSI_PERIOD)
    # rsi_values[k] belongs to values[k + RSI_PERIOD]
    def rsi_at(index: int) -> float:
        return rsi_values[index - RSI_PERIOD]

    offset = len(candles) - SWING_WINDOW
    highs, lows = detect_swings(candles[offset:])
    last = candles[-1]

    if last.is_bullish and len(lows) >= 2:
        first, second = lows[-2], lows[-1]
        direction = Direction.BUY
    elif last.is_bearish and len(highs) >= 2:
        first, second = highs[-2], highs[-1]
        direction = Direction.SELL
    else:
        return None

    first_index = first.index + offset
    second_index = second.index + offset
    if second_index < len(candles) - RECENT_BARS:
        return None
    if second_index - first_index < MIN_SEPARATION:
        return None
    if first_index < RSI_PERIOD:
        return None

    rsi_first = rsi_at(first_index)
    rsi_second = rsi_at(second_index)
    if direction is Direction.BUY:
        diverged = second.price < first.price and rsi_second > rsi_first
        confirmed = last.close > candles[second_index].high
    else:
        diverged = second.price > first.price and rsi_second < rsi_first
        confirmed = last.close < candles[second_index].low
    if not diverged:
        return None

    reasons = ["price_rsi_divergence"]
    score = 55.0
    if (direction is Direction.BUY and rsi_second < 40) or (direction is Direction.SELL and rsi_second > 60):
        score += 10
        reasons.append("rsi_extreme_zone")
    if abs(rsi_second - rsi_first) >= 5:
        score += 10
        reasons.append("wide_divergence")
    if confirmed:
        score += 5
        reasons.append("close_beyond_pivot_candle")

    between = candles[first_index + 1 : second_index]
    if direction is Direction.BUY:
        stop_loss = second.price - 0.3 * atr_value
        take_profit = max(c.high for c in between) if between else None
    else:
        stop_loss = second.price + 0.3 * atr_value
        take_profit = min(c.low for c in between) if between else None
    return finalize_proposal(
        symbol=symbol,
        direction=direction,
        entry=last.close,
        stop_loss=stop_loss,
        take_profit=take_profit,
        confidence=score,
        strategy=StrategyName.RSI_DIVERGENCE,
        rationale="RSI divergence: " + ", ".join(reasons),
        min_reward_risk=settings.min_reward_risk,
    )
