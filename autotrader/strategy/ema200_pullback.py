from __future__ import annotations

from autotrader.config import BotConfig, StrategiesConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal
from autotrader.strategy.indicators import adx, atr, ema, rsi
from autotrader.strategy.structure import finalize_proposal
from autotrader.strategy.swings import highest_high, lowest_low, nearest_swing_above, nearest_swing_below

MIN_CANDLES = 210
SLOPE_LOOKBACK = 10


def analyze_ema200_pullback(
    candles: list[Candle],
    symbol: str,
    bot: BotConfig,
    settings: StrategiesConfig | None = None,
) -> TradeProposal | None:
    """Trend continuation after a pullback into EMA50 while price holds above EMA200."""
    settings = settings or StrategiesConfig()
    if len(candles) < MIN_CANDLES:
        return None
    atr_value = atr(candles, 14)
    if atr_value <= 0:
        return None

    values = closes(candles)
    ema200_series = ema(values, 200)
    ema200 = ema200_series[-1]
    ema200_prev = ema200_series[-1 - SLOPE_LOOKBACK]
    ema50 = ema(values, 50)[-1]
    last = candles[-1]
    price = last.close

    if price > ema200 and ema50 > ema200 and last.is_bullish:
        direction = Direction.BUY
    elif price < ema200 and ema50 < ema200 and last.is_bearish:
        direction = Direction.SELL
    else:
        return None
    if abs(price - ema50) > 0.5 * atr_value:
        return None

    rsi_value = rsi(values, 14)[-1]
    reasons = ["ema_stack", "pullback_to_ema50"]
    score = 50.0
    slope = ema200 - ema200_prev
    if slope * direction.sign > 0:
        score += 10
        reasons.append("ema200_sloping")
    if 40 <= rsi_value <= 60:
        score += 10
        reasons.append("rsi_neutral")
    midpoint = (last.high + last.low) / 2
    if (price - midpoint) * direction.sign > 0:
        score += 10
        reasons.append("close_in_trend_half")
    if adx(candles, 14) >= 20:
        score += 5
        reasons.append("adx_trending")

    recent = candles[-30:]
    if direction is Direction.BUY:
        swing = nearest_swing_below(recent, price)
        level = swing.price if swing is not None else lowest_low(candles[-20:])
        stop_loss = level - 0.2 * atr_value
        target = nearest_swing_above(candles[-60:], price)
    else:
        swing = nearest_swing_above(recent, price)
        level = swing.price if swing is not None else highest_high(candles[-20:])
        stop_loss = level + 0.2 * atr_value
        target = nearest_swing_below(candles[-60:], price)

    return finalize_proposal(
        symbol=symbol,
        direction=direction,
        entry=price,
        stop_loss=stop_loss,
        take_profit=target.price if target is not None else None,
        confidence=score,
        strategy=StrategyName.EMA200_PULLBACK,
        rationale="EMA200 pullback: " + ", ".join(reasons),
        min_reward_risk=settings.min_reward_risk,
    )
