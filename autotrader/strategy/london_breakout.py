from __future__ import annotations

from autotrader.clock import as_utc, in_utc_hour_window
from autotrader.config import BotConfig, StrategiesConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal
from autotrader.strategy.indicators import atr, ema
from autotrader.strategy.structure import finalize_proposal

MIN_CANDLES = 20


def asian_range(candles: list[Candle], settings: StrategiesConfig) -> tuple[float, float, int] | None:
    """High, low and bar count of the Asian session on the last candle's UTC date."""
    session_day = as_utc(candles[-1].timestamp).date()
    session = [
        candle
        for candle in candles
        if as_utc(candle.timestamp).date() == session_day
        and settings.asian_start_hour_utc <= as_utc(candle.timestamp).hour < settings.asian_end_hour_utc
    ]
    if not session:
        return None
    return max(c.high for c in session), min(c.low for c in session), len(session)


def analyze_london_breakout(
    candles: list[Candle],
    symbol: str,
    bot: BotConfig,
    settings: StrategiesConfig | None = None,
) -> TradeProposal | None:
    settings = settings or StrategiesConfig()
    if len(candles) < MIN_CANDLES:
        return None
    last = candles[-1]
    if not in_utc_hour_window(last.timestamp, settings.london_start_hour_utc, settings.london_end_hour_utc):
        return None
    atr_value = atr(candles, 14)
    if atr_value <= 0:
        return None
    session = asian_range(candles, settings)
    if session is None:
        return None
    range_high, range_low, bar_count = session
    if bar_count < settings.min_asian_candles:
        return None
    width = range_high - range_low
    if not (0.5 * atr_value <= width <= 4.0 * atr_value):
        return None

    previous = candles[-2]
    if last.is_bullish and last.close > range_high + 0.1 * atr_value and previous.close <= range_high:
        direction = Direction.BUY
    elif last.is_bearish and last.close < range_low - 0.1 * atr_value and previous.close >= range_low:
        direction = Direction.SELL
    else:
        return None

    reasons = ["asian_range_break"]
    score = 55.0
    if last.body >= 0.5 * atr_value:
        score += 10
        reasons.append("impulsive_candle")
    if last.range > 0:
        close_position = (last.close - last.low) / last.range
        if direction is Direction.SELL:
            close_position = 1.0 - close_position
        if close_position >= 0.75:
            score += 10
            reasons.append("closed_near_extreme")
    if 1.0 * atr_value <= width <= 3.0 * atr_value:
        score += 5
        reasons.append("healthy_range")
    values = closes(candles)
    if (ema(values, 20)[-1] - ema(values, 50)[-1]) * direction.sign > 0:
        score += 5
        reasons.append("trend_aligned")

    midpoint = (range_high + range_low) / 2
    projection = (range_high + width) if direction is Direction.BUY else (range_low - width)
    return finalize_proposal(
        symbol=symbol,
        direction=direction,
        entry=last.close,
        stop_loss=midpoint,
        take_profit=projection,
        confidence=score,
        strategy=StrategyName.LONDON_BREAKOUT,
        rationale="London breakout: " + ", ".join(reasons),
        min_reward_risk=settings.min_reward_risk,
    )
