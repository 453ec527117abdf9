from __future__ import annotations

from autotrader.config import AggregatorConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import Direction
from autotrader.strategy.indicators import ema, rsi


def is_engulfing(previous: Candle, current: Candle, direction: Direction) -> bool:
    if previous.body <= 0 or current.body <= 0:
        return False
    if direction is Direction.BUY:
        return (
            previous.is_bearish
            and current.is_bullish
            and current.open <= previous.close
            and current.close >= previous.open
        )
    return (
        previous.is_bullish
        and current.is_bearish
        and current.open >= previous.close
        and current.close <= previous.open
    )


def is_pin_bar(candle: Candle, direction: Direction) -> bool:
    if candle.range <= 0 or candle.body <= 0:
        return False
    if direction is Direction.BUY:
        return candle.lower_wick >= 2 * candle.body and candle.upper_wick <= candle.body
    return candle.upper_wick >= 2 * candle.body and candle.lower_wick <= candle.body


def is_inside_bar_breakout(mother: Candle, inside: Candle, current: Candle, direction: Direction) -> bool:
    if inside.body <= 0 or current.body <= 0:
        return False
    if not (inside.high <= mother.high and inside.low >= mother.low):
        return False
    if direction is Direction.BUY:
        return current.is_bullish and current.close > inside.high
    return current.is_bearish and current.close < inside.low


def candle_pattern_boost(candles: list[Candle], direction: Direction, config: AggregatorConfig) -> tuple[float, str | None]:
    """Points for the strongest pattern on the last candle agreeing with ``direction``; one pattern at most."""
    if len(candles) >= 2 and is_engulfing(candles[-2], candles[-1], direction):
        return config.engulfing_boost, "engulfing"
    if candles and is_pin_bar(candles[-1], direction):
        return config.pin_bar_boost, "pin_bar"
    if len(candles) >= 3 and is_inside_bar_breakout(candles[-3], candles[-2], candles[-1], direction):
        return config.inside_bar_boost, "inside_bar_breakout"
    return 0.0, None


def structure_boost(candles: list[Candle], direction: Direction, config: AggregatorConfig) -> float:
    """Trend (EMA20 vs EMA50) and momentum (RSI vs 50) both agreeing with ``direction``."""
    if len(candles) < 51:
        return 0.0
    values = closes(candles)
    trend = ema(values, 20)[-1] - ema(values, 50)[-1]
    momentum = rsi(values, 14)[-1] - 50.0
    if trend * direction.sign > 0 and momentum * direction.sign > 0:
        return config.structure_boost
    return 0.0
