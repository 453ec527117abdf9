from __future__ import annotations

from autotrader.config import BotConfig, StrategiesConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal
from autotrader.strategy.indicators import atr, ema, rsi
from autotrader.strategy.structure import finalize_proposal
from autotrader.strategy.swings import highest_high, lowest_low

MIN_CANDLES = 60
LEVEL_WINDOW = 30
BREAK_WINDOW = 5


def analyze_break_and_retest(
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

    base = candles[-LEVEL_WINDOW:-BREAK_WINDOW]
    recent = candles[-BREAK_WINDOW:-1]
    last = candles[-1]
    resistance = highest_high(base)
    support = lowest_low(base)

    breakout = _find_break(recent, resistance, Direction.BUY)
    breakdown = _find_break(recent, support, Direction.SELL)
    if breakout is not None and _is_retest(last, resistance, atr_value, Direction.BUY):
        direction, level, break_candle = Direction.BUY, resistance, breakout
    elif breakdown is not None and _is_retest(last, support, atr_value, Direction.SELL):
        direction, level, break_candle = Direction.SELL, support, breakdown
    else:
        return None

    values = closes(candles)
    reasons = ["level_broken", "retest_held"]
    score = 55.0
    if break_candle.body >= 0.5 * atr_value:
        score += 10
        reasons.append("strong_break")
    touched = last.low <= level if direction is Direction.BUY else last.high >= level
    if touched:
        score += 10
        reasons.append("wick_tagged_level")
    trend = ema(values, 20)[-1] - ema(values, 50)[-1]
    if trend * direction.sign > 0:
        score += 5
        reasons.append("trend_aligned")
    rsi_value = rsi(values, 14)[-1]
    if (direction is Direction.BUY and 45 <= rsi_value <= 70) or (
        direction is Direction.SELL and 30 <= rsi_value <= 55
    ):
        score += 5
        reasons.append("rsi_supportive")

    height = resistance - support
    stop_loss = level - direction.sign * 0.5 * atr_value
    take_profit = level + direction.sign * height
    return finalize_proposal(
        symbol=symbol,
        direction=direction,
        entry=last.close,
        stop_loss=stop_loss,
        take_profit=take_profit,
        confidence=score,
        strategy=StrategyName.BREAK_AND_RETEST,
        rationale="Break and retest: " + ", ".join(reasons),
        min_reward_risk=settings.min_reward_risk,
    )


def _find_break(recent: list[Candle], level: float, direction: Direction) -> Candle | None:
    for candle in recent:
        if (candle.close - level) * direction.sign > 0:
            return candle
    return None


def _is_retest(last: Candle, level: float, atr_value: float, direction: Direction) -> bool:
    if direction is Direction.BUY:
        return (
            last.is_bullish
            and last.close > level
            and last.low <= level + 0.3 * atr_value
            and last.close - level <= 1.0 * atr_value
        )
    return (
        last.is_bearish
        and last.close < level
        and last.high >= level - 0.3 * atr_value
        and level - last.close <= 1.0 * atr_value
    )
