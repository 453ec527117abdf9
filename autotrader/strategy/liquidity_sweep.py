from __future__ import annotations

from autotrader.config import BotConfig, StrategiesConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal
from autotrader.strategy.indicators import atr, ema, rsi
from autotrader.strategy.structure import finalize_proposal
from autotrader.strategy.swings import SwingPoint, detect_swings

MIN_CANDLES = 50
POOL_LOOKBACK = 40
SWEEP_WINDOW = 5
SHIFT_BARS = 3


def analyze_liquidity_sweep(
    candles: list[Candle],
    symbol: str,
    bot: BotConfig,
    settings: StrategiesConfig | None = None,
) -> TradeProposal | None:
    """Stop hunt beyond a resting swing level followed by a market-structure shift."""
    settings = settings or StrategiesConfig()
    if len(candles) < MIN_CANDLES:
        return None
    atr_value = atr(candles, 14)
    if atr_value <= 0:
        return None

    offset = len(candles) - POOL_LOOKBACK - SWEEP_WINDOW
    pool = candles[offset : len(candles) - SWEEP_WINDOW]
    highs, lows = detect_swings(pool)
    last = candles[-1]

    found = _find_sweep(candles, lows, offset, Direction.BUY) if last.is_bullish else None
    if found is None and last.is_bearish:
        found = _find_sweep(candles, highs, offset, Direction.SELL)
    if found is None:
        return None
    direction, sweep_index, level = found
    sweep = candles[sweep_index]

    values = closes(candles)
    reasons = ["liquidity_swept", "structure_shift"]
    score = 55.0
    depth = (level - sweep.low) if direction is Direction.BUY else (sweep.high - level)
    if depth >= 0.2 * atr_value:
        score += 10
        reasons.append("deep_sweep")
    rejection_wick = sweep.lower_wick if direction is Direction.BUY else sweep.upper_wick
    if sweep.range > 0 and rejection_wick >= 0.5 * sweep.range:
        score += 10
        reasons.append("rejection_wick")
    if 35 <= rsi(values, 14)[-1] <= 65:
        score += 5
        reasons.append("rsi_room")
    if (last.close - ema(values, 20)[-1]) * direction.sign > 0:
        score += 5
        reasons.append("reclaimed_ema20")

    if direction is Direction.BUY:
        stop_loss = sweep.low - 0.2 * atr_value
        targets = [p.price for p in detect_swings(candles[-60:])[0] if p.price > last.close]
        take_profit = min(targets) if targets else None
    else:
        stop_loss = sweep.high + 0.2 * atr_value
        targets = [p.price for p in detect_swings(candles[-60:])[1] if p.price < last.close]
        take_profit = max(targets) if targets else None

    return finalize_proposal(
        symbol=symbol,
        direction=direction,
        entry=last.close,
        stop_loss=stop_loss,
        take_profit=take_profit,
        confidence=score,
        strategy=StrategyName.LIQUIDITY_SWEEP,
        rationale="Liquidity sweep: " + ", ".join(reasons),
        min_reward_risk=settings.min_reward_risk,
    )


def _find_sweep(
    candles: list[Candle],
    points: list[SwingPoint],
    offset: int,
    direction: Direction,
) -> tuple[Direction, int, float] | None:
    if not points:
        return None
    last = candles[-1]
    for index in range(len(candles) - 1, len(candles) - 1 - SWEEP_WINDOW, -1):
        candle = candles[index]
        prior = [p for p in points if p.index + offset < index]
        if not prior:
            continue
        level = prior[-1].price
        before = candles[max(0, index - SHIFT_BARS) : index]
        if not before:
            continue
        if direction is Direction.BUY:
            swept = candle.low < level < candle.close
            shifted = last.close > max(c.high for c in before)
        else:
            swept = candle.high > level > candle.close
            shifted = last.close < min(c.low for c in before)
        if swept and shifted:
            return direction, index, level
    return None
