from __future__ import annotations

from autotrader.config import BotConfig, StrategiesConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal
from autotrader.strategy.indicators import atr, ema, rsi
from autotrader.strategy.structure import finalize_proposal

MIN_CANDLES = 60
SEARCH_BARS = 30
IMPULSE_BARS = 3
IMPULSE_ATR = 1.5


def analyze_order_block(
    candles: list[Candle],
    symbol: str,
    bot: BotConfig,
    settings: StrategiesConfig | None = None,
) -> TradeProposal | None:
    """Retest of the last opposite candle before an impulsive displacement."""
    settings = settings or StrategiesConfig()
    if len(candles) < MIN_CANDLES:
        return None
    atr_value = atr(candles, 14)
    if atr_value <= 0:
        return None
    last = candles[-1]

    found = None
    if last.is_bullish:
        found = _find_block(candles, atr_value, Direction.BUY)
    elif last.is_bearish:
        found = _find_block(candles, atr_value, Direction.SELL)
    if found is None:
        return None
    direction, block_index, impulse = found
    block = candles[block_index]

    values = closes(candles)
    reasons = ["order_block_retest"]
    score = 55.0
    if impulse >= 2.5 * atr_value:
        score += 10
        reasons.append("strong_displacement")
    rejection = last.lower_wick if direction is Direction.BUY else last.upper_wick
    if rejection >= last.body:
        score += 10
        reasons.append("zone_rejection")
    if (ema(values, 20)[-1] - ema(values, 50)[-1]) * direction.sign > 0:
        score += 5
        reasons.append("trend_aligned")
    if 40 <= rsi(values, 14)[-1] <= 60:
        score += 5
        reasons.append("rsi_neutral")

    after = candles[block_index + 1 :]
    if direction is Direction.BUY:
        stop_loss = block.low - 0.25 * atr_value
        take_profit = max(c.high for c in after)
    else:
        stop_loss = block.high + 0.25 * atr_value
        take_profit = min(c.low for c in after)
    return finalize_proposal(
        symbol=symbol,
        direction=direction,
        entry=last.close,
        stop_loss=stop_loss,
        take_profit=take_profit,
        confidence=score,
        strategy=StrategyName.ORDER_BLOCK,
        rationale="Order block: " + ", ".join(reasons),
        min_reward_risk=settings.min_reward_risk,
    )


def _find_block(
    candles: list[Candle],
    atr_value: float,
    direction: Direction,
) -> tuple[Direction, int, float] | None:
    last_index = len(candles) - 1
    last = candles[-1]
    start = max(1, len(candles) - SEARCH_BARS)
    for index in range(last_index - IMPULSE_BARS - 1, start - 1, -1):
        block = candles[index]
        follow = candles[index + 1 : index + 1 + IMPULSE_BARS]
        between = candles[index + 1 : last_index]
        if direction is Direction.BUY:
            if not block.is_bearish:
                continue
            impulse = max(c.close for c in follow) - block.high
            if impulse <= IMPULSE_ATR * atr_value:
                continue
            if any(c.close < block.low for c in between):
                return None
            if last.low <= block.high and last.close > block.low:
                return direction, index, impulse
            return None
        if not block.is_bullish:
            continue
        impulse = block.low - min(c.close for c in follow)
        if impulse <= IMPULSE_ATR * atr_value:
            continue
        if any(c.close > block.high for c in between):
            return None
        if last.high >= block.low and last.close < block.high:
            return direction, index, impulse
        return None
    return None
