from __future__ import annotations

from autotrader.config import BotConfig, StrategiesConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal
from autotrader.strategy.indicators import adx, atr, ema, rsi
from autotrader.strategy.structure import finalize_proposal

MIN_CANDLES = 100
LEG_WINDOW = 60
GOLDEN_ZONE = (0.5, 0.618)
INVALIDATION = 0.786
EXTENSION = 0.272


def analyze_fib_continuation(
    candles: list[Candle],
    symbol: str,
    bot: BotConfig,
    settings: StrategiesConfig | None = None,
) -> TradeProposal | None:
    """Continuation entry on a 50-61.8% retracement of the latest impulse leg."""
    settings = settings or StrategiesConfig()
    if len(candles) < MIN_CANDLES:
        return None
    atr_value = atr(candles, 14)
    if atr_value <= 0:
        return None

    values = closes(candles)
    trend = ema(values, 50)[-1] - ema(values, 100)[-1]
    last = candles[-1]
    if trend > 0 and last.is_bullish:
        direction = Direction.BUY
    elif trend < 0 and last.is_bearish:
        direction = Direction.SELL
    else:
        return None

    window = candles[-LEG_WINDOW:]
    leg = _impulse_leg(window, direction)
    if leg is None:
        return None
    start_price, end_price, end_index = leg
    move = abs(end_price - start_price)
    if move < 3.0 * atr_value:
        return None
    if end_index >= len(window) - 2:
        return None

    zone_near = end_price - direction.sign * GOLDEN_ZONE[0] * move
    zone_far = end_price - direction.sign * GOLDEN_ZONE[1] * move
    invalidation = end_price - direction.sign * INVALIDATION * move
    retrace = window[end_index + 1 :]
    if direction is Direction.BUY:
        tagged = last.low <= zone_near and last.close >= zone_far
        broken = any(c.close < invalidation for c in retrace)
    else:
        tagged = last.high >= zone_near and last.close <= zone_far
        broken = any(c.close > invalidation for c in retrace)
    if not tagged or broken:
        return None

    reasons = ["golden_zone_retrace", "trend_continuation"]
    score = 55.0
    extreme = last.low if direction is Direction.BUY else last.high
    if (extreme - zone_far) * direction.sign <= 0 or abs(extreme - zone_far) <= 0.1 * atr_value:
        score += 10
        reasons.append("tagged_618")
    rsi_value = rsi(values, 14)[-1]
    if 40 <= rsi_value <= 60:
        score += 10
        reasons.append("rsi_reset")
    if adx(candles, 14) >= 20:
        score += 5
        reasons.append("adx_trending")

    return finalize_proposal(
        symbol=symbol,
        direction=direction,
        entry=last.close,
        stop_loss=invalidation - direction.sign * 0.1 * atr_value,
        take_profit=end_price + direction.sign * EXTENSION * move,
        confidence=score,
        strategy=StrategyName.FIB_CONTINUATION,
        rationale="Fibonacci continuation: " + ", ".join(reasons),
        min_reward_risk=settings.min_reward_risk,
    )


def _impulse_leg(window: list[Candle], direction: Direction) -> tuple[float, float, int] | None:
    """(leg start, leg end, end index) for the dominant leg inside ``window``."""
    if direction is Direction.BUY:
        end_index = max(range(len(window)), key=lambda i: window[i].high)
        if end_index == 0:
            return None
        start_index = min(range(end_index), key=lambda i: window[i].low)
        return window[start_index].low, window[end_index].high, end_index
    end_index = min(range(len(window)), key=lambda i: window[i].low)
    if end_index == 0:
        return None
    start_index = max(range(end_index), key=lambda i: window[i].high)
    return window[start_index].high, window[end_index].low, end_index
