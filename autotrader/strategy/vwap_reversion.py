from __future__ import annotations

from autotrader.config import BotConfig, StrategiesConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal
from autotrader.strategy.indicators import adx, atr, rsi, vwap
from autotrader.strategy.structure import finalize_proposal
from autotrader.strategy.swings import highest_high, lowest_low

MIN_CANDLES = 50
DEVIATION_ATR = 1.5
MAX_ADX = 25.0


def analyze_vwap_mean_reversion(
    candles: list[Candle],
    symbol: str,
    bot: BotConfig,
    settings: StrategiesConfig | None = None,
) -> TradeProposal | None:
    """Fade a stretched move back toward VWAP in a non-trending market."""
    settings = settings or StrategiesConfig()
    if len(candles) < MIN_CANDLES:
        return None
    atr_value = atr(candles, 14)
    if atr_value <= 0:
        return None
    anchor = vwap(candles)
    if anchor is None:
        return None
    if adx(candles, 14) >= MAX_ADX:
        return None

    last = candles[-1]
    rsi_value = rsi(closes(candles), 14)[-1]
    deviation = last.close - anchor
    if deviation < -DEVIATION_ATR * atr_value and rsi_value < 35 and last.is_bullish:
        direction = Direction.BUY
    elif deviation > DEVIATION_ATR * atr_value and rsi_value > 65 and last.is_bearish:
        direction = Direction.SELL
    else:
        return None

    reasons = ["stretched_from_vwap", "rsi_extreme"]
    score = 55.0
    if (direction is Direction.BUY and rsi_value < 30) or (direction is Direction.SELL and rsi_value > 70):
        score += 10
        reasons.append("rsi_deep_extreme")
    if abs(deviation) > 2.0 * atr_value:
        score += 10
        reasons.append("wide_deviation")
    rejection = last.lower_wick if direction is Direction.BUY else last.upper_wick
    if rejection >= last.body:
        score += 5
        reasons.append("rejection_wick")

    if direction is Direction.BUY:
        stop_loss = lowest_low(candles[-5:]) - 0.3 * atr_value
    else:
        stop_loss = highest_high(candles[-5:]) + 0.3 * atr_value
    return finalize_proposal(
        symbol=symbol,
        direction=direction,
        entry=last.close,
        stop_loss=stop_loss,
        take_profit=anchor,
        confidence=score,
        strategy=StrategyName.VWAP_MEAN_REVERSION,
        rationale="VWAP mean reversion: " + ", ".join(reasons),
        min_reward_risk=settings.mean_reversion_reward_risk,
    )
