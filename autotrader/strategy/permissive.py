from __future__ import annotations

import logging

from autotrader.config import AggregatorConfig
from autotrader.data.candles import Candle, closes
from autotrader.strategy.contracts import AggregatedSignal, Direction
from autotrader.strategy.indicators import atr, ema, rsi
from autotrader.strategy.structure import clamp_confidence, to_pips

LOGGER = logging.getLogger(__name__)

PERMISSIVE_LABEL = "permissive"
MIN_CANDLES = 30
SCORE_THRESHOLD = 50.0
MOMENTUM_CONFIDENCE = 45.0
EMA_CONFIDENCE = 40.0
SL_ATR = 2.0
TP_ATR = 3.0


def _score(
    direction: Direction,
    *,
    trend: int,
    price: float,
    ema20: float,
    ema50: float,
    rsi_value: float,
    near_support: bool,
    near_resistance: bool,
    favorable_candles: int,
) -> tuple[float, list[str]]:
    score = 0.0
    reasons: list[str] = []
    sign = direction.sign
    if trend == sign:
        score += 25
        reasons.append("trend")
    if (price - ema20) * sign > 0 and (ema20 - ema50) * sign > 0:
        score += 15
        reasons.append("price_beyond_emas")
    extreme = rsi_value if direction is Direction.BUY else 100.0 - rsi_value
    if extreme < 25:
        score += 20
        reasons.append("rsi_extreme")
    elif extreme < 35:
        score += 15
        reasons.append("rsi_stretched")
    if (direction is Direction.BUY and near_support) or (direction is Direction.SELL and near_resistance):
        score += 15
        reasons.append("near_level")
    if favorable_candles >= 4:
        score += 10
        reasons.append(f"momentum_{favorable_candles}of5")
    return score, reasons


def analyze_market(
    candles: list[Candle],
    symbol: str,
    config: AggregatorConfig | None = None,
) -> AggregatedSignal | None:
    """Legacy single-pass scorer that falls back to momentum, then to price vs EMA20.

    Only abstains when history is too short or ATR is unavailable.
    """
    config = config or AggregatorConfig()
    if len(candles) < MIN_CANDLES:
        return None
    atr_value = atr(candles, 14)
    if atr_value <= 0:
        return None

    values = closes(candles)
    price = values[-1]
    ema8 = ema(values, 8)[-1]
    ema20 = ema(values, 20)[-1]
    ema50 = ema(values, 50)[-1]
    rsi_value = rsi(values, 14)[-1]
    trend = 1 if ema8 > ema20 > ema50 else -1 if ema8 < ema20 < ema50 else 0
    recent = candles[-5:]
    bullish = sum(1 for c in recent if c.is_bullish)
    bearish = sum(1 for c in recent if c.is_bearish)
    support = min(c.low for c in candles[-20:])
    resistance = max(c.high for c in candles[-20:])
    common = {
        "trend": trend,
        "price": price,
        "ema20": ema20,
        "ema50": ema50,
        "rsi_value": rsi_value,
        "near_support": price < support + 0.5 * atr_value,
        "near_resistance": price > resistance - 0.5 * atr_value,
    }
    buy_score, buy_reasons = _score(Direction.BUY, favorable_candles=bullish, **common)
    sell_score, sell_reasons = _score(Direction.SELL, favorable_candles=bearish, **common)

    if buy_score >= SCORE_THRESHOLD and buy_score > sell_score:
        direction, confidence, reasons = Direction.BUY, buy_score, buy_reasons
    elif sell_score >= SCORE_THRESHOLD and sell_score > buy_score:
        direction, confidence, reasons = Direction.SELL, sell_score, sell_reasons
    elif bullish >= 3 or bearish >= 3:
        direction = Direction.BUY if bullish >= 3 else Direction.SELL
        confidence = MOMENTUM_CONFIDENCE
        reasons = [f"momentum_fallback_{max(bullish, bearish)}of5"]
    else:
        direction = Direction.BUY if price >= ema20 else Direction.SELL
        confidence = EMA_CONFIDENCE
        reasons = ["ema20_fallback"]

    confidence = clamp_confidence(confidence, config.max_confidence)
    stop_loss = price - direction.sign * SL_ATR * atr_value
    take_profit = price + direction.sign * TP_ATR * atr_value
    LOGGER.debug("Permissive signal symbol=%s direction=%s confidence=%.1f", symbol, direction.value, confidence)
    return AggregatedSignal(
        symbol=symbol,
        direction=direction,
        entry_price=price,
        stop_loss=stop_loss,
        take_profit=take_profit,
        confidence=confidence,
        strategy_name=PERMISSIVE_LABEL,
        rationale="Permissive: " + ", ".join(reasons),
        sl_distance=to_pips(symbol, price - stop_loss),
        tp_distance=to_pips(symbol, take_profit - price),
        weighted_confidence=confidence,
        confluence_count=1,
        agreeing_strategies=(),
        lot_multiplier=config.base_lot_multiplier,
    )
