from __future__ import annotations

from autotrader.data.candles import Candle

NEUTRAL_RSI = 50.0
NEUTRAL_ADX = 20.0


def sma(values: list[float], period: int) -> float | None:
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(values) < period:
        return None
    return sum(values[-period:]) / period


def ema(values: list[float], period: int) -> list[float]:
    """EMA seeded with the simple average of the first ``period`` values.

    The result is ``period - 1`` shorter than the input: ``result[i]`` is the
    average ending at ``values[i + period - 1]``. When the input is shorter
    than ``period`` the first value is repeated for every input position.
    """
    if period <= 0:
        raise ValueError("period must be > 0")
    if not values:
        return []
    if len(values) < period:
        return [values[0]] * len(values)
    seed = sum(values[:period]) / period
    alpha = 2 / (period + 1)
    output = [seed]
    prev = seed
    for value in values[period:]:
        prev = (value - prev) * alpha + prev
        output.append(prev)
    return output


def rsi(values: list[float], period: int = 14) -> list[float]:
    """Wilder RSI; one value per close after the first ``period`` changes."""
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(values) <= period:
        return [NEUTRAL_RSI] * max(len(values), 1)

    changes = [values[i] - values[i - 1] for i in range(1, len(values))]
    avg_gain = sum(max(change, 0.0) for change in changes[:period]) / period
    avg_loss = sum(max(-change, 0.0) for change in changes[:period]) / period
    output = [_rsi_value(avg_gain, avg_loss)]
    for change in changes[period:]:
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period
        output.append(_rsi_value(avg_gain, avg_loss))
    return output


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return NEUTRAL_RSI if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def true_ranges(candles: list[Candle]) -> list[float]:
    output: list[float] = []
    for i in range(1, len(candles)):
        candle = candles[i]
        prev_close = candles[i - 1].close
        output.append(
            max(
                candle.high - candle.low,
                abs(candle.high - prev_close),
                abs(candle.low - prev_close),
            )
        )
    return output


def atr(candles: list[Candle], period: int = 14) -> float:
    """Mean true range of the trailing ``period`` candles; 0 when history is short."""
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(candles) < period + 1:
        return 0.0
    ranges = true_ranges(candles[-(period + 1) :])
    return sum(ranges) / period


def adx(candles: list[Candle], period: int = 14) -> float:
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(candles) < 2 * period + 1:
        return NEUTRAL_ADX

    plus_dm: list[float] = []
    minus_dm: list[float] = []
    for i in range(1, len(candles)):
        up_move = candles[i].high - candles[i - 1].high
        down_move = candles[i - 1].low - candles[i].low
        plus_dm.append(up_move if up_move > down_move and up_move > 0 else 0.0)
        minus_dm.append(down_move if down_move > up_move and down_move > 0 else 0.0)
    tr_values = true_ranges(candles)

    smoothed_tr = sum(tr_values[:period])
    smoothed_plus = sum(plus_dm[:period])
    smoothed_minus = sum(minus_dm[:period])
    dx_values = [_dx(smoothed_plus, smoothed_minus, smoothed_tr)]
    for i in range(period, len(tr_values)):
        smoothed_tr = smoothed_tr - smoothed_tr / period + tr_values[i]
        smoothed_plus = smoothed_plus - smoothed_plus / period + plus_dm[i]
        smoothed_minus = smoothed_minus - smoothed_minus / period + minus_dm[i]
        dx_values.append(_dx(smoothed_plus, smoothed_minus, smoothed_tr))

    value = sum(dx_values[:period]) / period
    for dx in dx_values[period:]:
        value = (value * (period - 1) + dx) / period
    return value


def _dx(plus: float, minus: float, tr_sum: float) -> float:
    if tr_sum <= 0:
        return 0.0
    plus_di = 100.0 * plus / tr_sum
    minus_di = 100.0 * minus / tr_sum
    total = plus_di + minus_di
    if total <= 0:
        return 0.0
    return 100.0 * abs(plus_di - minus_di) / total


def vwap(candles: list[Candle]) -> float | None:
    """Typical price weighted by candle range; the feed carries no volume."""
    if not candles:
        return None
    weighted = 0.0
    total_range = 0.0
    for candle in candles:
        typical = (candle.high + candle.low + candle.close) / 3.0
        weight = candle.high - candle.low
        weighted += typical * weight
        total_range += weight
    if total_range <= 0:
        return sum((c.high + c.low + c.close) / 3.0 for c in candles) / len(candles)
    return weighted / total_range
