from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from autotrader.data.candles import Candle


@dataclass(slots=True)
class SwingPoint:
    index: int
    timestamp: datetime
    price: float
    kind: str


def detect_swings(
    candles: list[Candle],
    fractal_left: int = 2,
    fractal_right: int = 2,
) -> tuple[list[SwingPoint], list[SwingPoint]]:
    """Fractal swings: a bar whose high (low) beats every neighbour in the window."""
    highs: list[SwingPoint] = []
    lows: list[SwingPoint] = []
    if len(candles) < (fractal_left + fractal_right + 1):
        return highs, lows

    for index in range(fractal_left, len(candles) - fractal_right):
        center = candles[index]
        neighbours = candles[index - fractal_left : index] + candles[index + 1 : index + 1 + fractal_right]
        if all(center.high > c.high for c in neighbours):
            highs.append(SwingPoint(index=index, timestamp=center.timestamp, price=center.high, kind="HIGH"))
        if all(center.low < c.low for c in neighbours):
            lows.append(SwingPoint(index=index, timestamp=center.timestamp, price=center.low, kind="LOW"))
    return highs, lows


def swing_highs(candles: list[Candle], fractal: int = 2) -> list[SwingPoint]:
    return detect_swings(candles, fractal_left=fractal, fractal_right=fractal)[0]


def swing_lows(candles: list[Candle], fractal: int = 2) -> list[SwingPoint]:
    return detect_swings(candles, fractal_left=fractal, fractal_right=fractal)[1]


def nearest_swing_above(candles: list[Candle], price: float, fractal: int = 2) -> SwingPoint | None:
    """Most recent confirmed swing high strictly above ``price``."""
    for point in reversed(swing_highs(candles, fractal)):
        if point.price > price:
            return point
    return None


def nearest_swing_below(candles: list[Candle], price: float, fractal: int = 2) -> SwingPoint | None:
    for point in reversed(swing_lows(candles, fractal)):
        if point.price < price:
            return point
    return None


def highest_high(candles: list[Candle]) -> float:
    return max(c.high for c in candles)


def lowest_low(candles: list[Candle]) -> float:
    return min(c.low for c in candles)
