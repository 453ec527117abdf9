from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True, slots=True)
class Candle:
    """One OHLC bar; ``timestamp`` is the bar open time in UTC."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low


def closes(candles: list[Candle]) -> list[float]:
    return [candle.close for candle in candles]


def parse_timestamp(value: str) -> datetime:
    normalized = value.replace(" ", "T")
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def timeframe_to_api(timeframe: str) -> str:
    mapping = {
        "M1": "1m",
        "M5": "5m",
        "M15": "15m",
        "M30": "30m",
        "H1": "1h",
        "H4": "4h",
        "D1": "1d",
    }
    key = timeframe.strip().upper()
    if key not in mapping:
        raise ValueError(f"Unsupported timeframe {timeframe}")
    return mapping[key]


def candles_from_payload(items: list[dict[str, Any]]) -> list[Candle]:
    output: list[Candle] = []
    for item in items:
        ts_raw = item.get("time") or item.get("brokerTime")
        if ts_raw is None:
            continue
        try:
            candle = Candle(
                timestamp=parse_timestamp(str(ts_raw)),
                open=float(item["open"]),
                high=float(item["high"]),
                low=float(item["low"]),
                close=float(item["close"]),
            )
        except (KeyError, TypeError, ValueError):
            continue
        output.append(candle)
    return sorted(output, key=lambda c: c.timestamp)
