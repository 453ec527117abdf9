from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    return as_utc(dt).astimezone(_get_zone(timezone_name))


def trading_day(dt: datetime, timezone_name: str = "UTC") -> date:
    return to_timezone(dt, timezone_name).date()


def in_utc_hour_window(dt: datetime, start_hour: int, end_hour: int) -> bool:
    """Start inclusive, end exclusive. Windows may wrap midnight (e.g. 22 -> 2)."""
    hour = as_utc(dt).hour
    if start_hour <= end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour
