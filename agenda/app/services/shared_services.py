"""Small helpers shared across services: time normalization, zones, money."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

__all__ = [
    "utc_now",
    "ensure_utc",
    "resolve_tz",
    "parse_hm",
    "day_of_week",
    "to_money",
    "format_money",
]


def utc_now() -> datetime:
    """Return current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Convert given datetime to an aware UTC datetime.

    If `dt` is naive, interpret it as UTC (do not guess local timezone).
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def resolve_tz(name: str | ZoneInfo | None, default: str = "UTC") -> ZoneInfo:
    """Return a ZoneInfo for `name`, falling back to `default` for unknown names."""
    if isinstance(name, ZoneInfo):
        return name
    try:
        return ZoneInfo(str(name or default))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; falling back to %s", name, default)
        return ZoneInfo(default)


def parse_hm(value: str | time) -> time:
    """Parse a local wall-clock "HH:MM" string. "24:00" is returned as time.max."""
    if isinstance(value, time):
        return value
    raw = str(value).strip()
    hours, _, minutes = raw.partition(":")
    h, m = int(hours), int(minutes or 0)
    if h == 24 and m == 0:
        return time.max
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"invalid time of day: {value!r}")
    return time(h, m)


def day_of_week(day: date) -> int:
    """Weekday number as stored in business hours: Sunday=0 .. Saturday=6."""
    return (day.weekday() + 1) % 7


def to_money(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_money(value: Decimal | int | float | str | None, currency: str | None = None) -> str:
    amount = to_money(value)
    return f"{amount:.2f} {currency}".strip() if currency else f"{amount:.2f}"
