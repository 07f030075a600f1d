"""Candidate slot generation from business hours.

All stepping happens on naive local wall-clock datetimes; each slot start is
converted to UTC exactly once, after the local arithmetic is done. Local
times that do not exist (spring-forward gap) are skipped; ambiguous times
(fall-back overlap) resolve to the first occurrence.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Iterator
from zoneinfo import ZoneInfo

from agenda.app.services.shared_services import parse_hm, resolve_tz

__all__ = ["Slot", "iter_slots", "local_to_utc"]


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime

    def occupied(self, buffer_before: int = 0, buffer_after: int = 0) -> tuple[datetime, datetime]:
        return (
            self.start - timedelta(minutes=buffer_before),
            self.end + timedelta(minutes=buffer_after),
        )


def local_to_utc(naive_local: datetime, tz: ZoneInfo) -> datetime | None:
    """Convert a naive wall-clock datetime to UTC, or None if it does not exist in `tz`."""
    aware = naive_local.replace(tzinfo=tz)
    utc = aware.astimezone(UTC)
    if utc.astimezone(tz).replace(tzinfo=None) != naive_local:
        return None
    return utc


def _bounds(day: date, open_time: str | time, close_time: str | time) -> tuple[datetime, datetime]:
    opening = datetime.combine(day, parse_hm(open_time))
    close = parse_hm(close_time)
    if close == time.max:
        closing = datetime.combine(day + timedelta(days=1), time(0, 0))
    else:
        closing = datetime.combine(day, close)
    return opening, closing


def iter_slots(
    day: date,
    open_time: str | time | None,
    close_time: str | time | None,
    duration_minutes: int,
    buffer_before: int = 0,
    buffer_after: int = 0,
    tz: ZoneInfo | str | None = None,
    *,
    is_open: bool = True,
) -> Iterator[Slot]:
    """Yield candidate slots for `day`, spaced by the service duration.

    A slot is emitted only when ``start + buffer_before + duration + buffer_after``
    fits before closing. Buffers widen the occupied window; they never change the
    step. Returned instants are aware UTC.
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    if not is_open or open_time is None or close_time is None:
        return

    zone = resolve_tz(tz)
    opening, closing = _bounds(day, open_time, close_time)
    step = timedelta(minutes=duration_minutes)
    span = timedelta(minutes=buffer_before + duration_minutes + buffer_after)

    cursor = opening
    while cursor + span <= closing:
        start = local_to_utc(cursor, zone)
        if start is not None:
            yield Slot(start=start, end=start + step)
        cursor += step
