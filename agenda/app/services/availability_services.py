"""Availability resolution and admission decisions.

Every check works on the *occupied* window of a candidate: the visible
interval widened by the service buffers. Overlap is half-open, so touching
endpoints never conflict.

Reads load only the bookings and blocks that overlap the queried window
(a `WindowSnapshot`); day and month grids load one snapshot and evaluate
every slot in memory.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Iterable, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from agenda.app.core.errors import ProviderNotFound, ServiceNotFound
from agenda.app.domain.models import (
    Availability,
    Booking,
    BusinessHours,
    Provider,
    RELEASED_STATUSES,
    Service,
    StaffAssignment,
    StaffAvailability,
    StaffMember,
)
from agenda.app.services.shared_services import day_of_week, ensure_utc, parse_hm, resolve_tz
from agenda.app.services.slot_grid import Slot, iter_slots, local_to_utc

logger = logging.getLogger(__name__)

__all__ = [
    "intervals_overlap",
    "occupied_window",
    "BusyInterval",
    "SlotCapacity",
    "SlotAvailability",
    "AvailabilityCheck",
    "WindowSnapshot",
    "AvailabilityRepo",
    "available_staff",
    "is_available",
    "evaluate_window",
    "query_availability",
    "available_days",
    "check_provider_availability",
    "summarize",
]


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open [start, end) intersection."""
    return a_start < b_end and a_end > b_start


def occupied_window(service: Service, start: datetime, end: datetime | None = None) -> tuple[datetime, datetime]:
    start = ensure_utc(start)
    end = ensure_utc(end) if end is not None else start + timedelta(minutes=service.duration_minutes)
    return (
        start - timedelta(minutes=service.buffer_before_minutes or 0),
        end + timedelta(minutes=service.buffer_after_minutes or 0),
    )


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime
    staff_id: int | None = None
    service_id: int | None = None


@dataclass(frozen=True)
class SlotCapacity:
    available: bool
    remaining: int
    free_staff: tuple[int, ...] = ()
    reason: str | None = None


@dataclass(frozen=True)
class SlotAvailability:
    start: datetime
    end: datetime
    available: bool
    available_staff_count: int


@dataclass(frozen=True)
class AvailabilityCheck:
    available: bool
    reason: str | None = None


@dataclass
class WindowSnapshot:
    """Everything that can affect admission inside one window, loaded once."""

    service: Service
    roster: list[int]
    bookings: list[BusyInterval] = field(default_factory=list)
    staff_blocks: list[BusyInterval] = field(default_factory=list)
    provider_blocks: list[BusyInterval] = field(default_factory=list)

    def provider_blocked(self, start: datetime, end: datetime) -> bool:
        return any(intervals_overlap(b.start, b.end, start, end) for b in self.provider_blocks)

    def service_load(self, start: datetime, end: datetime) -> int:
        return sum(
            1
            for b in self.bookings
            if b.service_id == self.service.id and intervals_overlap(b.start, b.end, start, end)
        )

    def free_staff(self, start: datetime, end: datetime) -> list[int]:
        busy: set[int] = set()
        for b in self.bookings:
            if b.staff_id is not None and intervals_overlap(b.start, b.end, start, end):
                busy.add(b.staff_id)
        for b in self.staff_blocks:
            if b.staff_id is not None and intervals_overlap(b.start, b.end, start, end):
                busy.add(b.staff_id)
        return [staff_id for staff_id in self.roster if staff_id not in busy]

    def evaluate(self, start: datetime, end: datetime) -> SlotCapacity:
        """Admission decision for an occupied window [start, end)."""
        if self.provider_blocked(start, end):
            return SlotCapacity(False, 0, (), "blocked")
        ceiling = max(1, int(self.service.max_concurrent or 1))
        load = self.service_load(start, end)
        if not self.service.requires_staff:
            remaining = max(0, ceiling - load)
            return SlotCapacity(remaining > 0, remaining, (), None if remaining else "capacity")
        free = self.free_staff(start, end)
        if not free:
            return SlotCapacity(False, 0, (), "no_staff")
        capacity = min(len(free), ceiling)
        remaining = max(0, capacity - load)
        return SlotCapacity(load < capacity, remaining, tuple(free), None if load < capacity else "capacity")


class AvailabilityRepo:
    """Read-side queries; all methods take an explicit session."""

    @staticmethod
    async def get_service(session: AsyncSession, service_id: int) -> Service | None:
        return await session.get(Service, service_id)

    @staticmethod
    async def get_roster(session: AsyncSession, service: Service) -> list[int]:
        """Candidate staff ids in stable (id) order."""
        if not service.requires_staff:
            return []
        stmt = select(StaffMember.id).where(
            StaffMember.provider_id == service.provider_id,
            StaffMember.is_active.is_(True),
        )
        if not service.any_staff_member:
            stmt = stmt.join(StaffAssignment, StaffAssignment.staff_id == StaffMember.id).where(
                StaffAssignment.service_id == service.id
            )
        stmt = stmt.order_by(StaffMember.id)
        return list((await session.execute(stmt)).scalars().all())

    @staticmethod
    async def load_snapshot(
        session: AsyncSession,
        service: Service,
        window_start: datetime,
        window_end: datetime,
        roster: list[int] | None = None,
    ) -> WindowSnapshot:
        if roster is None:
            roster = await AvailabilityRepo.get_roster(session, service)

        resource_filter = Booking.service_id == service.id
        if roster:
            resource_filter = or_(resource_filter, Booking.staff_id.in_(roster))
        booking_rows = await session.execute(
            select(Booking.occupied_start, Booking.occupied_end, Booking.staff_id, Booking.service_id).where(
                resource_filter,
                Booking.status.notin_(list(RELEASED_STATUSES)),
                Booking.occupied_start < window_end,
                Booking.occupied_end > window_start,
            )
        )
        bookings = [
            BusyInterval(start=s, end=e, staff_id=staff_id, service_id=service_id)
            for s, e, staff_id, service_id in booking_rows.all()
        ]

        staff_blocks: list[BusyInterval] = []
        if roster:
            rows = await session.execute(
                select(StaffAvailability.staff_id, StaffAvailability.start_time, StaffAvailability.end_time).where(
                    StaffAvailability.staff_id.in_(roster),
                    StaffAvailability.is_available.is_(False),
                    StaffAvailability.start_time < window_end,
                    StaffAvailability.end_time > window_start,
                )
            )
            staff_blocks = [BusyInterval(start=s, end=e, staff_id=staff_id) for staff_id, s, e in rows.all()]

        rows = await session.execute(
            select(Availability.start_time, Availability.end_time).where(
                Availability.provider_id == service.provider_id,
                Availability.is_available.is_(False),
                Availability.start_time < window_end,
                Availability.end_time > window_start,
            )
        )
        provider_blocks = [BusyInterval(start=s, end=e) for s, e in rows.all()]

        return WindowSnapshot(
            service=service,
            roster=roster,
            bookings=bookings,
            staff_blocks=staff_blocks,
            provider_blocks=provider_blocks,
        )

    @staticmethod
    async def get_business_hours(session: AsyncSession, provider_id: int) -> dict[int, BusinessHours]:
        rows = await session.execute(select(BusinessHours).where(BusinessHours.provider_id == provider_id))
        return {int(h.day_of_week): h for h in rows.scalars().all()}


async def _require_service(session: AsyncSession, provider_id: int | None, service_id: int) -> Service:
    service = await AvailabilityRepo.get_service(session, service_id)
    if service is None or (provider_id is not None and service.provider_id != provider_id):
        raise ServiceNotFound(service_id, provider_id)
    return service


async def available_staff(session: AsyncSession, service_id: int, start: datetime, end: datetime) -> list[int]:
    """Staff who could serve `service_id` in [start, end), in stable roster order.

    Empty for services that do not require staff, and when nobody is free;
    callers treat empty as "unavailable", not as an error.
    """
    service = await AvailabilityRepo.get_service(session, service_id)
    if service is None or not service.requires_staff:
        return []
    occ_start, occ_end = occupied_window(service, start, end)
    snapshot = await AvailabilityRepo.load_snapshot(session, service, occ_start, occ_end)
    return snapshot.free_staff(occ_start, occ_end)


async def evaluate_window(session: AsyncSession, service: Service, start: datetime, end: datetime) -> SlotCapacity:
    occ_start, occ_end = occupied_window(service, start, end)
    snapshot = await AvailabilityRepo.load_snapshot(session, service, occ_start, occ_end)
    return snapshot.evaluate(occ_start, occ_end)


async def is_available(
    session: AsyncSession, provider_id: int, service_id: int, start: datetime, end: datetime
) -> bool:
    """Read-only admission check for [start, end) of `service_id`."""
    service = await AvailabilityRepo.get_service(session, service_id)
    if service is None or service.provider_id != provider_id or not service.is_active:
        return False
    decision = await evaluate_window(session, service, start, end)
    return decision.available


def _day_slots(service: Service, day: date, hours: BusinessHours | None, tz_name: str) -> list[Slot]:
    if hours is None or not hours.is_open:
        return []
    return list(
        iter_slots(
            day,
            hours.open_time,
            hours.close_time,
            service.duration_minutes,
            service.buffer_before_minutes or 0,
            service.buffer_after_minutes or 0,
            tz_name,
        )
    )


async def _snapshot_for_slots(session: AsyncSession, service: Service, slots: Sequence[Slot]) -> WindowSnapshot:
    before = service.buffer_before_minutes or 0
    after = service.buffer_after_minutes or 0
    window_start = min(s.occupied(before, after)[0] for s in slots)
    window_end = max(s.occupied(before, after)[1] for s in slots)
    return await AvailabilityRepo.load_snapshot(session, service, window_start, window_end)


async def query_availability(
    session: AsyncSession, provider_id: int, service_id: int, day: date
) -> list[SlotAvailability]:
    """Slot grid for one local date with per-slot availability and remaining capacity."""
    service = await _require_service(session, provider_id, service_id)
    provider = await session.get(Provider, provider_id)
    if provider is None:
        raise ProviderNotFound(provider_id)
    hours = (await AvailabilityRepo.get_business_hours(session, provider_id)).get(day_of_week(day))
    slots = _day_slots(service, day, hours, provider.timezone)
    if not slots:
        return []

    snapshot = await _snapshot_for_slots(session, service, slots)
    before = service.buffer_before_minutes or 0
    after = service.buffer_after_minutes or 0
    result: list[SlotAvailability] = []
    for slot in slots:
        decision = snapshot.evaluate(*slot.occupied(before, after))
        result.append(
            SlotAvailability(
                start=slot.start,
                end=slot.end,
                available=decision.available,
                available_staff_count=decision.remaining,
            )
        )
    return result


async def available_days(
    session: AsyncSession,
    provider_id: int,
    service_id: int,
    year: int,
    month: int,
    *,
    not_before: datetime | None = None,
) -> list[date]:
    """Local dates of the month with at least one bookable slot.

    Slots starting before `not_before` (when given) are ignored.
    """
    service = await _require_service(session, provider_id, service_id)
    provider = await session.get(Provider, provider_id)
    if provider is None:
        raise ProviderNotFound(provider_id)
    hours_by_day = await AvailabilityRepo.get_business_hours(session, provider_id)
    cutoff = ensure_utc(not_before) if not_before is not None else None

    per_day: dict[date, list[Slot]] = {}
    for day_num in range(1, calendar.monthrange(year, month)[1] + 1):
        day = date(year, month, day_num)
        slots = _day_slots(service, day, hours_by_day.get(day_of_week(day)), provider.timezone)
        if cutoff is not None:
            slots = [s for s in slots if s.start >= cutoff]
        if slots:
            per_day[day] = slots
    if not per_day:
        return []

    all_slots = [s for slots in per_day.values() for s in slots]
    snapshot = await _snapshot_for_slots(session, service, all_slots)
    before = service.buffer_before_minutes or 0
    after = service.buffer_after_minutes or 0
    return [
        day
        for day, slots in per_day.items()
        if any(snapshot.evaluate(*s.occupied(before, after)).available for s in slots)
    ]


def _local_window_within(hours: BusinessHours, day: date, start: datetime, end: datetime, tz_name: str) -> bool:
    zone = resolve_tz(tz_name)
    opening = local_to_utc(datetime.combine(day, parse_hm(hours.open_time)), zone)
    close = parse_hm(hours.close_time)
    if close == time.max:
        closing = local_to_utc(datetime.combine(day + timedelta(days=1), time(0, 0)), zone)
    else:
        closing = local_to_utc(datetime.combine(day, close), zone)
    if opening is None or closing is None:
        return False
    return opening <= start and end <= closing


async def check_provider_availability(
    session: AsyncSession,
    provider_id: int,
    start: datetime,
    end: datetime,
    service: Service | None = None,
) -> AvailabilityCheck:
    """Explain whether [start, end) lies inside business hours and outside provider blocks.

    With `service`, blocks are matched against its occupied window (buffers
    included), the same window admission evaluates.
    """
    provider = await session.get(Provider, provider_id)
    if provider is None:
        raise ProviderNotFound(provider_id)
    start, end = ensure_utc(start), ensure_utc(end)
    local_day = start.astimezone(resolve_tz(provider.timezone)).date()
    hours = (await AvailabilityRepo.get_business_hours(session, provider_id)).get(day_of_week(local_day))
    if hours is None or not hours.is_open:
        return AvailabilityCheck(False, "closed")
    if not _local_window_within(hours, local_day, start, end, provider.timezone):
        return AvailabilityCheck(False, "outside_business_hours")

    block_start, block_end = occupied_window(service, start, end) if service is not None else (start, end)
    blocked = await session.execute(
        select(Availability.id).where(
            Availability.provider_id == provider_id,
            Availability.is_available.is_(False),
            Availability.start_time < block_end,
            Availability.end_time > block_start,
        ).limit(1)
    )
    if blocked.first() is not None:
        return AvailabilityCheck(False, "blocked")
    return AvailabilityCheck(True)


def summarize(slots: Iterable[SlotAvailability]) -> dict[str, int]:
    """Counts used for calendar indicators."""
    total = 0
    free = 0
    for slot in slots:
        total += 1
        if slot.available:
            free += 1
    return {"total": total, "available": free}
