from datetime import UTC, date, datetime, timedelta

import pytest

from agenda.app.core.errors import ServiceNotFound
from agenda.app.domain.models import BookingStatus, Service
from agenda.app.services.availability_services import (
    available_days,
    available_staff,
    check_provider_availability,
    intervals_overlap,
    is_available,
    query_availability,
    summarize,
)
from agenda.app.services.booking_services import BookingManager, BookingRequest, CustomerInfo

MONDAY = datetime(2030, 1, 7, tzinfo=UTC)


def at(hour: int, minute: int = 0, day: datetime = MONDAY) -> datetime:
    return day.replace(hour=hour, minute=minute)


def test_intervals_are_half_open():
    assert not intervals_overlap(at(10), at(10, 30), at(10, 30), at(11))
    assert intervals_overlap(at(10), at(10, 30), at(10, 15), at(10, 45))
    assert intervals_overlap(at(10), at(12), at(10, 30), at(11))
    assert not intervals_overlap(at(11), at(12), at(10), at(11))


@pytest.mark.asyncio
async def test_buffer_after_blocks_following_slot(seed, session_factory):
    provider_id = await seed.provider()
    await seed.hours(provider_id, 1)
    service_id = await seed.service(provider_id, duration_minutes=30, buffer_after_minutes=15)

    manager = BookingManager(session_factory)
    booking = await manager.create_booking(
        BookingRequest(provider_id, service_id, at(10), CustomerInfo("Kari", "kari@example.com"))
    )
    assert booking.end_time == at(10, 30)
    assert booking.occupied_end == at(10, 45)

    async with session_factory() as session:
        assert not await is_available(session, provider_id, service_id, at(10, 15), at(10, 45))
        assert not await is_available(session, provider_id, service_id, at(10, 30), at(11))
        assert await is_available(session, provider_id, service_id, at(10, 45), at(11, 15))

        slots = await query_availability(session, provider_id, service_id, MONDAY.date())
    by_start = {s.start: s for s in slots}
    assert at(10, 15) not in by_start
    assert not by_start[at(10)].available
    assert not by_start[at(10, 30)].available
    assert by_start[at(11)].available


@pytest.mark.asyncio
async def test_assigned_staff_only(seed, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id, requires_staff=True, any_staff_member=False)
    anna = await seed.staff(provider_id, "Anna")
    await seed.staff(provider_id, "Bjorn")
    await seed.assign(anna, service_id)
    await seed.booking(provider_id, service_id, at(10), staff_id=anna)

    async with session_factory() as session:
        assert await available_staff(session, service_id, at(10), at(11)) == []
        assert await available_staff(session, service_id, at(11), at(12)) == [anna]
        assert not await is_available(session, provider_id, service_id, at(10), at(11))


@pytest.mark.asyncio
async def test_any_staff_member_in_roster_order(seed, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id, requires_staff=True, max_concurrent=5)
    anna = await seed.staff(provider_id, "Anna")
    bjorn = await seed.staff(provider_id, "Bjorn")
    await seed.staff(provider_id, "Inactive", is_active=False)
    other_service = await seed.service(provider_id, name="Colour")
    # Anna is busy on a different service; staff are exclusive across services
    await seed.booking(provider_id, other_service, at(10), staff_id=anna)
    await seed.staff_block(bjorn, at(13), at(14))

    async with session_factory() as session:
        assert await available_staff(session, service_id, at(10), at(11)) == [bjorn]
        assert await available_staff(session, service_id, at(13), at(14)) == [anna]
        assert await available_staff(session, service_id, at(15), at(16)) == [anna, bjorn]


@pytest.mark.asyncio
async def test_services_without_staff_have_no_staff_list(seed, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    await seed.staff(provider_id)
    async with session_factory() as session:
        assert await available_staff(session, service_id, at(10), at(11)) == []
        assert await available_staff(session, 9999, at(10), at(11)) == []
        assert await is_available(session, provider_id, service_id, at(10), at(11))


@pytest.mark.asyncio
async def test_max_concurrent_and_released_bookings(seed, session_factory):
    provider_id = await seed.provider()
    await seed.hours(provider_id, 1)
    service_id = await seed.service(provider_id, max_concurrent=2)
    await seed.booking(provider_id, service_id, at(10))
    await seed.booking(provider_id, service_id, at(12), status=BookingStatus.CANCELLED)
    await seed.booking(provider_id, service_id, at(12), status=BookingStatus.NO_SHOW)

    async with session_factory() as session:
        slots = await query_availability(session, provider_id, service_id, MONDAY.date())
        by_start = {s.start: s for s in slots}
        assert by_start[at(10)].available
        assert by_start[at(10)].available_staff_count == 1
        assert by_start[at(12)].available_staff_count == 2

    await seed.booking(provider_id, service_id, at(10), status=BookingStatus.COMPLETED)
    async with session_factory() as session:
        assert not await is_available(session, provider_id, service_id, at(10), at(11))
        assert await is_available(session, provider_id, service_id, at(12), at(13))


@pytest.mark.asyncio
async def test_staffed_capacity_is_capped_by_max_concurrent(seed, session_factory):
    provider_id = await seed.provider()
    await seed.hours(provider_id, 1)
    service_id = await seed.service(provider_id, requires_staff=True, max_concurrent=1)
    await seed.staff(provider_id, "Anna")
    await seed.staff(provider_id, "Bjorn")

    async with session_factory() as session:
        slots = await query_availability(session, provider_id, service_id, MONDAY.date())
    assert all(s.available_staff_count == 1 for s in slots)


@pytest.mark.asyncio
async def test_staffed_booking_counts_against_free_staff(seed, session_factory):
    provider_id = await seed.provider()
    await seed.hours(provider_id, 1)
    service_id = await seed.service(provider_id, requires_staff=True, max_concurrent=2)
    anna = await seed.staff(provider_id, "Anna")
    await seed.staff(provider_id, "Bjorn")
    await seed.booking(provider_id, service_id, at(10), staff_id=anna)

    async with session_factory() as session:
        # One booking, one staff member left: min(1, 2) - 1 leaves nothing.
        assert not await is_available(session, provider_id, service_id, at(10), at(11))
        assert await is_available(session, provider_id, service_id, at(11), at(12))
        slots = await query_availability(session, provider_id, service_id, MONDAY.date())
    by_start = {s.start: s for s in slots}
    assert not by_start[at(10)].available
    assert by_start[at(10)].available_staff_count == 0
    assert by_start[at(11)].available_staff_count == 2


@pytest.mark.asyncio
async def test_business_hours_weekdays_start_on_sunday(seed, session_factory):
    provider_id = await seed.provider()
    await seed.hours(provider_id, 0, "10:00", "12:00")
    await seed.hours(provider_id, 1, "09:00", "11:00")
    service_id = await seed.service(provider_id)

    async with session_factory() as session:
        monday = await query_availability(session, provider_id, service_id, MONDAY.date())
        sunday = await query_availability(session, provider_id, service_id, date(2030, 1, 6))
    assert [s.start for s in monday] == [at(9), at(10)]
    assert [s.start.hour for s in sunday] == [10, 11]


@pytest.mark.asyncio
async def test_provider_block_closes_slots(seed, session_factory):
    provider_id = await seed.provider()
    await seed.hours(provider_id, 1)
    service_id = await seed.service(provider_id)
    await seed.provider_block(provider_id, at(12), at(14))

    async with session_factory() as session:
        assert not await is_available(session, provider_id, service_id, at(12, 30), at(13, 30))
        assert await is_available(session, provider_id, service_id, at(14), at(15))
        slots = await query_availability(session, provider_id, service_id, MONDAY.date())
    counts = summarize(slots)
    assert counts == {"total": 8, "available": 6}


@pytest.mark.asyncio
async def test_query_availability_closed_day_and_unknown_service(seed, session_factory):
    provider_id = await seed.provider()
    other_provider = await seed.provider(name="Other")
    await seed.hours(provider_id, 1)
    await seed.hours(provider_id, 2, is_open=False)
    service_id = await seed.service(provider_id)

    async with session_factory() as session:
        assert await query_availability(session, provider_id, service_id, date(2030, 1, 8)) == []
        assert await query_availability(session, provider_id, service_id, date(2030, 1, 9)) == []
        with pytest.raises(ServiceNotFound):
            await query_availability(session, other_provider, service_id, MONDAY.date())


@pytest.mark.asyncio
async def test_available_days_in_month(seed, session_factory):
    provider_id = await seed.provider()
    await seed.hours(provider_id, 1)
    service_id = await seed.service(provider_id)
    second_monday = MONDAY + timedelta(days=7)
    await seed.provider_block(provider_id, at(0, day=second_monday), at(0, day=second_monday + timedelta(days=1)))

    async with session_factory() as session:
        days = await available_days(session, provider_id, service_id, 2030, 1)
        assert days == [date(2030, 1, 7), date(2030, 1, 21), date(2030, 1, 28)]

        later = await available_days(
            session, provider_id, service_id, 2030, 1, not_before=datetime(2030, 1, 22, tzinfo=UTC)
        )
        assert later == [date(2030, 1, 28)]


@pytest.mark.asyncio
async def test_check_provider_availability_reasons(seed, session_factory):
    provider_id = await seed.provider()
    await seed.hours(provider_id, 1)
    await seed.provider_block(provider_id, at(15), at(16))

    async with session_factory() as session:
        ok = await check_provider_availability(session, provider_id, at(10), at(11))
        assert ok.available and ok.reason is None
        early = await check_provider_availability(session, provider_id, at(8), at(9, 30))
        assert early.reason == "outside_business_hours"
        late = await check_provider_availability(session, provider_id, at(16, 30), at(17, 30))
        assert late.reason == "outside_business_hours"
        blocked = await check_provider_availability(session, provider_id, at(15), at(16))
        assert blocked.reason == "blocked"
        closed = await check_provider_availability(
            session, provider_id, at(10, day=MONDAY + timedelta(days=1)), at(11, day=MONDAY + timedelta(days=1))
        )
        assert closed.reason == "closed"


@pytest.mark.asyncio
async def test_provider_block_check_includes_service_buffers(seed, session_factory):
    provider_id = await seed.provider()
    await seed.hours(provider_id, 1)
    service_id = await seed.service(provider_id, buffer_after_minutes=15)
    await seed.provider_block(provider_id, at(15), at(16))

    async with session_factory() as session:
        service = await session.get(Service, service_id)
        bare = await check_provider_availability(session, provider_id, at(14), at(15))
        buffered = await check_provider_availability(session, provider_id, at(14), at(15), service)
        admitted = await is_available(session, provider_id, service_id, at(14), at(15))
    assert bare.available
    assert buffered.reason == "blocked"
    assert not admitted
