"""Test configuration: import path plus a throwaway SQLite database per test.

Adds the repository root to sys.path so `import agenda` works in CI where the
checkout directory may not be on PYTHONPATH by default. Each test gets its own
file-backed aiosqlite database (file-backed so several connections can race
on the same data in the concurrency tests).
"""

from __future__ import annotations

import sys
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio


ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402

from agenda.app.core.db import init_db, make_session_factory  # noqa: E402
from agenda.app.domain.models import (  # noqa: E402
    Availability,
    Booking,
    BookingStatus,
    BusinessHours,
    CancellationPolicy,
    Customer,
    EmailTemplate,
    Provider,
    Service,
    StaffAssignment,
    StaffAvailability,
    StaffMember,
    Workflow,
    WorkflowTrigger,
)

# Monday
MONDAY = datetime(2030, 1, 7, tzinfo=UTC)


def at(hour: int, minute: int = 0, day: datetime = MONDAY) -> datetime:
    return day.replace(hour=hour, minute=minute)


class FakeEmailSender:
    """Records every send; `fail_for` recipients get False back."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_for = fail_for or set()

    async def send(self, to, subject, html, *, to_name=None, text=None, reply_to=None) -> bool:
        if to in self.fail_for:
            return False
        self.sent.append({"to": to, "subject": subject, "html": html, "to_name": to_name, "text": text})
        return True


class RecordingDispatcher:
    def __init__(self) -> None:
        self.calls: list[tuple[WorkflowTrigger, int]] = []

    def trigger(self, trigger: WorkflowTrigger, booking_id: int) -> None:
        self.calls.append((trigger, booking_id))


class Seeder:
    """Inserts fixture rows and returns their ids."""

    def __init__(self, session_factory) -> None:
        self._sf = session_factory

    async def _add(self, obj):
        async with self._sf() as session:
            session.add(obj)
            await session.commit()
            return obj

    async def provider(self, *, timezone: str = "UTC", **kw) -> int:
        kw.setdefault("name", "Studio")
        kw.setdefault("business_name", "Studio Nord")
        kw.setdefault("email", "owner@studio.test")
        return (await self._add(Provider(timezone=timezone, **kw))).id

    async def service(self, provider_id: int, **kw) -> int:
        kw.setdefault("name", "Haircut")
        kw.setdefault("duration_minutes", 60)
        kw.setdefault("price", Decimal("450.00"))
        kw.setdefault("currency", "NOK")
        return (await self._add(Service(provider_id=provider_id, **kw))).id

    async def staff(self, provider_id: int, name: str = "Anna", **kw) -> int:
        return (await self._add(StaffMember(provider_id=provider_id, name=name, **kw))).id

    async def assign(self, staff_id: int, service_id: int) -> None:
        await self._add(StaffAssignment(staff_id=staff_id, service_id=service_id))

    async def hours(self, provider_id: int, day_of_week: int, open_time="09:00", close_time="17:00", is_open=True):
        await self._add(
            BusinessHours(
                provider_id=provider_id,
                day_of_week=day_of_week,
                open_time=open_time,
                close_time=close_time,
                is_open=is_open,
            )
        )

    async def provider_block(self, provider_id: int, start: datetime, end: datetime) -> None:
        await self._add(Availability(provider_id=provider_id, start_time=start, end_time=end, is_available=False))

    async def staff_block(self, staff_id: int, start: datetime, end: datetime) -> None:
        await self._add(StaffAvailability(staff_id=staff_id, start_time=start, end_time=end, is_available=False))

    async def policy(self, provider_id: int, **kw) -> None:
        await self._add(CancellationPolicy(provider_id=provider_id, **kw))

    async def template(self, provider_id: int, subject: str, html: str) -> int:
        return (await self._add(EmailTemplate(provider_id=provider_id, name="tpl", subject=subject, html_content=html))).id

    async def workflow(
        self,
        provider_id: int,
        trigger: WorkflowTrigger,
        actions: list[dict[str, Any]],
        conditions: dict[str, Any] | None = None,
        is_active: bool = True,
        name: str = "wf",
    ) -> int:
        return (
            await self._add(
                Workflow(
                    provider_id=provider_id,
                    name=name,
                    trigger=trigger,
                    actions=actions,
                    conditions=conditions,
                    is_active=is_active,
                )
            )
        ).id

    async def booking(
        self,
        provider_id: int,
        service_id: int,
        start: datetime,
        *,
        minutes: int = 60,
        staff_id: int | None = None,
        status: BookingStatus = BookingStatus.PENDING,
        total: Decimal | str = "450.00",
        deposit: Decimal | str | None = None,
        email: str = "kari@example.com",
        phone: str | None = None,
    ) -> int:
        async with self._sf() as session:
            customer = (await session.execute(select(Customer).where(Customer.email == email))).scalars().first()
            if customer is None:
                customer = Customer(name="Kari", email=email, phone=phone)
                session.add(customer)
                await session.flush()
            end = start + timedelta(minutes=minutes)
            booking = Booking(
                provider_id=provider_id,
                customer_id=customer.id,
                service_id=service_id,
                staff_id=staff_id,
                start_time=start,
                end_time=end,
                occupied_start=start,
                occupied_end=end,
                status=status,
                customer_name="Kari",
                customer_email=email,
                customer_phone=phone,
                total_amount=Decimal(str(total)),
                deposit_amount=Decimal(str(deposit)) if deposit is not None else None,
            )
            session.add(booking)
            await session.commit()
            return booking.id


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'agenda.db'}")
    await init_db(engine=eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()
