"""Booking admission and lifecycle.

`BookingManager.create_booking` is the only write path for new bookings.
Each attempt is one transaction:

    1. bump the provider's ``booking_seq`` (row lock, serializes admission
       per provider across processes);
    2. re-run the availability check inside the transaction;
    3. pick the first free staff member in roster order (if needed);
    4. insert the booking as PENDING and commit.

Conflicts surfacing as IntegrityError / OperationalError (exclusion
constraint, deadlock, lock timeout) restart the attempt; when attempts run
out the caller gets ``SlotUnavailable("contention")``.

Workflows are handed to the dispatcher after commit and never affect the
outcome of the booking operation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.app.core.constants import BOOKING_MAX_ATTEMPTS, ENFORCE_BUSINESS_HOURS
from agenda.app.core.errors import (
    BookingNotFound,
    InvalidStatusTransition,
    ProviderNotFound,
    ServiceNotFound,
    SlotUnavailable,
)
from agenda.app.domain.models import (
    Booking,
    BookingStatus,
    CancellationPolicy,
    Customer,
    Provider,
    RefundStatus,
    Service,
    TERMINAL_STATUSES,
    WorkflowTrigger,
)
from agenda.app.services.availability_services import (
    check_provider_availability,
    evaluate_window,
    occupied_window,
)
from agenda.app.services.shared_services import ensure_utc, to_money, utc_now
import agenda.config as cfg

logger = logging.getLogger(__name__)

__all__ = [
    "CustomerInfo",
    "BookingRequest",
    "CancellationOutcome",
    "BookingManager",
    "ALLOWED_TRANSITIONS",
    "compute_refund_percentage",
    "compute_refund_amount",
]


class TriggerSink(Protocol):
    def trigger(self, trigger: WorkflowTrigger, booking_id: int) -> object: ...


@dataclass(frozen=True)
class CustomerInfo:
    name: str
    email: str
    phone: str | None = None


@dataclass(frozen=True)
class BookingRequest:
    provider_id: int
    service_id: int
    start_time: datetime
    customer: CustomerInfo
    total_amount: Decimal | None = None
    deposit_amount: Decimal | None = None
    notes: str | None = None


@dataclass(frozen=True)
class CancellationOutcome:
    booking: Booking
    refund_percentage: int
    refund_amount: Decimal


ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW}
    ),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW}
    ),
}

_TRANSITION_TRIGGERS: dict[BookingStatus, WorkflowTrigger] = {
    BookingStatus.CONFIRMED: WorkflowTrigger.BOOKING_CONFIRMED,
    BookingStatus.CANCELLED: WorkflowTrigger.BOOKING_CANCELLED,
    BookingStatus.COMPLETED: WorkflowTrigger.BOOKING_COMPLETED,
}


def compute_refund_percentage(
    hours_until_start: float,
    policy: CancellationPolicy | None,
    default_cutoff_hours: int = 24,
) -> int:
    """Refund percentage for a cancellation `hours_until_start` before the booking.

    A provider policy is authoritative; without one a flat cutoff applies.
    """
    if policy is None:
        return 100 if hours_until_start >= default_cutoff_hours else 0
    if hours_until_start >= policy.full_refund_hours:
        return 100
    if hours_until_start >= policy.partial_refund_hours:
        return max(0, min(100, int(policy.partial_refund_percent)))
    return 0


def compute_refund_amount(booking: Booking, percentage: int) -> Decimal:
    paid = booking.deposit_amount if booking.deposit_amount is not None else booking.total_amount
    return to_money(to_money(paid) * Decimal(percentage) / Decimal(100))


class BookingManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        dispatcher: TriggerSink | None = None,
        max_attempts: int = BOOKING_MAX_ATTEMPTS,
        enforce_business_hours: bool = ENFORCE_BUSINESS_HOURS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._max_attempts = max(1, int(max_attempts))
        self._enforce_business_hours = enforce_business_hours
        self._clock = clock

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    async def create_booking(self, request: BookingRequest) -> Booking:
        """Admit and persist a PENDING booking or raise SlotUnavailable."""
        start = ensure_utc(request.start_time)
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                booking = await self._admit(request, start)
            except (IntegrityError, OperationalError) as exc:
                last_error = exc
                logger.info(
                    "Booking conflict for provider=%s service=%s start=%s (attempt %d/%d): %s",
                    request.provider_id, request.service_id, start.isoformat(),
                    attempt, self._max_attempts, exc.__class__.__name__,
                )
                continue
            self._fire(WorkflowTrigger.BOOKING_CREATED, booking.id)
            return booking
        raise SlotUnavailable("contention", "Slot could not be secured; please pick another time") from last_error

    async def _admit(self, request: BookingRequest, start: datetime) -> Booking:
        async with self._session_factory() as session:
            async with session.begin():
                await self._lock_provider(session, request.provider_id)

                service = await session.get(Service, request.service_id)
                if service is None or service.provider_id != request.provider_id or not service.is_active:
                    raise ServiceNotFound(request.service_id, request.provider_id)
                end = start + timedelta(minutes=service.duration_minutes)

                if self._enforce_business_hours:
                    check = await check_provider_availability(session, request.provider_id, start, end, service)
                    if not check.available:
                        raise SlotUnavailable(check.reason or "outside_business_hours")

                decision = await evaluate_window(session, service, start, end)
                if not decision.available:
                    logger.info(
                        "Booking rejected: provider=%s service=%s start=%s reason=%s",
                        request.provider_id, service.id, start.isoformat(), decision.reason,
                    )
                    raise SlotUnavailable(decision.reason or "capacity")

                staff_id = decision.free_staff[0] if service.requires_staff else None
                customer = await self._resolve_customer(session, request.customer)
                occ_start, occ_end = occupied_window(service, start, end)
                total = request.total_amount if request.total_amount is not None else service.price

                booking = Booking(
                    provider_id=request.provider_id,
                    customer_id=customer.id,
                    service_id=service.id,
                    staff_id=staff_id,
                    start_time=start,
                    end_time=end,
                    occupied_start=occ_start,
                    occupied_end=occ_end,
                    status=BookingStatus.PENDING,
                    customer_name=request.customer.name,
                    customer_email=request.customer.email,
                    customer_phone=request.customer.phone,
                    notes=request.notes,
                    total_amount=to_money(total),
                    deposit_amount=to_money(request.deposit_amount) if request.deposit_amount is not None else None,
                )
                session.add(booking)
                await session.flush()
            logger.info(
                "Booking %s admitted: provider=%s service=%s staff=%s start=%s",
                booking.id, booking.provider_id, booking.service_id, booking.staff_id, start.isoformat(),
            )
            return booking

    @staticmethod
    async def _lock_provider(session: AsyncSession, provider_id: int) -> None:
        result = await session.execute(
            update(Provider)
            .where(Provider.id == provider_id)
            .values(booking_seq=Provider.booking_seq + 1)
        )
        if result.rowcount == 0:
            raise ProviderNotFound(provider_id)

    @staticmethod
    async def _resolve_customer(session: AsyncSession, info: CustomerInfo) -> Customer:
        email = info.email.strip().lower()
        existing = (
            await session.execute(select(Customer).where(Customer.email == email))
        ).scalars().first()
        if existing is not None:
            return existing
        customer = Customer(name=info.name, email=email, phone=info.phone)
        session.add(customer)
        await session.flush()
        return customer

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------
    async def confirm(self, booking_id: int) -> Booking:
        return await self._transition(booking_id, BookingStatus.CONFIRMED)

    async def complete(self, booking_id: int) -> Booking:
        return await self._transition(booking_id, BookingStatus.COMPLETED)

    async def mark_no_show(self, booking_id: int) -> Booking:
        return await self._transition(booking_id, BookingStatus.NO_SHOW)

    async def cancel(
        self,
        booking_id: int,
        *,
        cancelled_by: str = "customer",
        reason: str | None = None,
    ) -> CancellationOutcome:
        """Cancel a booking and compute its refund under the provider policy."""
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                booking = await self._load_for_update(session, booking_id)
                self._check_transition(booking, BookingStatus.CANCELLED)
                if booking.start_time <= now:
                    raise InvalidStatusTransition(
                        booking.status, BookingStatus.CANCELLED, "Cannot cancel a booking that has already started"
                    )

                policy = (
                    await session.execute(
                        select(CancellationPolicy).where(CancellationPolicy.provider_id == booking.provider_id)
                    )
                ).scalars().first()
                hours_until = (booking.start_time - now).total_seconds() / 3600
                percentage = compute_refund_percentage(hours_until, policy, cfg.get_cancellation_cutoff_hours())
                amount = compute_refund_amount(booking, percentage)

                booking.status = BookingStatus.CANCELLED
                booking.cancelled_at = now
                booking.cancelled_by = cancelled_by
                booking.cancellation_reason = reason
                booking.refund_amount = amount
                booking.refund_status = RefundStatus.PROCESSING if amount > 0 else None
        logger.info(
            "Booking %s cancelled by %s (refund %s%% = %s)", booking_id, cancelled_by, percentage, amount
        )
        self._fire(WorkflowTrigger.BOOKING_CANCELLED, booking_id)
        return CancellationOutcome(booking=booking, refund_percentage=percentage, refund_amount=amount)

    async def _transition(self, booking_id: int, target: BookingStatus) -> Booking:
        async with self._session_factory() as session:
            async with session.begin():
                booking = await self._load_for_update(session, booking_id)
                self._check_transition(booking, target)
                booking.status = target
        logger.info("Booking %s -> %s", booking_id, target.value)
        trigger = _TRANSITION_TRIGGERS.get(target)
        if trigger is not None:
            self._fire(trigger, booking_id)
        return booking

    @staticmethod
    async def _load_for_update(session: AsyncSession, booking_id: int) -> Booking:
        booking = (
            await session.execute(select(Booking).where(Booking.id == booking_id).with_for_update())
        ).scalars().first()
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    @staticmethod
    def _check_transition(booking: Booking, target: BookingStatus) -> None:
        current = booking.status
        if current in TERMINAL_STATUSES or target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidStatusTransition(current, target)

    def _fire(self, trigger: WorkflowTrigger, booking_id: int) -> None:
        if self._dispatcher is None:
            return
        try:
            self._dispatcher.trigger(trigger, booking_id)
        except Exception:
            # Scheduling a detached task must not fail the booking operation.
            logger.exception("Failed to schedule %s workflows for booking %s", trigger.value, booking_id)
