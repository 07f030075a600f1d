"""Minimal FastAPI facade over the booking engine.

Thin request/response glue: availability queries, booking admission, status
transitions, and the cron endpoint that runs one workflow sweep. Business
rules live in `agenda.app.services`.
"""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from functools import wraps
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from agenda.app.core.bootstrap import AppContainer, build_container
from agenda.app.core.errors import (
    BookingNotFound,
    InvalidStatusTransition,
    ProviderNotFound,
    ServiceNotFound,
    SlotUnavailable,
)
from agenda.app.domain.models import Booking
from agenda.app.services.availability_services import available_days, query_availability, summarize
from agenda.app.services.booking_services import BookingRequest, CustomerInfo
import agenda.config as cfg

logger = logging.getLogger(__name__)


class SlotOut(BaseModel):
    start: datetime
    end: datetime
    available: bool
    available_staff_count: int


class AvailabilityResponse(BaseModel):
    day: date
    slots: list[SlotOut]
    total: int
    available: int


class AvailableDaysResponse(BaseModel):
    days: list[date]


class CustomerIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=40)


class BookingCreateRequest(BaseModel):
    provider_id: int
    service_id: int
    start_time: datetime
    customer: CustomerIn
    total_amount: Optional[Decimal] = Field(None, ge=0)
    deposit_amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    cancelled_by: str = "customer"
    reason: Optional[str] = None


class BookingOut(BaseModel):
    id: int
    provider_id: int
    service_id: int
    staff_id: Optional[int] = None
    status: str
    start_time: datetime
    end_time: datetime
    total_amount: Decimal
    refund_amount: Optional[Decimal] = None
    refund_percentage: Optional[int] = None


class SweepResponse(BaseModel):
    success: bool
    processed: int
    errors: list[str]


def _booking_out(booking: Booking, refund_percentage: int | None = None) -> BookingOut:
    return BookingOut(
        id=booking.id,
        provider_id=booking.provider_id,
        service_id=booking.service_id,
        staff_id=booking.staff_id,
        status=booking.status.value,
        start_time=booking.start_time,
        end_time=booking.end_time,
        total_amount=booking.total_amount,
        refund_amount=booking.refund_amount,
        refund_percentage=refund_percentage,
    )


# ---------------------------------------------------------------------------
# Error handling helpers
# ---------------------------------------------------------------------------

def booking_error_handler(func):
    """Map domain errors raised by booking endpoints onto HTTP responses.

    - SlotUnavailable -> 409 with a pointer back to the availability query
    - InvalidStatusTransition -> 409
    - *NotFound -> 404
    """

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except SlotUnavailable as exc:
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"error": exc.code, "reason": exc.reason, "retry": "query_availability"},
            )
        except InvalidStatusTransition as exc:
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"error": exc.code, "detail": str(exc)},
            )
        except (BookingNotFound, ServiceNotFound, ProviderNotFound) as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.code) from exc

    return wrapper


def _container(request: Request) -> AppContainer:
    return request.app.state.container


def _check_cron_auth(authorization: str | None) -> None:
    secret = cfg.get_cron_secret()
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")


def create_app(container: AppContainer | None = None) -> FastAPI:
    """Build the app; a container built elsewhere (tests) is used as-is and not closed."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "container", None) is None
        if owned:
            app.state.container = build_container()
        try:
            yield
        finally:
            if owned:
                await app.state.container.aclose()

    app = FastAPI(title="Agenda booking API", lifespan=lifespan)
    if container is not None:
        app.state.container = container

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/availability", response_model=AvailabilityResponse)
    async def availability(
        request: Request,
        provider_id: int,
        service_id: int,
        day: date = Query(..., alias="date"),
    ) -> AvailabilityResponse:
        async with _container(request).session_factory() as session:
            try:
                slots = await query_availability(session, provider_id, service_id, day)
            except (ServiceNotFound, ProviderNotFound) as exc:
                raise HTTPException(status_code=404, detail=exc.code) from exc
        counts = summarize(slots)
        return AvailabilityResponse(
            day=day,
            slots=[
                SlotOut(
                    start=s.start,
                    end=s.end,
                    available=s.available,
                    available_staff_count=s.available_staff_count,
                )
                for s in slots
            ],
            total=counts["total"],
            available=counts["available"],
        )

    @app.get("/api/available-days", response_model=AvailableDaysResponse)
    async def month_days(
        request: Request,
        provider_id: int,
        service_id: int,
        year: int = Query(..., ge=2000, le=2100),
        month: int = Query(..., ge=1, le=12),
    ) -> AvailableDaysResponse:
        async with _container(request).session_factory() as session:
            try:
                days = await available_days(session, provider_id, service_id, year, month)
            except (ServiceNotFound, ProviderNotFound) as exc:
                raise HTTPException(status_code=404, detail=exc.code) from exc
        return AvailableDaysResponse(days=days)

    @app.post("/api/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
    @booking_error_handler
    async def create_booking(payload: BookingCreateRequest, request: Request) -> BookingOut:
        booking = await _container(request).booking_manager.create_booking(
            BookingRequest(
                provider_id=payload.provider_id,
                service_id=payload.service_id,
                start_time=payload.start_time,
                customer=CustomerInfo(
                    name=payload.customer.name,
                    email=str(payload.customer.email),
                    phone=payload.customer.phone,
                ),
                total_amount=payload.total_amount,
                deposit_amount=payload.deposit_amount,
                notes=payload.notes,
            )
        )
        return _booking_out(booking)

    @app.post("/api/bookings/{booking_id}/confirm", response_model=BookingOut)
    @booking_error_handler
    async def confirm_booking(booking_id: int, request: Request) -> BookingOut:
        return _booking_out(await _container(request).booking_manager.confirm(booking_id))

    @app.post("/api/bookings/{booking_id}/complete", response_model=BookingOut)
    @booking_error_handler
    async def complete_booking(booking_id: int, request: Request) -> BookingOut:
        return _booking_out(await _container(request).booking_manager.complete(booking_id))

    @app.post("/api/bookings/{booking_id}/no-show", response_model=BookingOut)
    @booking_error_handler
    async def no_show_booking(booking_id: int, request: Request) -> BookingOut:
        return _booking_out(await _container(request).booking_manager.mark_no_show(booking_id))

    @app.post("/api/bookings/{booking_id}/cancel", response_model=BookingOut)
    @booking_error_handler
    async def cancel_booking(booking_id: int, request: Request, payload: Optional[CancelRequest] = None) -> BookingOut:
        payload = payload or CancelRequest()
        outcome = await _container(request).booking_manager.cancel(
            booking_id, cancelled_by=payload.cancelled_by, reason=payload.reason
        )
        return _booking_out(outcome.booking, outcome.refund_percentage)

    @app.api_route("/api/cron/workflows", methods=["GET", "POST"], response_model=SweepResponse)
    async def cron_workflows(request: Request, authorization: Optional[str] = Header(None)) -> SweepResponse:
        _check_cron_auth(authorization)
        result = await _container(request).scheduler.process_scheduled_workflows()
        if result.errors:
            logger.warning("Cron sweep reported %d errors", len(result.errors))
        return SweepResponse(success=result.success, processed=result.processed, errors=result.errors)

    return app


def get_app() -> FastAPI:
    """Exported factory for uvicorn or tests."""
    return create_app()
