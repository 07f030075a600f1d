from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum as _Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from agenda.app.core.constants import DEFAULT_CURRENCY, DEFAULT_TIMEZONE


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class (explicit for mypy)."""

    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    Values are normalized to UTC on the way in; backends without native
    timezone support (SQLite) get naive UTC, and results always come back aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _enum(enum_cls: type[_Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda e: [m.value for m in e],
        native_enum=True,
        validate_strings=True,
    )


class BookingStatus(_Enum):  # Values match DB labels (Postgres enum)
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    COMPLETED = "COMPLETED"


# Lifecycle-final states: no further transitions.
TERMINAL_STATUSES = frozenset(
    {
        BookingStatus.CANCELLED,
        BookingStatus.COMPLETED,
        BookingStatus.NO_SHOW,
    }
)

# Statuses that no longer hold capacity.
RELEASED_STATUSES = frozenset(
    {
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }
)


class WorkflowTrigger(_Enum):
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    HOURS_BEFORE_48 = "HOURS_BEFORE_48"
    HOURS_BEFORE_24 = "HOURS_BEFORE_24"
    HOURS_BEFORE_1 = "HOURS_BEFORE_1"
    MINUTES_BEFORE_30 = "MINUTES_BEFORE_30"
    HOURS_AFTER_24 = "HOURS_AFTER_24"


EVENT_TRIGGERS = frozenset(
    {
        WorkflowTrigger.BOOKING_CREATED,
        WorkflowTrigger.BOOKING_CONFIRMED,
        WorkflowTrigger.BOOKING_CANCELLED,
        WorkflowTrigger.BOOKING_COMPLETED,
    }
)


class NotificationType(_Enum):
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_CONFIRMATION = "BOOKING_CONFIRMATION"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    REMINDER_48H = "REMINDER_48H"
    REMINDER_24H = "REMINDER_24H"
    REMINDER_1H = "REMINDER_1H"
    REMINDER_30M = "REMINDER_30M"
    FOLLOW_UP_24H = "FOLLOW_UP_24H"


# Each trigger owns its own ledger type so one reminder never suppresses another.
TRIGGER_NOTIFICATION_TYPES: dict[WorkflowTrigger, NotificationType] = {
    WorkflowTrigger.BOOKING_CREATED: NotificationType.BOOKING_CREATED,
    WorkflowTrigger.BOOKING_CONFIRMED: NotificationType.BOOKING_CONFIRMATION,
    WorkflowTrigger.BOOKING_CANCELLED: NotificationType.BOOKING_CANCELLED,
    WorkflowTrigger.BOOKING_COMPLETED: NotificationType.BOOKING_COMPLETED,
    WorkflowTrigger.HOURS_BEFORE_48: NotificationType.REMINDER_48H,
    WorkflowTrigger.HOURS_BEFORE_24: NotificationType.REMINDER_24H,
    WorkflowTrigger.HOURS_BEFORE_1: NotificationType.REMINDER_1H,
    WorkflowTrigger.MINUTES_BEFORE_30: NotificationType.REMINDER_30M,
    WorkflowTrigger.HOURS_AFTER_24: NotificationType.FOLLOW_UP_24H,
}


def notification_type_for(trigger: WorkflowTrigger) -> NotificationType:
    return TRIGGER_NOTIFICATION_TYPES[trigger]


class NotificationChannel(_Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    WEBHOOK = "WEBHOOK"


class NotificationStatus(_Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    DELIVERED = "DELIVERED"


# Ledger states that count as "already dispatched".
DISPATCHED_STATUSES = frozenset({NotificationStatus.SENT, NotificationStatus.DELIVERED})


class RefundStatus(_Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Provider(Base):
    __tablename__ = "providers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120))
    business_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    # IANA name; business hours are interpreted in this zone
    timezone: Mapped[str] = mapped_column(String(64), default=DEFAULT_TIMEZONE)
    # Bumped by every admission transaction; the row lock serializes admission per provider
    booking_seq: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class Customer(Base):
    __tablename__ = "customers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class Service(Base):
    __tablename__ = "services"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    buffer_before_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    buffer_after_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), default=DEFAULT_CURRENCY)
    requires_staff: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # True: any active staff of the provider; False: only explicitly assigned staff
    any_staff_member: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    max_concurrent: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)

    provider: Mapped[Provider] = relationship(lazy="raise")


class StaffMember(Base):
    __tablename__ = "staff_members"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str | None] = mapped_column(String(120), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class StaffAssignment(Base):
    __tablename__ = "staff_assignments"
    staff_id: Mapped[int] = mapped_column(
        ForeignKey("staff_members.id", ondelete="CASCADE"), primary_key=True
    )
    service_id: Mapped[int] = mapped_column(
        ForeignKey("services.id", ondelete="CASCADE"), primary_key=True
    )


class BusinessHours(Base):
    __tablename__ = "business_hours"
    __table_args__ = (UniqueConstraint("provider_id", "day_of_week", name="uq_business_hours_provider_day"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="CASCADE"))
    # Day of week: Sunday=0 .. Saturday=6
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    is_open: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Local wall-clock "HH:MM"
    open_time: Mapped[str] = mapped_column(String(5), default="09:00")
    close_time: Mapped[str] = mapped_column(String(5), default="17:00")


class Availability(Base):
    """Provider-level availability block (vacation, manual block)."""

    __tablename__ = "availability_blocks"
    __table_args__ = (Index("ix_availability_blocks_provider_window", "provider_id", "start_time", "end_time"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="CASCADE"))
    start_time: Mapped[datetime] = mapped_column(UTCDateTime())
    end_time: Mapped[datetime] = mapped_column(UTCDateTime())
    is_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)


class StaffAvailability(Base):
    __tablename__ = "staff_availability"
    __table_args__ = (Index("ix_staff_availability_staff_window", "staff_id", "start_time", "end_time"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    staff_id: Mapped[int] = mapped_column(ForeignKey("staff_members.id", ondelete="CASCADE"))
    start_time: Mapped[datetime] = mapped_column(UTCDateTime())
    end_time: Mapped[datetime] = mapped_column(UTCDateTime())
    is_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)


class CancellationPolicy(Base):
    __tablename__ = "cancellation_policies"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="CASCADE"), unique=True)
    full_refund_hours: Mapped[int] = mapped_column(Integer, default=24)
    partial_refund_hours: Mapped[int] = mapped_column(Integer, default=12)
    partial_refund_percent: Mapped[int] = mapped_column(Integer, default=50)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_staff_window", "staff_id", "occupied_start", "occupied_end", "status"),
        Index("ix_bookings_service_window", "service_id", "occupied_start", "occupied_end", "status"),
        Index("ix_bookings_start_status", "start_time", "status"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id"))
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"))
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"))
    # Assigned at creation, never reassigned
    staff_id: Mapped[int | None] = mapped_column(ForeignKey("staff_members.id"), nullable=True)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime())
    end_time: Mapped[datetime] = mapped_column(UTCDateTime())
    # Visible window widened by the service buffers at creation time
    occupied_start: Mapped[datetime] = mapped_column(UTCDateTime())
    occupied_end: Mapped[datetime] = mapped_column(UTCDateTime())
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus, "booking_status"),
        default=BookingStatus.PENDING,
        nullable=False,
    )
    customer_name: Mapped[str] = mapped_column(String(120))
    customer_email: Mapped[str] = mapped_column(String(255))
    customer_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    deposit_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    refund_status: Mapped[RefundStatus | None] = mapped_column(
        _enum(RefundStatus, "refund_status"), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow)

    provider: Mapped[Provider] = relationship(lazy="raise")
    customer: Mapped[Customer] = relationship(lazy="raise")
    service: Mapped[Service] = relationship(lazy="raise")
    staff: Mapped[StaffMember | None] = relationship(lazy="raise")


class EmailTemplate(Base):
    __tablename__ = "email_templates"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    subject: Mapped[str] = mapped_column(String(255))
    html_content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class Workflow(Base):
    __tablename__ = "workflows"
    __table_args__ = (Index("ix_workflows_provider_trigger_active", "provider_id", "trigger", "is_active"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(120))
    trigger: Mapped[WorkflowTrigger] = mapped_column(_enum(WorkflowTrigger, "workflow_trigger"))
    # Validated JSON (see domain.workflow_types); ordered list of actions
    actions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


class Notification(Base):
    """One action execution for one booking; also the idempotency ledger."""

    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notifications_booking_type_status", "booking_id", "type", "status"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"))
    workflow_id: Mapped[int | None] = mapped_column(
        ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True
    )
    recipient: Mapped[str | None] = mapped_column(String(500), nullable=True)
    type: Mapped[NotificationType] = mapped_column(_enum(NotificationType, "notification_type"))
    channel: Mapped[NotificationChannel] = mapped_column(_enum(NotificationChannel, "notification_channel"))
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[NotificationStatus] = mapped_column(_enum(NotificationStatus, "notification_status"))
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)


__all__ = [
    "Base",
    "UTCDateTime",
    "BookingStatus",
    "WorkflowTrigger",
    "NotificationType",
    "NotificationChannel",
    "NotificationStatus",
    "RefundStatus",
    "Provider",
    "Customer",
    "Service",
    "StaffMember",
    "StaffAssignment",
    "BusinessHours",
    "Availability",
    "StaffAvailability",
    "CancellationPolicy",
    "Booking",
    "EmailTemplate",
    "Workflow",
    "Notification",
    "notification_type_for",
    "TERMINAL_STATUSES",
    "RELEASED_STATUSES",
    "EVENT_TRIGGERS",
    "TRIGGER_NOTIFICATION_TYPES",
    "DISPATCHED_STATUSES",
]
