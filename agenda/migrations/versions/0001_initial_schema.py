"""Initial database schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-09-28 10:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

BOOKING_STATUS = sa.Enum("PENDING", "CONFIRMED", "CANCELLED", "NO_SHOW", "COMPLETED", name="booking_status")
REFUND_STATUS = sa.Enum("PROCESSING", "COMPLETED", "FAILED", name="refund_status")
WORKFLOW_TRIGGER = sa.Enum(
    "BOOKING_CREATED",
    "BOOKING_CONFIRMED",
    "BOOKING_CANCELLED",
    "BOOKING_COMPLETED",
    "HOURS_BEFORE_48",
    "HOURS_BEFORE_24",
    "HOURS_BEFORE_1",
    "MINUTES_BEFORE_30",
    "HOURS_AFTER_24",
    name="workflow_trigger",
)
NOTIFICATION_TYPE = sa.Enum(
    "BOOKING_CREATED",
    "BOOKING_CONFIRMATION",
    "BOOKING_CANCELLED",
    "BOOKING_COMPLETED",
    "REMINDER_48H",
    "REMINDER_24H",
    "REMINDER_1H",
    "REMINDER_30M",
    "FOLLOW_UP_24H",
    name="notification_type",
)
NOTIFICATION_CHANNEL = sa.Enum("EMAIL", "SMS", "WEBHOOK", name="notification_channel")
NOTIFICATION_STATUS = sa.Enum("SENT", "FAILED", "DELIVERED", name="notification_status")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "providers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("business_name", sa.String(length=200), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="Europe/Oslo"),
        sa.Column("booking_seq", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at", nullable=True),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=40), nullable=True),
        _ts("created_at", nullable=True),
    )
    op.create_index("ix_customers_email", "customers", ["email"], unique=True)

    op.create_table(
        "services",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("buffer_before_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("buffer_after_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="NOK"),
        sa.Column("requires_staff", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("any_staff_member", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_concurrent", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=True),
        sa.CheckConstraint("max_concurrent >= 1", name="ck_services_max_concurrent_positive"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_services_duration_positive"),
    )
    op.create_index("ix_services_provider_id", "services", ["provider_id"])

    op.create_table(
        "staff_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("title", sa.String(length=120), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=True),
    )
    op.create_index("ix_staff_members_provider_id", "staff_members", ["provider_id"])

    op.create_table(
        "staff_assignments",
        sa.Column("staff_id", sa.Integer(), sa.ForeignKey("staff_members.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("service_id", sa.Integer(), sa.ForeignKey("services.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "business_hours",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("is_open", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("open_time", sa.String(length=5), nullable=False),
        sa.Column("close_time", sa.String(length=5), nullable=False),
        sa.UniqueConstraint("provider_id", "day_of_week", name="uq_business_hours_provider_day"),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_business_hours_day_of_week"),
    )

    op.create_table(
        "availability_blocks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        _ts("start_time"),
        _ts("end_time"),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reason", sa.String(length=255), nullable=True),
    )
    op.create_index(
        "ix_availability_blocks_provider_window", "availability_blocks", ["provider_id", "start_time", "end_time"]
    )

    op.create_table(
        "staff_availability",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("staff_id", sa.Integer(), sa.ForeignKey("staff_members.id", ondelete="CASCADE"), nullable=False),
        _ts("start_time"),
        _ts("end_time"),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reason", sa.String(length=255), nullable=True),
    )
    op.create_index(
        "ix_staff_availability_staff_window", "staff_availability", ["staff_id", "start_time", "end_time"]
    )

    op.create_table(
        "cancellation_policies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("full_refund_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("partial_refund_hours", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("partial_refund_percent", sa.Integer(), nullable=False, server_default="50"),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id"), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("service_id", sa.Integer(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("staff_id", sa.Integer(), sa.ForeignKey("staff_members.id"), nullable=True),
        _ts("start_time"),
        _ts("end_time"),
        _ts("occupied_start"),
        _ts("occupied_end"),
        sa.Column("status", BOOKING_STATUS, nullable=False, server_default="PENDING"),
        sa.Column("customer_name", sa.String(length=120), nullable=False),
        sa.Column("customer_email", sa.String(length=255), nullable=False),
        sa.Column("customer_phone", sa.String(length=40), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("deposit_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("refund_status", REFUND_STATUS, nullable=True),
        _ts("cancelled_at", nullable=True),
        sa.Column("cancelled_by", sa.String(length=32), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        _ts("created_at", nullable=True),
        _ts("updated_at", nullable=True),
        sa.CheckConstraint("end_time > start_time", name="ck_bookings_positive_interval"),
    )
    op.create_index("ix_bookings_staff_window", "bookings", ["staff_id", "occupied_start", "occupied_end", "status"])
    op.create_index(
        "ix_bookings_service_window", "bookings", ["service_id", "occupied_start", "occupied_end", "status"]
    )
    op.create_index("ix_bookings_start_status", "bookings", ["start_time", "status"])

    op.create_table(
        "email_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("html_content", sa.Text(), nullable=False),
        _ts("created_at", nullable=True),
    )
    op.create_index("ix_email_templates_provider_id", "email_templates", ["provider_id"])

    op.create_table(
        "workflows",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("trigger", WORKFLOW_TRIGGER, nullable=False),
        sa.Column("actions", sa.JSON(), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=True),
    )
    op.create_index("ix_workflows_provider_trigger_active", "workflows", ["provider_id", "trigger", "is_active"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("workflow_id", sa.Integer(), sa.ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True),
        sa.Column("recipient", sa.String(length=500), nullable=True),
        sa.Column("type", NOTIFICATION_TYPE, nullable=False),
        sa.Column("channel", NOTIFICATION_CHANNEL, nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("status", NOTIFICATION_STATUS, nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _ts("sent_at", nullable=True),
        _ts("created_at", nullable=True),
    )
    op.create_index("ix_notifications_booking_type_status", "notifications", ["booking_id", "type", "status"])


def downgrade() -> None:
    for table in (
        "notifications",
        "workflows",
        "email_templates",
        "bookings",
        "cancellation_policies",
        "staff_availability",
        "availability_blocks",
        "business_hours",
        "staff_assignments",
        "staff_members",
        "services",
        "customers",
        "providers",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum in (
        NOTIFICATION_STATUS,
        NOTIFICATION_CHANNEL,
        NOTIFICATION_TYPE,
        WORKFLOW_TRIGGER,
        REFUND_STATUS,
        BOOKING_STATUS,
    ):
        enum.drop(bind, checkfirst=True)
