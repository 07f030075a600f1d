"""Workflow execution.

`WorkflowExecutor.execute_for_trigger` runs every active workflow of the
booking's provider for one trigger. Each action is isolated: its outcome is
written to the notification ledger and a failure never stops the actions or
workflows after it.

`WorkflowDispatcher` is how booking operations hand work off: it spawns a
tracked background task per trigger and logs whatever that task raises, so
workflow problems never reach the booking caller and never vanish silently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from agenda.app.core.constants import PUBLIC_BASE_URL, WEBHOOK_TIMEOUT_SECONDS
from agenda.app.core.errors import ActionDispatchFailure, BookingNotFound, WorkflowConfigError
from agenda.app.core.notifications import EmailSender
from agenda.app.domain.models import (
    Booking,
    DISPATCHED_STATUSES,
    EVENT_TRIGGERS,
    EmailTemplate,
    Notification,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    Workflow,
    WorkflowTrigger,
    notification_type_for,
)
from agenda.app.domain.workflow_types import (
    EmailAction,
    RecipientType,
    SmsAction,
    WebhookAction,
    dump_actions,
    dump_conditions,
    parse_actions,
    parse_conditions,
)
from agenda.app.services.shared_services import utc_now
from agenda.app.services.template_services import (
    default_template,
    generate_template_variables,
    render_template,
    strip_html,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ExecutionResult",
    "WorkflowRepo",
    "WorkflowExecutor",
    "WorkflowDispatcher",
    "build_webhook_payload",
]


@dataclass
class ExecutionResult:
    executed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0


@dataclass(frozen=True)
class _Delivery:
    channel: NotificationChannel
    recipient: str | None
    subject: str | None = None
    content: str | None = None


class _FailedDelivery(ActionDispatchFailure):
    """ActionDispatchFailure that still knows what was attempted, for the ledger."""

    def __init__(self, delivery: _Delivery, reason: str, status_code: int | None = None) -> None:
        super().__init__(reason, status_code)
        self.delivery = delivery


class WorkflowRepo:
    """Workflow configuration and notification-ledger queries."""

    @staticmethod
    async def create_workflow(
        session: AsyncSession,
        provider_id: int,
        name: str,
        trigger: WorkflowTrigger,
        actions: Any,
        conditions: Any = None,
        is_active: bool = True,
    ) -> Workflow:
        """Validate and store a workflow. Raises WorkflowConfigError on bad configuration."""
        try:
            parsed_actions = parse_actions(actions)
            parsed_conditions = parse_conditions(conditions)
        except ValidationError as exc:
            raise WorkflowConfigError(str(exc)) from exc
        if not parsed_actions:
            raise WorkflowConfigError("A workflow needs at least one action")
        workflow = Workflow(
            provider_id=provider_id,
            name=name,
            trigger=trigger,
            actions=dump_actions(parsed_actions),
            conditions=dump_conditions(parsed_conditions),
            is_active=is_active,
        )
        session.add(workflow)
        await session.flush()
        return workflow

    @staticmethod
    async def list_active(session: AsyncSession, provider_id: int, trigger: WorkflowTrigger) -> list[Workflow]:
        rows = await session.execute(
            select(Workflow)
            .where(
                Workflow.provider_id == provider_id,
                Workflow.trigger == trigger,
                Workflow.is_active.is_(True),
            )
            .order_by(Workflow.id)
        )
        return list(rows.scalars().all())

    @staticmethod
    async def already_dispatched(session: AsyncSession, booking_id: int, notification_type: NotificationType) -> bool:
        row = await session.execute(
            select(Notification.id)
            .where(
                Notification.booking_id == booking_id,
                Notification.type == notification_type,
                Notification.status.in_(list(DISPATCHED_STATUSES)),
            )
            .limit(1)
        )
        return row.first() is not None

    @staticmethod
    async def get_stats(session: AsyncSession, provider_id: int, now: datetime | None = None) -> dict[str, Any]:
        """Workflow counts and last-30-day notification counts by status."""
        since = (now or utc_now()) - timedelta(days=30)
        total = await session.scalar(select(func.count(Workflow.id)).where(Workflow.provider_id == provider_id))
        active = await session.scalar(
            select(func.count(Workflow.id)).where(Workflow.provider_id == provider_id, Workflow.is_active.is_(True))
        )
        rows = await session.execute(
            select(Notification.status, func.count(Notification.id))
            .join(Booking, Booking.id == Notification.booking_id)
            .where(Booking.provider_id == provider_id, Notification.created_at >= since)
            .group_by(Notification.status)
        )
        by_status = {status.value: int(count) for status, count in rows.all()}
        sent = by_status.get(NotificationStatus.SENT.value, 0) + by_status.get(NotificationStatus.DELIVERED.value, 0)
        return {
            "total_workflows": int(total or 0),
            "active_workflows": int(active or 0),
            "notifications_sent": sent,
            "notifications_failed": by_status.get(NotificationStatus.FAILED.value, 0),
            "notifications_by_status": by_status,
        }


def build_webhook_payload(booking: Booking, trigger: WorkflowTrigger) -> dict[str, Any]:
    return {
        "event": trigger.value,
        "booking": {
            "id": booking.id,
            "customerName": booking.customer_name,
            "customerEmail": booking.customer_email,
            "customerPhone": booking.customer_phone,
            "serviceName": booking.service.name,
            "staffName": booking.staff.name if booking.staff is not None else None,
            "startTime": booking.start_time.isoformat(),
            "endTime": booking.end_time.isoformat(),
            "status": booking.status.value,
            "totalAmount": str(booking.total_amount),
            "currency": booking.service.currency,
        },
        "provider": {
            "id": booking.provider.id,
            "name": booking.provider.name,
            "businessName": booking.provider.business_name,
        },
        "timestamp": utc_now().isoformat(),
    }


class WorkflowExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        email_sender: EmailSender,
        http_client: httpx.AsyncClient,
        base_url: str = PUBLIC_BASE_URL,
        webhook_timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._email_sender = email_sender
        self._http = http_client
        self._base_url = base_url
        self._webhook_timeout = webhook_timeout

    async def execute_for_trigger(self, trigger: WorkflowTrigger, booking_id: int) -> ExecutionResult:
        """Run all matching workflows for one (trigger, booking). Raises BookingNotFound."""
        async with self._session_factory() as session:
            booking = await self._load_booking(session, booking_id)
            if booking is None:
                raise BookingNotFound(booking_id)

            result = ExecutionResult()
            workflows = await WorkflowRepo.list_active(session, booking.provider_id, trigger)
            if not workflows:
                return result

            notification_type = notification_type_for(trigger)
            variables = generate_template_variables(booking, self._base_url)

            for workflow in workflows:
                try:
                    actions = parse_actions(workflow.actions)
                    conditions = parse_conditions(workflow.conditions)
                except ValidationError as exc:
                    result.failed += 1
                    result.errors.append(f"Workflow {workflow.name}: invalid configuration ({exc.error_count()} errors)")
                    logger.error("Workflow %s has invalid stored configuration: %s", workflow.id, exc)
                    continue

                if conditions is not None and not conditions.matches(booking):
                    logger.debug("Workflow %s skipped for booking %s: conditions not met", workflow.id, booking.id)
                    continue

                for action in actions:
                    error = await self._run_action(
                        session, workflow, action, booking, trigger, notification_type, variables
                    )
                    if error is None:
                        result.executed += 1
                    else:
                        result.failed += 1
                        result.errors.append(f"Workflow {workflow.name}: {error}")

            return result

    @staticmethod
    async def _load_booking(session: AsyncSession, booking_id: int) -> Booking | None:
        row = await session.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .options(
                selectinload(Booking.provider),
                selectinload(Booking.customer),
                selectinload(Booking.service),
                selectinload(Booking.staff),
            )
        )
        return row.scalars().first()

    async def _run_action(
        self,
        session: AsyncSession,
        workflow: Workflow,
        action: EmailAction | SmsAction | WebhookAction,
        booking: Booking,
        trigger: WorkflowTrigger,
        notification_type: NotificationType,
        variables: dict[str, Any],
    ) -> str | None:
        """Execute one action and record it; returns the failure reason or None."""
        if isinstance(action, EmailAction):
            channel = NotificationChannel.EMAIL
        elif isinstance(action, WebhookAction):
            channel = NotificationChannel.WEBHOOK
        else:
            channel = NotificationChannel.SMS

        delivery = _Delivery(channel=channel, recipient=None)
        error: str | None = None
        try:
            if isinstance(action, EmailAction):
                delivery = await self._send_email(session, action, booking, variables)
            elif isinstance(action, WebhookAction):
                delivery = await self._call_webhook(action, booking, trigger)
            else:
                delivery = self._send_sms(action, booking, variables)
        except _FailedDelivery as exc:
            delivery = exc.delivery
            error = exc.reason
        except ActionDispatchFailure as exc:
            delivery = _Delivery(channel=channel, recipient=None)
            error = exc.reason
        except Exception as exc:
            logger.exception("Workflow %s action %s crashed for booking %s", workflow.id, channel.value, booking.id)
            error = f"{exc.__class__.__name__}: {exc}"

        await self._record(session, booking, workflow, notification_type, delivery, error)
        if error is None:
            logger.info("Workflow %s %s action sent for booking %s", workflow.id, channel.value, booking.id)
        else:
            logger.warning("Workflow %s %s action failed for booking %s: %s", workflow.id, channel.value, booking.id, error)
        return error

    async def _record(
        self,
        session: AsyncSession,
        booking: Booking,
        workflow: Workflow,
        notification_type: NotificationType,
        delivery: _Delivery,
        error: str | None,
    ) -> None:
        session.add(
            Notification(
                booking_id=booking.id,
                workflow_id=workflow.id,
                recipient=delivery.recipient,
                type=notification_type,
                channel=delivery.channel,
                subject=delivery.subject,
                content=delivery.content,
                status=NotificationStatus.FAILED if error else NotificationStatus.SENT,
                failure_reason=error,
                sent_at=None if error else utc_now(),
            )
        )
        await session.commit()

    @staticmethod
    def _resolve_email_recipient(action: EmailAction, booking: Booking) -> tuple[str, str | None]:
        if action.recipient_type is RecipientType.CUSTOMER:
            return booking.customer_email, booking.customer_name
        if action.recipient_type is RecipientType.PROVIDER:
            if not booking.provider.email:
                raise ActionDispatchFailure("Provider has no email address")
            return booking.provider.email, booking.provider.business_name or booking.provider.name
        if action.recipient_type is RecipientType.STAFF:
            if booking.staff is None or not booking.staff.email:
                raise ActionDispatchFailure("No staff email available for this booking")
            return booking.staff.email, booking.staff.name
        if action.custom_email:
            return action.custom_email, None
        raise ActionDispatchFailure("Invalid recipient configuration")

    async def _email_content(
        self, session: AsyncSession, action: EmailAction, booking: Booking, variables: dict[str, Any]
    ) -> tuple[str, str]:
        subject: str | None = action.subject
        body: str | None = action.content
        if action.template_id is not None:
            template = (
                await session.execute(
                    select(EmailTemplate).where(
                        EmailTemplate.id == action.template_id,
                        EmailTemplate.provider_id == booking.provider_id,
                    )
                )
            ).scalars().first()
            if template is None:
                raise ActionDispatchFailure(f"Email template {action.template_id} not found")
            subject = subject or template.subject
            body = template.html_content
        elif body is None:
            fallback = default_template(action.template_type)
            if fallback is not None:
                subject = subject or fallback[0]
                body = fallback[1]
        if not body:
            raise ActionDispatchFailure("Email action has no content or template")
        return render_template(subject or "Booking update", variables), render_template(body, variables)

    async def _send_email(
        self, session: AsyncSession, action: EmailAction, booking: Booking, variables: dict[str, Any]
    ) -> _Delivery:
        recipient, recipient_name = self._resolve_email_recipient(action, booking)
        subject, html = await self._email_content(session, action, booking, variables)
        text = strip_html(html)
        delivery = _Delivery(NotificationChannel.EMAIL, recipient, subject, text)
        sent = await self._email_sender.send(recipient, subject, html, to_name=recipient_name, text=text)
        if not sent:
            raise _FailedDelivery(delivery, "Failed to send email")
        return delivery

    async def _call_webhook(self, action: WebhookAction, booking: Booking, trigger: WorkflowTrigger) -> _Delivery:
        payload = build_webhook_payload(booking, trigger)
        delivery = _Delivery(NotificationChannel.WEBHOOK, action.webhook_url, f"Webhook {trigger.value}")
        try:
            response = await self._http.post(action.webhook_url, json=payload, timeout=self._webhook_timeout)
        except httpx.HTTPError as exc:
            raise _FailedDelivery(delivery, f"Webhook request failed: {exc.__class__.__name__}") from exc
        if not response.is_success:
            raise _FailedDelivery(
                delivery, f"Webhook returned {response.status_code}: {response.reason_phrase}", response.status_code
            )
        return delivery

    @staticmethod
    def _send_sms(action: SmsAction, booking: Booking, variables: dict[str, Any]) -> _Delivery:
        recipient = booking.customer_phone if action.recipient_type is RecipientType.CUSTOMER else None
        delivery = _Delivery(NotificationChannel.SMS, recipient, None, render_template(action.message, variables))
        raise _FailedDelivery(delivery, "SMS functionality not yet implemented")


class WorkflowDispatcher:
    """Detached, tracked execution of event-triggered workflows."""

    def __init__(self, executor: WorkflowExecutor) -> None:
        self._executor = executor
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def trigger(self, trigger: WorkflowTrigger, booking_id: int) -> asyncio.Task[None]:
        # Time-offset triggers belong to the scheduler sweep.
        if trigger not in EVENT_TRIGGERS:
            raise ValueError(f"{trigger.value} is not an event trigger")
        task = asyncio.create_task(self._run(trigger, booking_id), name=f"workflows-{trigger.value}-{booking_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, trigger: WorkflowTrigger, booking_id: int) -> None:
        try:
            result = await self._executor.execute_for_trigger(trigger, booking_id)
        except BookingNotFound as exc:
            logger.warning("Workflows for %s skipped: %s", trigger.value, exc)
            return
        except Exception:
            logger.exception("Workflow execution for %s / booking %s crashed", trigger.value, booking_id)
            return
        if result.success:
            if result.executed:
                logger.info("Executed %d workflow actions for booking %s (%s)", result.executed, booking_id, trigger.value)
        else:
            logger.error("Workflow execution errors for booking %s (%s): %s", booking_id, trigger.value, result.errors)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight workflow tasks (shutdown, tests)."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
