import json
from datetime import UTC, datetime

import httpx
import pytest
import pytest_asyncio
import respx
from sqlalchemy import select

from agenda.app.core.errors import BookingNotFound, WorkflowConfigError
from agenda.app.domain.models import (
    Notification,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    WorkflowTrigger,
)
from agenda.app.services.workflow_services import WorkflowDispatcher, WorkflowExecutor, WorkflowRepo

MONDAY_10 = datetime(2030, 1, 7, 10, 0, tzinfo=UTC)
HOOK = "https://hooks.example.com/bookings"


@pytest_asyncio.fixture
async def http_client():
    client = httpx.AsyncClient()
    yield client
    await client.aclose()


@pytest.fixture
def executor(session_factory, email_sender, http_client):
    return WorkflowExecutor(
        session_factory,
        email_sender=email_sender,
        http_client=http_client,
        base_url="https://book.example.com",
        webhook_timeout=2,
    )


async def _ledger(session_factory, booking_id: int) -> list[Notification]:
    async with session_factory() as session:
        rows = await session.execute(
            select(Notification).where(Notification.booking_id == booking_id).order_by(Notification.id)
        )
        return list(rows.scalars().all())


def _email(content="<p>Hi {{customerName}}</p>", **extra):
    return {"type": "EMAIL", "recipientType": "CUSTOMER", "subject": "About {{serviceName}}", "content": content, **extra}


@pytest.mark.asyncio
async def test_missing_booking_raises(executor):
    with pytest.raises(BookingNotFound):
        await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CREATED, 4242)


@pytest.mark.asyncio
async def test_no_workflows_is_a_no_op(seed, executor, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    booking_id = await seed.booking(provider_id, service_id, MONDAY_10)

    result = await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CREATED, booking_id)
    assert (result.executed, result.failed, result.success) == (0, 0, True)
    assert await _ledger(session_factory, booking_id) == []


@pytest.mark.asyncio
async def test_min_price_condition(seed, executor, email_sender, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    await seed.workflow(provider_id, WorkflowTrigger.BOOKING_CONFIRMED, [_email()], conditions={"minPrice": 500})
    cheap = await seed.booking(provider_id, service_id, MONDAY_10, total="300.00")
    pricey = await seed.booking(provider_id, service_id, MONDAY_10.replace(hour=12), total="600.00")

    skipped = await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CONFIRMED, cheap)
    assert (skipped.executed, skipped.failed) == (0, 0)
    assert await _ledger(session_factory, cheap) == []

    fired = await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CONFIRMED, pricey)
    assert (fired.executed, fired.failed) == (1, 0)
    assert len(email_sender.sent) == 1
    sent = email_sender.sent[0]
    assert sent["to"] == "kari@example.com"
    assert sent["subject"] == "About Haircut"
    assert sent["html"] == "<p>Hi Kari</p>"
    assert sent["text"] == "Hi Kari"

    [row] = await _ledger(session_factory, pricey)
    assert row.type is NotificationType.BOOKING_CONFIRMATION
    assert row.channel is NotificationChannel.EMAIL
    assert row.status is NotificationStatus.SENT
    assert row.sent_at is not None
    assert row.recipient == "kari@example.com"


@pytest.mark.asyncio
async def test_service_and_status_conditions(seed, executor, email_sender):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    other_service = await seed.service(provider_id, name="Colour")
    await seed.workflow(
        provider_id,
        WorkflowTrigger.BOOKING_CREATED,
        [_email()],
        conditions={"serviceIds": [service_id], "statuses": ["pending"]},
    )
    matching = await seed.booking(provider_id, service_id, MONDAY_10)
    other = await seed.booking(provider_id, other_service, MONDAY_10)

    assert (await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CREATED, other)).executed == 0
    assert (await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CREATED, matching)).executed == 1


@pytest.mark.asyncio
async def test_failed_actions_are_isolated_and_recorded(seed, executor, email_sender, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    await seed.workflow(
        provider_id,
        WorkflowTrigger.BOOKING_CREATED,
        [
            {"type": "SMS", "message": "See you {{bookingTime}}"},
            {"type": "WEBHOOK", "webhookUrl": HOOK},
            _email(),
            {"type": "EMAIL", "recipientType": "STAFF", "content": "<p>New booking</p>"},
        ],
        name="first",
    )
    await seed.workflow(
        provider_id,
        WorkflowTrigger.BOOKING_CREATED,
        [{"type": "EMAIL", "recipientType": "PROVIDER", "content": "<p>{{customerName}} booked</p>"}],
        name="second",
    )
    booking_id = await seed.booking(provider_id, service_id, MONDAY_10)

    with respx.mock:
        route = respx.post(HOOK).respond(500)
        result = await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CREATED, booking_id)
        assert route.called

    assert (result.executed, result.failed) == (2, 3)
    assert not result.success
    assert [e["to"] for e in email_sender.sent] == ["kari@example.com", "owner@studio.test"]

    rows = await _ledger(session_factory, booking_id)
    assert [(r.channel, r.status) for r in rows] == [
        (NotificationChannel.SMS, NotificationStatus.FAILED),
        (NotificationChannel.WEBHOOK, NotificationStatus.FAILED),
        (NotificationChannel.EMAIL, NotificationStatus.SENT),
        (NotificationChannel.EMAIL, NotificationStatus.FAILED),
        (NotificationChannel.EMAIL, NotificationStatus.SENT),
    ]
    assert rows[0].failure_reason == "SMS functionality not yet implemented"
    assert rows[0].content == "See you 10:00"
    assert rows[1].failure_reason == "Webhook returned 500: Internal Server Error"
    assert rows[1].recipient == HOOK
    assert rows[3].failure_reason == "No staff email available for this booking"
    assert "Workflow first: SMS functionality not yet implemented" in result.errors


@pytest.mark.asyncio
async def test_webhook_payload_and_transport_errors(seed, executor, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    await seed.workflow(provider_id, WorkflowTrigger.BOOKING_CANCELLED, [{"type": "WEBHOOK", "webhookUrl": HOOK}])
    booking_id = await seed.booking(provider_id, service_id, MONDAY_10)

    with respx.mock:
        route = respx.post(HOOK).respond(204)
        result = await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CANCELLED, booking_id)
        payload = json.loads(route.calls.last.request.content)
    assert result.executed == 1
    assert payload["event"] == "BOOKING_CANCELLED"
    assert payload["booking"]["id"] == booking_id
    assert payload["booking"]["serviceName"] == "Haircut"
    assert payload["provider"]["businessName"] == "Studio Nord"
    assert "timestamp" in payload

    with respx.mock:
        respx.post(HOOK).mock(side_effect=httpx.ConnectError("refused"))
        failed = await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CANCELLED, booking_id)
    assert failed.failed == 1
    rows = await _ledger(session_factory, booking_id)
    assert rows[-1].failure_reason == "Webhook request failed: ConnectError"


@pytest.mark.asyncio
async def test_templates_and_sender_failures(seed, executor, email_sender, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    template_id = await seed.template(provider_id, "Hello {{customerName}}", "<h1>{{serviceName}}</h1><p>{{bookingDate}}</p>")
    await seed.workflow(
        provider_id,
        WorkflowTrigger.HOURS_BEFORE_24,
        [
            {"type": "EMAIL", "templateId": template_id},
            {"type": "EMAIL", "templateType": "reminder"},
            {"type": "EMAIL", "templateId": 999},
            {"type": "EMAIL", "recipientType": "CUSTOM", "customEmail": "bounce@example.com", "content": "<p>x</p>"},
        ],
    )
    email_sender.fail_for = {"bounce@example.com"}
    booking_id = await seed.booking(provider_id, service_id, MONDAY_10)

    result = await executor.execute_for_trigger(WorkflowTrigger.HOURS_BEFORE_24, booking_id)

    assert (result.executed, result.failed) == (2, 2)
    assert email_sender.sent[0]["subject"] == "Hello Kari"
    assert email_sender.sent[0]["html"] == "<h1>Haircut</h1><p>Monday, 07 January 2030</p>"
    assert email_sender.sent[1]["subject"].startswith("Reminder: Haircut")
    rows = await _ledger(session_factory, booking_id)
    assert {r.type for r in rows} == {NotificationType.REMINDER_24H}
    assert rows[2].failure_reason == "Email template 999 not found"
    assert rows[3].failure_reason == "Failed to send email"
    assert rows[3].recipient == "bounce@example.com"


@pytest.mark.asyncio
async def test_invalid_stored_configuration_counts_as_failure(seed, executor):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    await seed.workflow(provider_id, WorkflowTrigger.BOOKING_CREATED, [{"type": "FAX"}], name="broken")
    await seed.workflow(provider_id, WorkflowTrigger.BOOKING_CREATED, [_email()], name="fine")
    await seed.workflow(provider_id, WorkflowTrigger.BOOKING_CREATED, [_email()], name="off", is_active=False)
    booking_id = await seed.booking(provider_id, service_id, MONDAY_10)

    result = await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CREATED, booking_id)
    assert (result.executed, result.failed) == (1, 1)
    assert result.errors[0].startswith("Workflow broken: invalid configuration")


@pytest.mark.asyncio
async def test_dispatcher_runs_detached_and_swallows_errors(seed, executor, email_sender, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    await seed.workflow(provider_id, WorkflowTrigger.BOOKING_CREATED, [_email()])
    booking_id = await seed.booking(provider_id, service_id, MONDAY_10)
    dispatcher = WorkflowDispatcher(executor)

    dispatcher.trigger(WorkflowTrigger.BOOKING_CREATED, booking_id)
    dispatcher.trigger(WorkflowTrigger.BOOKING_CREATED, 4242)
    assert dispatcher.pending == 2
    await dispatcher.drain(timeout=5)

    assert dispatcher.pending == 0
    assert len(email_sender.sent) == 1
    assert len(await _ledger(session_factory, booking_id)) == 1


@pytest.mark.asyncio
async def test_dispatcher_rejects_time_offset_triggers(executor):
    dispatcher = WorkflowDispatcher(executor)
    with pytest.raises(ValueError):
        dispatcher.trigger(WorkflowTrigger.HOURS_BEFORE_24, 1)
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_create_workflow_validates_configuration(seed, session_factory):
    provider_id = await seed.provider()
    async with session_factory() as session:
        with pytest.raises(WorkflowConfigError):
            await WorkflowRepo.create_workflow(session, provider_id, "empty", WorkflowTrigger.BOOKING_CREATED, [])
        with pytest.raises(WorkflowConfigError):
            await WorkflowRepo.create_workflow(
                session, provider_id, "bad url", WorkflowTrigger.BOOKING_CREATED, [{"type": "WEBHOOK", "webhookUrl": "ftp://x"}]
            )
        with pytest.raises(WorkflowConfigError):
            await WorkflowRepo.create_workflow(
                session, provider_id, "custom", WorkflowTrigger.BOOKING_CREATED,
                [{"type": "EMAIL", "recipientType": "CUSTOM"}],
            )
        workflow = await WorkflowRepo.create_workflow(
            session,
            provider_id,
            "ok",
            WorkflowTrigger.HOURS_BEFORE_1,
            [{"type": "EMAIL", "recipient_type": "PROVIDER", "content": "<p>soon</p>"}],
            {"min_price": "100"},
        )
        await session.commit()

    assert workflow.id is not None
    assert workflow.actions == [{"type": "EMAIL", "recipientType": "PROVIDER", "content": "<p>soon</p>"}]
    assert workflow.conditions == {"minPrice": "100"}


@pytest.mark.asyncio
async def test_workflow_stats(seed, executor, email_sender, session_factory):
    provider_id = await seed.provider()
    service_id = await seed.service(provider_id)
    await seed.workflow(
        provider_id,
        WorkflowTrigger.BOOKING_CREATED,
        [_email(), {"type": "SMS", "message": "hi"}],
    )
    await seed.workflow(provider_id, WorkflowTrigger.BOOKING_CANCELLED, [_email()], is_active=False)
    booking_id = await seed.booking(provider_id, service_id, MONDAY_10)
    await executor.execute_for_trigger(WorkflowTrigger.BOOKING_CREATED, booking_id)

    async with session_factory() as session:
        stats = await WorkflowRepo.get_stats(session, provider_id)
    assert stats["total_workflows"] == 2
    assert stats["active_workflows"] == 1
    assert stats["notifications_sent"] == 1
    assert stats["notifications_failed"] == 1
