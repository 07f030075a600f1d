"""
Runtime wiring.

Builds the explicitly constructed collaborators (session factory, email
sender, HTTP client, executor, dispatcher, booking manager, scheduler) that
the API and the worker share. Tests build their own container with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.app.core.db import get_session_factory
from agenda.app.core.notifications import EmailSender, ResendEmailSender
from agenda.app.services.booking_services import BookingManager
from agenda.app.services.workflow_services import WorkflowDispatcher, WorkflowExecutor
from agenda.app.workers.workflow_scheduler import WorkflowScheduler
import agenda.config as cfg

__all__ = ["AppContainer", "build_container"]


@dataclass
class AppContainer:
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    email_sender: EmailSender
    executor: WorkflowExecutor
    dispatcher: WorkflowDispatcher
    booking_manager: BookingManager
    scheduler: WorkflowScheduler

    async def aclose(self) -> None:
        await self.dispatcher.drain(timeout=10)
        await self.http_client.aclose()


def build_container(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    email_sender: EmailSender | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AppContainer:
    factory = session_factory or get_session_factory()
    sender = email_sender or ResendEmailSender(
        api_key=str(cfg.get_setting("resend_api_key", "")),
        from_address=str(cfg.get_setting("email_from_address", "")),
        from_name=str(cfg.get_setting("email_from_name", "")),
    )
    client = http_client or httpx.AsyncClient(timeout=float(cfg.get_setting("webhook_timeout_seconds", 10)))
    executor = WorkflowExecutor(
        factory,
        email_sender=sender,
        http_client=client,
        base_url=cfg.get_public_base_url(),
        webhook_timeout=float(cfg.get_setting("webhook_timeout_seconds", 10)),
    )
    dispatcher = WorkflowDispatcher(executor)
    manager = BookingManager(
        factory,
        dispatcher=dispatcher,
        max_attempts=int(cfg.get_setting("booking_max_attempts", 3)),
        enforce_business_hours=bool(cfg.get_setting("enforce_business_hours", False)),
    )
    scheduler = WorkflowScheduler(
        factory,
        executor,
        tolerance=timedelta(minutes=int(cfg.get_setting("workflow_tolerance_minutes", 15))),
        catchup=timedelta(minutes=int(cfg.get_setting("workflow_catchup_minutes", 0))),
    )
    return AppContainer(
        session_factory=factory,
        http_client=client,
        email_sender=sender,
        executor=executor,
        dispatcher=dispatcher,
        booking_manager=manager,
        scheduler=scheduler,
    )
