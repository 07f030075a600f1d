"""Background sweep for time-offset workflow triggers.

Each sweep looks, per trigger kind, for bookings whose start lies within a
tolerance window around ``now + offset`` (e.g. 24h before start) and runs the
executor for those that have no SENT/DELIVERED notification of the
trigger's type yet. The notification ledger is the only duplicate guard;
overlapping sweeps may race, which gives at-least-once delivery with
best-effort suppression of duplicates.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.app.core.constants import (
    WORKFLOW_CATCHUP_MINUTES,
    WORKFLOW_SWEEP_INTERVAL_SECONDS,
    WORKFLOW_TOLERANCE_MINUTES,
)
from agenda.app.core.errors import BookingNotFound, SchedulerSweepError
from agenda.app.domain.models import (
    Booking,
    RELEASED_STATUSES,
    Workflow,
    WorkflowTrigger,
    notification_type_for,
)
from agenda.app.services.shared_services import ensure_utc, utc_now
from agenda.app.services.workflow_services import WorkflowExecutor, WorkflowRepo

logger = logging.getLogger(__name__)

__all__ = [
    "TIME_OFFSET_TRIGGERS",
    "SweepResult",
    "WorkflowScheduler",
    "start_workflow_scheduler",
]

# Positive: booking starts `offset` after now. Negative: booking started `offset` ago.
TIME_OFFSET_TRIGGERS: dict[WorkflowTrigger, timedelta] = {
    WorkflowTrigger.HOURS_BEFORE_48: timedelta(hours=48),
    WorkflowTrigger.HOURS_BEFORE_24: timedelta(hours=24),
    WorkflowTrigger.HOURS_BEFORE_1: timedelta(hours=1),
    WorkflowTrigger.MINUTES_BEFORE_30: timedelta(minutes=30),
    WorkflowTrigger.HOURS_AFTER_24: timedelta(hours=-24),
}


@dataclass
class SweepResult:
    processed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class WorkflowScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: WorkflowExecutor,
        *,
        tolerance: timedelta = timedelta(minutes=WORKFLOW_TOLERANCE_MINUTES),
        catchup: timedelta = timedelta(minutes=WORKFLOW_CATCHUP_MINUTES),
        triggers: dict[WorkflowTrigger, timedelta] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor
        self._tolerance = tolerance
        self._catchup = catchup
        self._triggers = dict(triggers if triggers is not None else TIME_OFFSET_TRIGGERS)

    def candidate_window(self, offset: timedelta, now: datetime) -> tuple[datetime, datetime]:
        """Start-time window for one trigger kind.

        The catch-up lookback widens the early edge only (targets a delayed sweep
        may have missed). "Before" triggers never reach bookings already started.
        """
        target = now + offset
        window_start = target - self._tolerance - self._catchup
        window_end = target + self._tolerance
        if offset > timedelta(0):
            window_start = max(window_start, now)
        return window_start, window_end

    async def find_candidates(
        self, session: AsyncSession, trigger: WorkflowTrigger, window_start: datetime, window_end: datetime
    ) -> list[int]:
        has_workflow = exists().where(
            and_(
                Workflow.provider_id == Booking.provider_id,
                Workflow.trigger == trigger,
                Workflow.is_active.is_(True),
            )
        )
        rows = await session.execute(
            select(Booking.id)
            .where(
                Booking.status.notin_(list(RELEASED_STATUSES)),
                Booking.start_time >= window_start,
                Booking.start_time <= window_end,
                has_workflow,
            )
            .order_by(Booking.start_time, Booking.id)
        )
        return list(rows.scalars().all())

    async def process_scheduled_workflows(self, now: datetime | None = None) -> SweepResult:
        now = ensure_utc(now) if now is not None else utc_now()
        result = SweepResult()
        for trigger, offset in self._triggers.items():
            try:
                await self._process_trigger(trigger, offset, now, result)
            except Exception as exc:
                err = SchedulerSweepError(trigger, exc)
                logger.exception("Workflow sweep failed for %s", trigger.value)
                result.errors.append(str(err))
        if result.processed or result.errors:
            logger.info(
                "Workflow sweep done: processed=%d skipped=%d errors=%d",
                result.processed, result.skipped, len(result.errors),
            )
        return result

    async def _process_trigger(
        self, trigger: WorkflowTrigger, offset: timedelta, now: datetime, result: SweepResult
    ) -> None:
        window_start, window_end = self.candidate_window(offset, now)
        notification_type = notification_type_for(trigger)
        async with self._session_factory() as session:
            candidates = await self.find_candidates(session, trigger, window_start, window_end)

        for booking_id in candidates:
            async with self._session_factory() as session:
                if await WorkflowRepo.already_dispatched(session, booking_id, notification_type):
                    result.skipped += 1
                    continue
            try:
                outcome = await self._executor.execute_for_trigger(trigger, booking_id)
            except BookingNotFound as exc:
                logger.warning("Scheduled %s skipped: %s", trigger.value, exc)
                result.errors.append(f"Failed to execute workflows for booking {booking_id}: {exc}")
                continue
            except Exception as exc:
                logger.exception("Scheduled %s failed for booking %s", trigger.value, booking_id)
                result.errors.append(f"Failed to execute workflows for booking {booking_id}: {exc}")
                continue
            result.processed += 1
            if not outcome.success:
                logger.warning("Scheduled %s for booking %s had failures: %s", trigger.value, booking_id, outcome.errors)


async def _run_loop(stop_event: asyncio.Event, scheduler: WorkflowScheduler, interval_seconds: int) -> None:
    while not stop_event.is_set():
        try:
            await scheduler.process_scheduled_workflows()
        except Exception as e:
            logger.exception("Workflow scheduler iteration error: %s", e)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


async def start_workflow_scheduler(
    scheduler: WorkflowScheduler, interval_seconds: int = WORKFLOW_SWEEP_INTERVAL_SECONDS
) -> Callable[[], Awaitable[None]]:
    """Start the sweep loop and return an async stop() function."""
    stop_event: asyncio.Event = asyncio.Event()
    task = asyncio.create_task(_run_loop(stop_event, scheduler, interval_seconds), name="workflow-scheduler")

    async def _stop() -> None:
        stop_event.set()
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            task.cancel()

    logger.info("Workflow scheduler started (interval=%ss)", interval_seconds)
    return _stop
