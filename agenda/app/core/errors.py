"""Domain error taxonomy.

Booking admission errors propagate synchronously to the caller. Workflow
errors are caught per action / per trigger and end up in logs and the
notification ledger.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AgendaError",
    "SlotUnavailable",
    "BookingNotFound",
    "ServiceNotFound",
    "ProviderNotFound",
    "InvalidStatusTransition",
    "ActionDispatchFailure",
    "SchedulerSweepError",
    "WorkflowConfigError",
]


class AgendaError(Exception):
    """Base class for domain errors; `code` is a stable machine-readable tag."""

    code: str = "agenda_error"


class SlotUnavailable(AgendaError):
    """The requested window cannot be admitted; the caller should re-query availability."""

    code = "slot_unavailable"

    REASONS = frozenset({"capacity", "no_staff", "blocked", "closed", "outside_business_hours", "contention"})

    def __init__(self, reason: str = "capacity", detail: str | None = None) -> None:
        if reason not in self.REASONS:
            raise ValueError(f"unknown slot rejection reason: {reason!r}")
        self.reason = reason
        self.detail = detail
        super().__init__(detail or f"slot unavailable ({reason})")


class BookingNotFound(AgendaError):
    code = "booking_not_found"

    def __init__(self, booking_id: int) -> None:
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} not found")


class ServiceNotFound(AgendaError):
    code = "service_not_found"

    def __init__(self, service_id: int, provider_id: int | None = None) -> None:
        self.service_id = service_id
        self.provider_id = provider_id
        super().__init__(f"Service {service_id} not found")


class ProviderNotFound(AgendaError):
    code = "provider_not_found"

    def __init__(self, provider_id: int) -> None:
        self.provider_id = provider_id
        super().__init__(f"Provider {provider_id} not found")


class InvalidStatusTransition(AgendaError):
    code = "invalid_transition"

    def __init__(self, current: Any, target: Any, detail: str | None = None) -> None:
        self.current = current
        self.target = target
        cur = getattr(current, "value", current)
        tgt = getattr(target, "value", target)
        super().__init__(detail or f"Cannot move booking from {cur} to {tgt}")


class ActionDispatchFailure(AgendaError):
    """One workflow action failed; recorded in the ledger, never re-raised to the booking flow."""

    code = "action_failed"

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)


class SchedulerSweepError(AgendaError):
    """A single trigger kind failed during a sweep."""

    code = "sweep_failed"

    def __init__(self, trigger: Any, cause: BaseException) -> None:
        self.trigger = trigger
        self.cause = cause
        name = getattr(trigger, "value", trigger)
        super().__init__(f"Error processing {name}: {cause}")


class WorkflowConfigError(AgendaError):
    code = "invalid_workflow"
