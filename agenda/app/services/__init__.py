"""Service package exports."""

from .availability_services import available_days, available_staff, is_available, query_availability
from .booking_services import BookingManager, BookingRequest, CustomerInfo
from .template_services import render_template
from .workflow_services import WorkflowDispatcher, WorkflowExecutor, WorkflowRepo

__all__ = [
    "available_days",
    "available_staff",
    "is_available",
    "query_availability",
    "BookingManager",
    "BookingRequest",
    "CustomerInfo",
    "render_template",
    "WorkflowDispatcher",
    "WorkflowExecutor",
    "WorkflowRepo",
]
