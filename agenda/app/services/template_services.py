"""Email template rendering.

`{{ variable }}` placeholders are replaced from a variable map; placeholders
with no value are removed rather than left in the output.
"""

from __future__ import annotations

import html
import re
from datetime import datetime
from typing import Any, Mapping

from agenda.app.core.constants import DATE_FORMAT, TIME_FORMAT
from agenda.app.domain.models import Booking
from agenda.app.domain.workflow_types import TemplateType
from agenda.app.services.shared_services import format_money, resolve_tz

__all__ = [
    "render_template",
    "strip_html",
    "generate_template_variables",
    "DEFAULT_TEMPLATES",
    "default_template",
]

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_TAG = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"[ \t]+")


def render_template(template: str | None, variables: Mapping[str, Any]) -> str:
    if not template:
        return ""

    def _sub(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)


def strip_html(content: str) -> str:
    """Plain-text alternative for an HTML body."""
    text = re.sub(r"<\s*br\s*/?>|</p>|</div>|</h\d>|</li>", "\n", content, flags=re.IGNORECASE)
    text = html.unescape(_TAG.sub("", text))
    lines = [_WHITESPACE.sub(" ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def _fmt(dt: datetime, fmt: str, tz_name: str) -> str:
    return dt.astimezone(resolve_tz(tz_name)).strftime(fmt)


def generate_template_variables(booking: Booking, base_url: str) -> dict[str, Any]:
    """Variable map for one booking. Relations must already be loaded."""
    provider = booking.provider
    service = booking.service
    staff = booking.staff
    tz_name = provider.timezone
    duration = int((booking.end_time - booking.start_time).total_seconds() // 60)
    base = base_url.rstrip("/")
    currency = service.currency
    return {
        "customerName": booking.customer_name,
        "customerEmail": booking.customer_email,
        "customerPhone": booking.customer_phone or "",
        "providerName": provider.name,
        "businessName": provider.business_name or provider.name,
        "providerEmail": provider.email or "",
        "providerPhone": provider.phone or "",
        "staffName": staff.name if staff is not None else "",
        "serviceName": service.name,
        "serviceDescription": service.description or "",
        "serviceDuration": duration,
        "bookingId": booking.id,
        "bookingDate": _fmt(booking.start_time, DATE_FORMAT, tz_name),
        "bookingTime": _fmt(booking.start_time, TIME_FORMAT, tz_name),
        "bookingEndTime": _fmt(booking.end_time, TIME_FORMAT, tz_name),
        "bookingStatus": booking.status.value,
        "totalAmount": format_money(booking.total_amount, currency),
        "depositAmount": format_money(booking.deposit_amount, currency) if booking.deposit_amount is not None else "",
        "refundAmount": format_money(booking.refund_amount, currency) if booking.refund_amount is not None else "",
        "currency": currency,
        "notes": booking.notes or "",
        "cancellationUrl": f"{base}/bookings/{booking.id}/cancel",
        "rescheduleUrl": f"{base}/bookings/{booking.id}/reschedule",
        "bookingUrl": f"{base}/bookings/{booking.id}",
    }


DEFAULT_TEMPLATES: dict[TemplateType, tuple[str, str]] = {
    TemplateType.CONFIRMATION: (
        "Booking confirmed: {{serviceName}} on {{bookingDate}}",
        "<p>Hi {{customerName}},</p>"
        "<p>Your booking for <strong>{{serviceName}}</strong> with {{businessName}} is confirmed.</p>"
        "<p>{{bookingDate}} at {{bookingTime}} ({{serviceDuration}} min)</p>"
        "<p>Total: {{totalAmount}}</p>"
        "<p>Need to cancel? <a href=\"{{cancellationUrl}}\">{{cancellationUrl}}</a></p>",
    ),
    TemplateType.REMINDER: (
        "Reminder: {{serviceName}} on {{bookingDate}} at {{bookingTime}}",
        "<p>Hi {{customerName}},</p>"
        "<p>This is a reminder of your upcoming <strong>{{serviceName}}</strong> with {{businessName}}.</p>"
        "<p>{{bookingDate}} at {{bookingTime}}</p>"
        "<p>Reschedule: <a href=\"{{rescheduleUrl}}\">{{rescheduleUrl}}</a></p>",
    ),
    TemplateType.CANCELLATION: (
        "Booking cancelled: {{serviceName}} on {{bookingDate}}",
        "<p>Hi {{customerName}},</p>"
        "<p>Your booking for <strong>{{serviceName}}</strong> on {{bookingDate}} at {{bookingTime}} "
        "has been cancelled.</p>"
        "<p>Refund: {{refundAmount}}</p>",
    ),
}


def default_template(template_type: TemplateType | None) -> tuple[str, str] | None:
    if template_type is None:
        return None
    return DEFAULT_TEMPLATES.get(template_type)
