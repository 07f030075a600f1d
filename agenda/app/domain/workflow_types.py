"""Typed workflow configuration.

Workflows store their actions and conditions as JSON. These models are the
closed set of shapes that JSON may take: every action is one of
EmailAction / SmsAction / WebhookAction (tagged by ``type``) and conditions
are a single record of optional filters. Configuration is validated when a
workflow is saved; the executor parses again and never duck-types fields.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from agenda.app.domain.models import BookingStatus

__all__ = [
    "RecipientType",
    "TemplateType",
    "EmailAction",
    "SmsAction",
    "WebhookAction",
    "WorkflowAction",
    "WorkflowConditions",
    "parse_actions",
    "parse_conditions",
    "dump_actions",
    "dump_conditions",
]


class RecipientType(str, Enum):
    CUSTOMER = "CUSTOMER"
    PROVIDER = "PROVIDER"
    STAFF = "STAFF"
    CUSTOM = "CUSTOM"


class TemplateType(str, Enum):
    CONFIRMATION = "confirmation"
    REMINDER = "reminder"
    CANCELLATION = "cancellation"
    CUSTOM = "custom"


class _Config(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class EmailAction(_Config):
    type: Literal["EMAIL"] = "EMAIL"
    recipient_type: RecipientType = RecipientType.CUSTOMER
    custom_email: Optional[str] = None
    template_id: Optional[int] = None
    template_type: Optional[TemplateType] = None
    subject: Optional[str] = None
    content: Optional[str] = None

    @model_validator(mode="after")
    def _check_recipient(self) -> "EmailAction":
        if self.recipient_type is RecipientType.CUSTOM and not (self.custom_email or "").strip():
            raise ValueError("customEmail is required when recipientType is CUSTOM")
        return self


class SmsAction(_Config):
    type: Literal["SMS"] = "SMS"
    recipient_type: RecipientType = RecipientType.CUSTOMER
    message: Optional[str] = None


class WebhookAction(_Config):
    type: Literal["WEBHOOK"] = "WEBHOOK"
    webhook_url: str

    @field_validator("webhook_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError("webhookUrl must be an http(s) URL")
        return cleaned


WorkflowAction = Annotated[Union[EmailAction, SmsAction, WebhookAction], Field(discriminator="type")]


class WorkflowConditions(_Config):
    service_ids: Optional[list[int]] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    statuses: Optional[list[BookingStatus]] = None

    @field_validator("statuses", mode="before")
    @classmethod
    def _upper_statuses(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [v.strip().upper() if isinstance(v, str) else v for v in value]
        return value

    def matches(self, booking: Any) -> bool:
        """All configured filters must pass; unset filters always pass."""
        if self.service_ids is not None and booking.service_id not in self.service_ids:
            return False
        amount = Decimal(str(booking.total_amount or 0))
        if self.min_price is not None and amount < self.min_price:
            return False
        if self.max_price is not None and amount > self.max_price:
            return False
        if self.statuses is not None and booking.status not in self.statuses:
            return False
        return True


_ACTIONS_ADAPTER: TypeAdapter[list[WorkflowAction]] = TypeAdapter(list[WorkflowAction])


def parse_actions(raw: Any) -> list[EmailAction | SmsAction | WebhookAction]:
    """Validate stored/posted action JSON. Raises pydantic.ValidationError."""
    return _ACTIONS_ADAPTER.validate_python(raw or [])


def parse_conditions(raw: Any) -> WorkflowConditions | None:
    if raw is None:
        return None
    if isinstance(raw, WorkflowConditions):
        return raw
    return WorkflowConditions.model_validate(raw)


def dump_actions(actions: list[EmailAction | SmsAction | WebhookAction]) -> list[dict[str, Any]]:
    return _ACTIONS_ADAPTER.dump_python(actions, mode="json", by_alias=True, exclude_none=True)


def dump_conditions(conditions: WorkflowConditions | None) -> dict[str, Any] | None:
    if conditions is None:
        return None
    return conditions.model_dump(mode="json", by_alias=True, exclude_none=True)
