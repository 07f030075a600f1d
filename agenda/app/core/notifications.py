"""Outbound email delivery.

`EmailSender` is the interface the workflow executor depends on; the
production implementation sends through Resend. Senders report delivery as
a bool and log the reason for a failure themselves.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import resend

from agenda.app.core.constants import EMAIL_FROM_ADDRESS, EMAIL_FROM_NAME, RESEND_API_KEY

logger = logging.getLogger(__name__)

__all__ = ["EmailSender", "ResendEmailSender"]


class EmailSender(Protocol):
    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        to_name: str | None = None,
        text: str | None = None,
        reply_to: str | None = None,
    ) -> bool: ...


class ResendEmailSender:
    def __init__(
        self,
        api_key: str = RESEND_API_KEY,
        from_address: str = EMAIL_FROM_ADDRESS,
        from_name: str = EMAIL_FROM_NAME,
    ) -> None:
        self._api_key = api_key
        self._sender = f"{from_name} <{from_address}>" if from_name else from_address

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        to_name: str | None = None,
        text: str | None = None,
        reply_to: str | None = None,
    ) -> bool:
        if not self._api_key:
            logger.error("Resend API key not configured; email to %s not sent", to)
            return False

        email_data: dict[str, Any] = {
            "from": self._sender,
            "to": [f"{to_name} <{to}>" if to_name else to],
            "subject": subject,
            "html": html,
        }
        if text:
            email_data["text"] = text
        if reply_to:
            email_data["reply_to"] = reply_to

        resend.api_key = self._api_key
        try:
            response = await asyncio.to_thread(resend.Emails.send, email_data)
        except Exception as exc:
            logger.error("Email send error to %s: %s", to, exc)
            return False
        logger.info("Email sent via Resend to %s: %s", to, response)
        return True
