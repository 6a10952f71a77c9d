"""
Midnight Protocol — Outbound email senders.

``EmailSender`` is the seam the Notification Dispatcher sends through:

* ``ConsoleEmailSender``  logs the message (development, CI)
* ``SendGridEmailSender`` delivers through the SendGrid v3 API

Senders raise ``EmailDeliveryError``; ``transient=True`` marks failures worth
retrying (HTTP 429, 5xx, network errors).
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog
from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Content, Email, Mail, To

logger = structlog.get_logger("midnight.email_service")


class EmailDeliveryError(Exception):
    def __init__(self, message: str, *, transient: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str = ""


class EmailSender(ABC):
    """Email delivery interface."""

    @abstractmethod
    async def send(self, message: EmailMessage) -> str | None:
        """Deliver ``message``; return the provider message id if any."""


class ConsoleEmailSender(EmailSender):
    """Logs messages instead of sending them."""

    async def send(self, message: EmailMessage) -> str | None:
        message_id = f"console-{uuid.uuid4().hex[:12]}"
        logger.info(
            "email_console_delivery",
            to=message.to,
            subject=message.subject,
            html_length=len(message.html),
            message_id=message_id,
        )
        return message_id


class SendGridEmailSender(EmailSender):
    """SendGrid email sender for production delivery."""

    def __init__(self, api_key: str, from_email: str, from_name: str) -> None:
        if not api_key:
            raise ValueError("SENDGRID_API_KEY is required for the sendgrid backend")
        self._client = SendGridAPIClient(api_key)
        self.from_email = from_email
        self.from_name = from_name

    def _build(self, message: EmailMessage) -> Mail:
        mail = Mail(
            from_email=Email(self.from_email, self.from_name),
            to_emails=To(message.to),
            subject=message.subject,
            html_content=Content("text/html", message.html),
        )
        if message.text:
            mail.add_content(Content("text/plain", message.text))
        return mail

    async def send(self, message: EmailMessage) -> str | None:
        mail = self._build(message)
        try:
            # The SendGrid client is synchronous.
            response = await asyncio.to_thread(self._client.send, mail)
        except HTTPError as exc:
            status = getattr(exc, "status_code", None)
            transient = status == 429 or (status is not None and status >= 500)
            raise EmailDeliveryError(
                f"SendGrid returned HTTP {status}", transient=transient, status_code=status
            ) from exc
        except (OSError, TimeoutError) as exc:
            raise EmailDeliveryError(f"SendGrid unreachable: {exc}", transient=True) from exc

        if response.status_code not in (200, 201, 202):
            status = response.status_code
            raise EmailDeliveryError(
                f"SendGrid returned HTTP {status}",
                transient=status == 429 or status >= 500,
                status_code=status,
            )

        headers = getattr(response, "headers", None) or {}
        message_id = headers.get("X-Message-Id") if hasattr(headers, "get") else None
        logger.info("email_sendgrid_delivery", to=message.to, status=response.status_code, message_id=message_id)
        return message_id


def get_email_sender(settings) -> EmailSender:
    """Pick the sender for ``settings.EMAIL_BACKEND``."""
    backend = settings.EMAIL_BACKEND.lower()
    if backend == "sendgrid":
        return SendGridEmailSender(
            api_key=settings.SENDGRID_API_KEY,
            from_email=settings.EMAIL_FROM_ADDRESS,
            from_name=settings.EMAIL_FROM_NAME,
        )
    if backend != "console":
        raise ValueError(f"Unknown EMAIL_BACKEND: {settings.EMAIL_BACKEND!r}")
    logger.warning("email_console_backend_active", detail="emails will be logged, not sent")
    return ConsoleEmailSender()
