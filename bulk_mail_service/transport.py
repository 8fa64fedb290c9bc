"""Mail transport adapters.

A transport sends one HTML message to one recipient. It returns normally on
success and raises :class:`~bulk_mail_service.errors.TransportError` (or any
other exception) on failure; the pipeline records the exception text on the
delivery record.
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from typing import Optional, Sequence

import aiosmtplib

from .attachments import Attachment, AttachmentManager
from .errors import TransportError
from .smtp_pool import SMTPPool, SmtpSettings


class MailTransport:
    """Interface implemented by concrete transports."""

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Sequence[Attachment] = (),
    ) -> None:
        raise NotImplementedError

    async def release(self) -> None:
        """Called by the pipeline after each batch of sends."""
        return None

    async def cleanup(self) -> None:
        """Periodic housekeeping while the service runs."""
        return None

    async def close(self) -> None:
        """Release any resources held by the transport."""
        return None


class SmtpTransport(MailTransport):
    """Deliver messages through an SMTP server using ``aiosmtplib``."""

    def __init__(
        self,
        settings: SmtpSettings,
        sender: str,
        *,
        send_timeout: float = 30.0,
        pool: Optional[SMTPPool] = None,
    ):
        self.settings = settings
        self.sender = sender
        self.send_timeout = send_timeout
        self.pool = pool or SMTPPool(settings)

    def build_message(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Sequence[Attachment] = (),
    ) -> EmailMessage:
        """Translate a single send into an :class:`EmailMessage`."""
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(html_body, subtype="html")
        for att in attachments:
            maintype, subtype = AttachmentManager.guess_mime(att.filename)
            msg.add_attachment(att.content, maintype=maintype, subtype=subtype, filename=att.filename)
        return msg

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Sequence[Attachment] = (),
    ) -> None:
        msg = self.build_message(to, subject, html_body, attachments)
        try:
            smtp = await self.pool.get_connection()
            async with asyncio.timeout(self.send_timeout):
                await smtp.send_message(msg, sender=self.sender)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            await self.pool.discard()
            code = getattr(exc, "code", None)
            reason = f"{exc} (SMTP {code})" if code else (str(exc) or exc.__class__.__name__)
            raise TransportError(reason) from exc

    async def release(self) -> None:
        # Connections are keyed by task; the batch task is about to finish.
        await self.pool.discard()

    async def cleanup(self) -> None:
        await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.close_all()


class UnconfiguredTransport(MailTransport):
    """Fail every send; installed when no SMTP server has been configured."""

    def __init__(self, message: str = "Missing SMTP configuration"):
        self.message = message

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Sequence[Attachment] = (),
    ) -> None:
        raise TransportError(self.message)
