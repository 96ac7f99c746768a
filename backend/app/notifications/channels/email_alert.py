"""
email_alert.py — Email delivery over SMTP.

smtplib is blocking, so each send runs in a worker thread and the event loop
keeps serving HTTP requests and the radius job while the SMTP dialogue is in
progress. Messages are plain text.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from backend.app.core.errors import ChannelDeliveryError
from backend.app.notifications.channels.base import EmailSender

logger = logging.getLogger(__name__)


def build_message(from_address: str, to_address: str, subject: str, body: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_address
    msg["To"] = to_address
    msg.set_content(body)
    return msg


class SmtpEmailSender(EmailSender):

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_address: str = "alerts@findin.local",
        use_tls: bool = True,
        timeout_seconds: float = 20.0,
    ):
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from_address = from_address
        self._use_tls = use_tls
        self._timeout = timeout_seconds

    def _send_blocking(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
            if self._use_tls:
                server.starttls()
            if self._username and self._password:
                server.login(self._username, self._password)
            server.send_message(message)

    async def send(self, address: str, subject: str, body: str) -> None:
        message = build_message(self._from_address, address, subject, body)
        try:
            await asyncio.to_thread(self._send_blocking, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelDeliveryError("email", str(exc)) from exc
        logger.debug("[EMAIL] Sent '%s' to %s", subject, address)
