"""SMTP transport over implicit TLS; blocking smtplib calls run in a worker thread."""
from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from .errors import MailError

logger = logging.getLogger(__name__)


class Mailer:
    def __init__(self, host: str, port: int, user: str, password: str, from_address: str, from_name: str = "Wantarr"):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_address = from_address or user
        self.from_name = from_name

    def build_message(self, to_address: str, subject: str, text: str, html: Optional[str] = None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = to_address
        msg.attach(MIMEText(text, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))
        return msg

    def _send(self, msg: MIMEMultipart) -> None:
        ssl_context = ssl.create_default_context()
        with smtplib.SMTP_SSL(self.host, self.port, context=ssl_context) as server:
            if self.user:
                server.login(self.user, self.password)
            server.send_message(msg)

    async def send(self, to_address: str, subject: str, text: str, html: Optional[str] = None) -> None:
        msg = self.build_message(to_address, subject, text, html)
        logger.debug(f"Sending email {subject!r} to {to_address}")
        try:
            await asyncio.to_thread(self._send, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error while sending to {to_address} (subject={subject}): {e}")
            raise MailError(f"Could not send email to {to_address}: {e}") from e
