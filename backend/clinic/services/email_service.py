from __future__ import annotations

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Protocol

from fastapi import Request

from clinic import config

logger = logging.getLogger(__name__)


class EmailTransport(Protocol):
    def send(self, to_email: str, subject: str, html: str) -> None: ...


class SmtpTransport:
    def __init__(self, host: str, port: int, user: Optional[str], password: Optional[str],
                 sender: str, use_tls: bool = True):
        self.host = host
        self.port = port
        self.user = user
        # app passwords are often pasted with spaces
        self.password = password.replace(" ", "") if password else None
        self.sender = sender
        self.use_tls = use_tls

    def send(self, to_email: str, subject: str, html: str) -> None:
        msg = MIMEMultipart()
        msg["From"] = self.sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(html, "html"))

        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(msg)


class LogTransport:
    """Development transport: logs the message instead of sending it."""

    def __init__(self):
        self.outbox: List[dict] = []

    def send(self, to_email: str, subject: str, html: str) -> None:
        self.outbox.append({"to": to_email, "subject": subject, "html": html})
        logger.info("[EMAIL:debug] to=%s subject=%s", to_email, subject)


class EmailService:
    def __init__(self, transport: EmailTransport, max_attempts: int = 3, retry_delay: float = 1.0):
        self.transport = transport
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    async def send(self, to_email: str, subject: str, html: str) -> bool:
        """Send with up to ``max_attempts`` tries and a growing pause between them.

        Returns False when every attempt failed; never raises.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                await asyncio.to_thread(self.transport.send, to_email, subject, html)
                logger.info("Email sent to %s (%s)", to_email, subject)
                return True
            except Exception as e:
                logger.warning("Email attempt %d/%d to %s failed: %s", attempt, self.max_attempts, to_email, e)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)
        logger.error("Giving up on email to %s after %d attempts", to_email, self.max_attempts)
        return False


def build_email_service() -> EmailService:
    if config.SMTP_HOST:
        transport = SmtpTransport(
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            user=config.SMTP_USER,
            password=config.SMTP_PASSWORD,
            sender=config.EMAIL_FROM,
            use_tls=config.SMTP_USE_TLS,
        )
    else:
        logger.warning("SMTP_HOST not set; emails will only be logged")
        transport = LogTransport()
    return EmailService(
        transport,
        max_attempts=config.EMAIL_MAX_ATTEMPTS,
        retry_delay=config.EMAIL_RETRY_DELAY_SECONDS,
    )


def get_email_service(request: Request) -> EmailService:
    return request.app.state.email_service
