"""
Job Notifications

Best-effort messages about finished ingestion runs. Callers treat a failed
send as a log line, never as a job failure.
"""

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Protocol

import structlog

from pricefeed.config.settings import MailSettings

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, subject: str, body: str) -> None:
        ...


class LogNotifier:
    """Writes notifications to the application log"""

    async def notify(self, subject: str, body: str) -> None:
        logger.info("Notification", subject=subject, body=body)


class EmailNotifier:
    """SMTP notifier; sends nothing unless MAIL_ENABLED is set"""

    def __init__(self, settings: MailSettings):
        self.settings = settings

    async def notify(self, subject: str, body: str) -> None:
        if not self.settings.enabled:
            return
        await asyncio.to_thread(self._send, subject, body)
        logger.info("Notification e-mail sent", subject=subject, to=self.settings.to_address)

    def _build_message(self, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.settings.from_address
        message["To"] = self.settings.to_address
        message["Subject"] = subject
        message.set_content(body)
        return message

    def _send(self, subject: str, body: str) -> None:
        message = self._build_message(subject, body)
        with smtplib.SMTP(self.settings.smtp_server, self.settings.port, timeout=30) as smtp:
            if self.settings.enable_ssl:
                smtp.starttls()
            if self.settings.username and self.settings.password:
                smtp.login(self.settings.username, self.settings.password.get_secret_value())
            smtp.send_message(message)


def create_notifier(settings: MailSettings) -> Notifier:
    if settings.enabled:
        return EmailNotifier(settings)
    return LogNotifier()
