"""SMTP email channel."""

from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.message import EmailMessage

import structlog

from ..config import EmailConfig
from ..models import Event
from .base import ChannelOutcome, NotificationChannel, NotificationError, build_message


logger = structlog.get_logger(__name__)


def build_email(event: Event, *, sender: str, recipient: str) -> EmailMessage:
    subject, body = build_message(event)
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = recipient
    msg["Subject"] = subject
    msg.set_content(body)
    msg.add_alternative(f"<p>{html.escape(body).replace(chr(10), '<br>')}</p>", subtype="html")
    return msg


class EmailChannel(NotificationChannel):
    name = "email"

    def __init__(self, config: EmailConfig):
        self.config = config

    async def send(self, event: Event) -> ChannelOutcome:
        recipients = list(self.config.recipients)
        if not recipients:
            logger.warning("No email recipients configured, skipping")
            return ChannelOutcome.SKIPPED

        logger.info("Sending email notification", recipients=len(recipients))
        await asyncio.to_thread(self._send_blocking, event, recipients)
        logger.info("Email notification sent", recipients=len(recipients))
        return ChannelOutcome.SENT

    def _send_blocking(self, event: Event, recipients: list[str]) -> None:
        cfg = self.config
        sender = cfg.sender or cfg.username or "etag-watch@localhost"
        try:
            with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.timeout_seconds) as server:
                if cfg.starttls:
                    server.starttls(context=ssl.create_default_context())
                if cfg.username and cfg.password:
                    server.login(cfg.username, cfg.password)
                for recipient in recipients:
                    server.send_message(build_email(event, sender=sender, recipient=recipient))
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP delivery failed: {e}") from e
