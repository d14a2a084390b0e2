"""
SMTP delivery for ``email.send`` blocks.

When no SMTP host is configured, messages are logged instead of sent and the
call still reports success.
"""
from __future__ import annotations

import re
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional

import aiosmtplib

from shared.config import BlockflowConfig, config as default_config
from shared.logger import get_logger
from workflow_engine.services import LoggingMailer, MailResult

logger = get_logger(__name__)

DEFAULT_SUBJECTS = {
    "system": "Notification",
    "welcome": "Welcome",
    "password_reset": "Reset your password",
}

_HTML_TAG = re.compile(r"<\s*(html|body|p|div|br|table|a)\b", re.IGNORECASE)


def build_message(
    settings: BlockflowConfig,
    to: str,
    kind: str,
    body: str,
    sender_name: Optional[str] = None,
    subject: Optional[str] = None,
) -> EmailMessage:
    message = EmailMessage()
    message["From"] = formataddr((sender_name, settings.smtp_from)) if sender_name else settings.smtp_from
    message["To"] = to
    message["Subject"] = subject or DEFAULT_SUBJECTS.get(kind, DEFAULT_SUBJECTS["system"])
    message["Message-ID"] = make_msgid(domain=settings.smtp_from.rsplit("@", 1)[-1])
    if _HTML_TAG.search(body):
        message.set_content(re.sub(r"<[^>]+>", "", body))
        message.add_alternative(body, subtype="html")
    else:
        message.set_content(body)
    return message


class SmtpMailer:
    """Mailer that sends through an SMTP server with aiosmtplib."""

    def __init__(self, settings: BlockflowConfig = default_config):
        self.settings = settings
        self._fallback = LoggingMailer()

    async def send_notification_email(
        self,
        to: str,
        kind: str,
        body: str,
        sender_name: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> MailResult:
        settings = self.settings
        if not settings.is_smtp_configured:
            return await self._fallback.send_notification_email(to, kind, body, sender_name, subject)

        message = build_message(settings, to, kind, body, sender_name, subject)
        try:
            await aiosmtplib.send(
                message,
                hostname=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_user,
                password=settings.smtp_password,
                use_tls=settings.smtp_port == 465,
                start_tls=settings.smtp_use_tls and settings.smtp_port != 465,
            )
        except aiosmtplib.SMTPException as exc:
            logger.error(f"SMTP delivery failed: {exc}", extra={"to": to, "kind": kind})
            return MailResult(success=False, error=str(exc))

        logger.info("Email sent", extra={"to": to, "kind": kind})
        return MailResult(success=True, messageId=message["Message-ID"])
