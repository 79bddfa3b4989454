"""SMTP Notification Adapter.

Delivers the rendered lab report as a plain-text email. The adapter is a thin
wrapper around ``smtplib``; the message itself is built by the caller.

Security Impact:
    - SMTP passwords are read from SecretStr only at login time
    - The report body is sent as-is; nothing is logged beyond recipients
"""

import logging
import smtplib
from datetime import date
from email.message import EmailMessage
from typing import Callable, Optional

from labsieve.domain.models import NotificationMessage
from labsieve.domain.ports import NotificationPort, Result
from labsieve.infrastructure.config_manager import NotificationConfig

logger = logging.getLogger(__name__)


def build_subject(prefix: str, on: Optional[date] = None) -> str:
    """Subject line such as ``Lab Reports on Sun Oct 18 2026``."""
    return f"{prefix} {(on or date.today()).strftime('%a %b %d %Y')}"


class SMTPNotifier(NotificationPort):
    """Sends notification messages through an SMTP server.

    Parameters:
        config: SMTP connection settings
        smtp_factory: Callable returning an ``smtplib.SMTP``-like object
    """

    def __init__(self, config: NotificationConfig, smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP):
        self.config = config
        self.smtp_factory = smtp_factory

    def compose(self, body: str, on: Optional[date] = None) -> NotificationMessage:
        """Build the report message from configuration."""
        return NotificationMessage(
            sender=self.config.sender,
            recipients=self.config.recipients,
            subject=build_subject(self.config.subject_prefix, on),
            body=body,
        )

    def send(self, message: NotificationMessage) -> Result[str]:
        """Send ``message``.

        Returns:
            Result[str]: Success with the delivered To header, or failure with the cause
        """
        email = EmailMessage()
        email["From"] = message.sender
        email["To"] = ", ".join(message.recipients)
        email["Subject"] = message.subject
        email.set_content(message.body)

        try:
            with self.smtp_factory(self.config.smtp_host, self.config.smtp_port) as smtp:
                if self.config.use_tls:
                    smtp.starttls()
                if self.config.smtp_username and self.config.smtp_password:
                    smtp.login(self.config.smtp_username, self.config.smtp_password.get_secret_value())
                smtp.send_message(email)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send report email: {type(e).__name__}: {e}")
            return Result.failure_result(e, error_details={"recipients": message.recipients})

        logger.info(f"Report email sent to {', '.join(message.recipients)}")
        return Result.success_result(email["To"])
