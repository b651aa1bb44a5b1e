"""
Email Service - fire-and-forget transactional email over SMTP
"""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from config.settings import settings

logger = logging.getLogger(__name__)


class EmailService:
    """
    Sends HTML email. send() never raises: failures are logged and reported
    as False so callers' success paths are unaffected.
    """

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, user: Optional[str] = None,
                 password: Optional[str] = None, sender: Optional[str] = None):
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.user = user or settings.smtp_user
        self.password = password or settings.smtp_password
        self.sender = sender or settings.email_from or self.user

    async def send(self, to: Optional[str], subject: str, html_body: str) -> bool:
        if not to:
            logger.info(f"Skipping email '{subject}': no recipient")
            return False
        if not self.host or not self.sender:
            logger.warning(f"SMTP is not configured; email '{subject}' to {to} not sent")
            return False
        try:
            await asyncio.to_thread(self._send_sync, to, subject, html_body)
            logger.info(f"Email '{subject}' sent to {to}")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email '{subject}' to {to}: {e}")
            return False

    def _send_sync(self, to: str, subject: str, html_body: str) -> None:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = to
        message.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(self.sender, [to], message.as_string())


def pro_welcome_email(plan: str) -> tuple:
    subject = "Welcome to FishCAD Pro"
    body = (
        "<h2>Thanks for upgrading!</h2>"
        f"<p>Your <strong>{plan}</strong> subscription is active. "
        "Model generations are now unlimited.</p>"
    )
    return subject, body


def payment_failed_email() -> tuple:
    subject = "Your FishCAD Pro payment failed"
    body = (
        "<h2>We couldn't process your payment</h2>"
        "<p>Pro features are paused until your payment method is updated.</p>"
    )
    return subject, body
