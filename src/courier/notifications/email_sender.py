"""
Email Sender

Sends notifications via SMTP using aiosmtplib.
"""
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

import aiosmtplib

from .base_sender import BaseSender, SendResult
from ..models.notification import Notification, NotificationChannel

logger = logging.getLogger("courier.notifications.email")


class EmailSender(BaseSender):
    """Send messages via SMTP"""

    channel = NotificationChannel.EMAIL

    def __init__(
        self,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_name: str = "Courier",
        timeout: float = 30.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_name = from_name
        self.timeout = timeout

    def build_message(self, notification: Notification) -> MIMEMultipart:
        """Build a plain-text message with an optional HTML alternative"""
        msg = MIMEMultipart("alternative")
        msg["From"] = f"{self.from_name} <{self.smtp_user}>"
        msg["To"] = notification.recipient.email
        msg["Subject"] = notification.subject or f"{notification.type} notification"

        msg.attach(MIMEText(notification.content.text, "plain", "utf-8"))
        if notification.content.html:
            msg.attach(MIMEText(notification.content.html, "html", "utf-8"))
        return msg

    async def send(self, notification: Notification) -> SendResult:
        """Send email notification to recipient.email"""
        email_to = notification.recipient.email
        if not email_to:
            return SendResult.permanent("No recipient email", code="missing_recipient")

        if not self.smtp_host or not self.smtp_user:
            return SendResult.permanent("SMTP not configured", code="not_configured")

        try:
            await aiosmtplib.send(
                self.build_message(notification),
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.smtp_user,
                password=self.smtp_password,
                use_tls=False,
                start_tls=True,
                timeout=self.timeout,
            )

            logger.info(f"Email sent to {email_to} (notification {notification.id})")
            return SendResult.ok()

        except (aiosmtplib.SMTPRecipientsRefused, aiosmtplib.SMTPSenderRefused) as e:
            logger.error(f"Email rejected for {email_to}: {e}")
            return SendResult.permanent(str(e), code="rejected")
        except aiosmtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
            return SendResult.permanent(str(e), code="auth_failed")
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error(f"Email send error: {e}")
            return SendResult.transient(str(e), code="smtp_error")

    async def close(self):
        pass
