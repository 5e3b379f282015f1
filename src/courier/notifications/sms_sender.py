"""
SMS Sender

Sends notifications via the Twilio Messages API using httpx.
"""
import logging
from typing import Optional

import httpx

from .base_sender import HttpSender, SendResult, http_failure
from ..models.notification import Notification, NotificationChannel

logger = logging.getLogger("courier.notifications.sms")

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

# SMS body limit for concatenated messages
MAX_SMS_LENGTH = 1600


class SmsSender(HttpSender):
    """Send text messages via Twilio"""

    channel = NotificationChannel.SMS

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Optional[httpx.AsyncClient] = None,
        api_base: str = TWILIO_API_BASE,
    ):
        super().__init__(client=client)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base

    async def send(self, notification: Notification) -> SendResult:
        """Send SMS to recipient.phone"""
        phone = notification.recipient.phone
        if not phone:
            return SendResult.permanent("No recipient phone", code="missing_recipient")

        if not self.account_sid or not self.auth_token or not self.from_number:
            return SendResult.permanent("Twilio not configured", code="not_configured")

        try:
            client = self._get_client()
            response = await client.post(
                f"{self.api_base}/Accounts/{self.account_sid}/Messages.json",
                auth=(self.account_sid, self.auth_token),
                data={
                    "From": self.from_number,
                    "To": phone,
                    "Body": notification.content.text[:MAX_SMS_LENGTH],
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"SMS send error: {e}")
            return SendResult.transient(str(e), code="transport_error")

        if response.status_code in (200, 201):
            sid = response.json().get("sid")
            logger.info(f"SMS sent to {phone} (notification {notification.id}, sid={sid})")
            return SendResult.ok(provider_message_id=sid)

        result = http_failure(response)
        logger.error(f"SMS request failed: {result.error}")
        return result
