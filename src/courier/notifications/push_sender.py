"""
Push Sender

Sends push notifications via Firebase Cloud Messaging (legacy HTTP API).
"""
import logging
from typing import Optional

import httpx

from .base_sender import HttpSender, SendResult, http_failure
from ..models.notification import Notification, NotificationChannel

logger = logging.getLogger("courier.notifications.push")

FCM_SEND_URL = "https://fcm.googleapis.com/fcm/send"

# Per-token FCM errors that mean the device will never accept the message
PERMANENT_FCM_ERRORS = frozenset({
    "NotRegistered",
    "InvalidRegistration",
    "MismatchSenderId",
    "MessageTooBig",
    "InvalidPackageName",
})


class PushSender(HttpSender):
    """Send push notifications to a device token"""

    channel = NotificationChannel.PUSH

    def __init__(
        self,
        server_key: str,
        client: Optional[httpx.AsyncClient] = None,
        send_url: str = FCM_SEND_URL,
    ):
        super().__init__(client=client)
        self.server_key = server_key
        self.send_url = send_url

    async def send(self, notification: Notification) -> SendResult:
        """Send push to recipient.device_token"""
        token = notification.recipient.device_token
        if not token:
            return SendResult.permanent("No recipient device token", code="missing_recipient")

        if not self.server_key:
            return SendResult.permanent("FCM_SERVER_KEY not configured", code="not_configured")

        payload = {
            "to": token,
            "notification": {
                "title": notification.subject or notification.type,
                "body": notification.content.text,
            },
            "data": {
                "notification_id": notification.id,
                "type": notification.type,
            },
        }

        try:
            client = self._get_client()
            response = await client.post(
                self.send_url,
                headers={"Authorization": f"key={self.server_key}"},
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.error(f"Push send error: {e}")
            return SendResult.transient(str(e), code="transport_error")

        if response.status_code != 200:
            result = http_failure(response)
            logger.error(f"Push request failed: {result.error}")
            return result

        data = response.json()
        results = data.get("results") or [{}]
        first = results[0]
        if data.get("success") and "error" not in first:
            logger.info(f"Push sent (notification {notification.id})")
            return SendResult.ok(provider_message_id=first.get("message_id"))

        err = first.get("error", "UnknownError")
        logger.error(f"FCM error for notification {notification.id}: {err}")
        if err in PERMANENT_FCM_ERRORS:
            return SendResult.permanent(err, code=err)
        return SendResult.transient(err, code=err)
