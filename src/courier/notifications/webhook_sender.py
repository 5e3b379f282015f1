"""
Webhook Sender

POSTs the notification as JSON to recipient.webhook_url.
Requests are signed with HMAC-SHA256 when a secret is configured.
"""
import hashlib
import hmac
import json
import logging
from typing import Optional

import httpx

from .base_sender import HttpSender, SendResult, http_failure
from ..models.notification import Notification, NotificationChannel, utcnow

logger = logging.getLogger("courier.notifications.webhook")

SIGNATURE_HEADER = "X-Courier-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    """Signature over the raw request body, formatted as sha256=<hex>"""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookSender(HttpSender):
    """Deliver notifications to HTTP endpoints"""

    channel = NotificationChannel.WEBHOOK

    def __init__(
        self,
        secret: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(client=client, timeout=timeout)
        self.secret = secret

    def build_body(self, notification: Notification) -> bytes:
        payload = {
            "id": notification.id,
            "type": notification.type,
            "priority": notification.priority.value,
            "subject": notification.subject,
            "content": notification.content.to_dict(),
            "metadata": notification.metadata.to_dict(),
            "tags": list(notification.tags),
            "sent_at": utcnow().isoformat(),
        }
        return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")

    async def send(self, notification: Notification) -> SendResult:
        url = notification.recipient.webhook_url
        if not url:
            return SendResult.permanent("No recipient webhook URL", code="missing_recipient")

        body = self.build_body(notification)
        headers = {
            "Content-Type": "application/json",
            "X-Courier-Notification-Id": notification.id,
        }
        if self.secret:
            headers[SIGNATURE_HEADER] = compute_signature(self.secret, body)

        try:
            client = self._get_client()
            response = await client.post(url, content=body, headers=headers)
        except httpx.InvalidURL as e:
            logger.error(f"Invalid webhook URL {url}: {e}")
            return SendResult.permanent(str(e), code="invalid_url")
        except httpx.HTTPError as e:
            logger.error(f"Webhook send error: {e}")
            return SendResult.transient(str(e), code="transport_error")

        if 200 <= response.status_code < 300:
            logger.info(f"Webhook delivered to {url} (notification {notification.id})")
            return SendResult.ok()

        result = http_failure(response)
        logger.error(f"Webhook {url} rejected notification {notification.id}: {result.error}")
        return result
