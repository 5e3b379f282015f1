"""
Generic Sender

Fallback used for channels without a registered transport. Nothing is
delivered: the attempt fails permanently as not configured.
"""
import logging

from .base_sender import BaseSender, SendResult
from ..models.notification import Notification

logger = logging.getLogger("courier.notifications.generic")


class GenericSender(BaseSender):
    """Fallback for unregistered channels"""

    channel = None

    async def send(self, notification: Notification) -> SendResult:
        logger.warning(
            f"No sender for channel {notification.channel.value}, "
            f"notification {notification.id} not delivered"
        )
        return SendResult.permanent(
            f"No sender for channel {notification.channel.value}", code="not_configured"
        )

    async def close(self):
        pass
