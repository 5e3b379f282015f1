"""
Channel Dispatcher

Registry mapping channels to senders. Senders are registered at startup;
the dispatch queue resolves them by notification.channel.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from .base_sender import BaseSender, SendResult
from .generic_sender import GenericSender
from ..errors import ChannelDispatchError
from ..models.notification import Notification, NotificationChannel

logger = logging.getLogger("courier.notifications.registry")


class ChannelDispatcher:
    """
    Registry of channel senders.

    Usage:
        dispatcher = ChannelDispatcher(send_timeout=30)
        dispatcher.register(NotificationChannel.EMAIL, EmailSender(...))
        await dispatcher.dispatch(notification)
    """

    def __init__(self, send_timeout: float = 30.0, fallback: Optional[BaseSender] = None):
        self.send_timeout = send_timeout
        self._senders: Dict[NotificationChannel, BaseSender] = {}
        self._fallback = fallback or GenericSender()

    def register(self, channel: NotificationChannel, sender: BaseSender):
        """Register a sender for a channel, replacing any previous one"""
        self._senders[NotificationChannel(channel)] = sender
        logger.info(f"Registered sender: {NotificationChannel(channel).value} -> {type(sender).__name__}")

    def get(self, channel: NotificationChannel) -> BaseSender:
        """Sender for a channel, or the generic fallback"""
        return self._senders.get(NotificationChannel(channel), self._fallback)

    async def dispatch(self, notification: Notification) -> SendResult:
        """
        Perform exactly one delivery attempt.

        Returns the successful SendResult; raises ChannelDispatchError
        (classified retryable or not) on any failure, including timeout.
        """
        channel = notification.channel.value
        sender = self.get(notification.channel)
        try:
            result = await asyncio.wait_for(sender.send(notification), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            raise ChannelDispatchError(
                channel, f"Send timed out after {self.send_timeout}s", code="TIMEOUT", retryable=True
            )
        except ChannelDispatchError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected {channel} sender failure for {notification.id}")
            raise ChannelDispatchError(channel, str(e) or type(e).__name__, code="SENDER_ERROR") from e

        if not result.success:
            raise ChannelDispatchError(
                channel, result.error or "Delivery failed", code=result.code, retryable=result.retryable
            )
        return result

    async def close(self):
        """Close every registered sender"""
        closed = []
        for sender in [*self._senders.values(), self._fallback]:
            if any(sender is c for c in closed):
                continue
            closed.append(sender)
            try:
                await sender.close()
            except Exception as e:
                logger.warning(f"Error closing {type(sender).__name__}: {e}")

    @property
    def available_channels(self) -> List[str]:
        """List all channels with a dedicated sender"""
        return [channel.value for channel in self._senders]

    def __len__(self) -> int:
        return len(self._senders)
