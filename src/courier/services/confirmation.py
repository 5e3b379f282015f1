"""
Delivery Confirmation

Drives the sent -> delivered transition. TimerConfirmation fires after a
fixed delay; WebhookConfirmation waits for the provider callback.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Set

from .state_machine import DeliveryStateMachine
from ..errors import CourierError
from ..models.notification import Notification, NotificationStatus

logger = logging.getLogger("courier.services.confirmation")


class ConfirmationHandler(ABC):
    """Decides when a sent notification counts as delivered"""

    def __init__(self, state_machine: DeliveryStateMachine):
        self.state_machine = state_machine

    @abstractmethod
    async def schedule(self, notification: Notification):
        """Called once a notification reaches 'sent'"""
        ...

    async def confirm(self, notification_id: str) -> Notification:
        """Mark a sent notification as delivered"""
        return await self.state_machine.transition_by_id(notification_id, NotificationStatus.DELIVERED)

    async def close(self):
        pass


class TimerConfirmation(ConfirmationHandler):
    """Confirms delivery after a fixed delay"""

    def __init__(self, state_machine: DeliveryStateMachine, delay: float = 3.0):
        super().__init__(state_machine)
        self.delay = delay
        self._tasks: Set[asyncio.Task] = set()

    async def schedule(self, notification: Notification):
        task = asyncio.create_task(self._confirm_later(notification.id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _confirm_later(self, notification_id: str):
        await asyncio.sleep(self.delay)
        try:
            await self.confirm(notification_id)
        except CourierError as e:
            logger.warning(f"Delivery confirmation skipped for {notification_id}: {e}")
        except Exception as e:
            logger.error(f"Delivery confirmation failed for {notification_id}: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait(self, timeout: Optional[float] = None):
        """Wait for every scheduled confirmation to finish"""
        if self._tasks:
            await asyncio.wait_for(asyncio.gather(*self._tasks, return_exceptions=True), timeout)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class WebhookConfirmation(ConfirmationHandler):
    """Leaves notifications in 'sent' until the provider reports delivery"""

    async def schedule(self, notification: Notification):
        logger.debug(f"Awaiting provider confirmation for {notification.id}")
