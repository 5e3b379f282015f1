"""
Event Bus

Fire-and-forget domain events for observers (dashboards, audit hooks).
Subscriber failures are logged and never reach the publisher.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List

from ..models.notification import utcnow

logger = logging.getLogger("courier.services.events")

NOTIFICATION_CREATED = "notification.created"
NOTIFICATION_STATUS_UPDATED = "notification.status_updated"
NOTIFICATION_DELIVERED = "notification.delivered"

Subscriber = Callable[["DomainEvent"], Awaitable[None]]


@dataclass
class DomainEvent:
    """Event envelope"""
    name: str
    notification_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "notification_id": self.notification_id,
            "data": self.data,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EventBus:
    """In-process publish/subscribe"""

    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = {}

    def subscribe(self, name: str, callback: Subscriber):
        """Register a callback for an event name ('*' for all events)"""
        self._subscribers.setdefault(name, []).append(callback)

    async def publish(self, event: DomainEvent):
        logger.debug(f"Event {event.name} for {event.notification_id}: {event.data}")
        for callback in self._subscribers.get(event.name, []) + self._subscribers.get("*", []):
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed for {event.name}: {e}")
