"""
Delivery State Machine

Sole writer of notification status. Every change is one atomic
compare-and-set update of status, attempts and timestamps, followed by
a domain event and a statistic rollup.

    queued -> processing -> sent -> delivered
                  |  \\
                  |   -> failed         (attempts exhausted / permanent error)
                  -> queued             (retry while attempts remain)
    queued -> cancelled
"""
import logging
from typing import Dict, FrozenSet, Optional

from .error_ledger import ErrorLedger
from .events import (
    DomainEvent,
    EventBus,
    NOTIFICATION_DELIVERED,
    NOTIFICATION_STATUS_UPDATED,
)
from ..errors import ChannelDispatchError, InvalidTransition, NotFoundError
from ..models.notification import Notification, NotificationStatus, utcnow
from ..models.statistic import Statistic
from ..storage.notification_storage import NotificationStorage
from ..storage.statistic_storage import StatisticStorage

logger = logging.getLogger("courier.services.state_machine")

S = NotificationStatus

# Rollup of resolved delivery attempts per bucket
ATTEMPTS_METRIC = "delivery_attempts"

TRANSITIONS: Dict[NotificationStatus, FrozenSet[NotificationStatus]] = {
    S.QUEUED: frozenset({S.PROCESSING, S.CANCELLED}),
    S.PROCESSING: frozenset({S.SENT, S.QUEUED, S.FAILED}),
    S.SENT: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Transitions that consume one delivery attempt
_COUNTS_ATTEMPT = frozenset({S.SENT, S.QUEUED, S.FAILED})


def can_transition(current: NotificationStatus, new_status: NotificationStatus) -> bool:
    return NotificationStatus(new_status) in TRANSITIONS[NotificationStatus(current)]


class DeliveryStateMachine:
    """Governs notification status transitions and attempt bookkeeping"""

    def __init__(
        self,
        storage: NotificationStorage,
        error_ledger: ErrorLedger,
        statistic_storage: Optional[StatisticStorage] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.storage = storage
        self.error_ledger = error_ledger
        self.statistic_storage = statistic_storage
        self.event_bus = event_bus or EventBus()

    async def transition(self, notification: Notification, new_status: NotificationStatus) -> Notification:
        """
        Apply one transition.

        Raises InvalidTransition when the move is not allowed from the
        current status, or when another writer changed the row first.
        """
        new_status = NotificationStatus(new_status)
        current = notification.status
        if not can_transition(current, new_status):
            logger.warning(f"Rejected transition {current.value} -> {new_status.value} for {notification.id}")
            raise InvalidTransition(notification.id, current.value, new_status.value)

        attempts = notification.attempts + 1 if new_status in _COUNTS_ATTEMPT else notification.attempts
        if attempts > notification.max_attempts:
            raise InvalidTransition(notification.id, current.value, new_status.value)
        if new_status == S.QUEUED and attempts >= notification.max_attempts:
            # No attempts left to retry with
            raise InvalidTransition(notification.id, current.value, new_status.value)

        now = utcnow()
        updated = await self.storage.transition(
            notification.id,
            expected_status=current,
            new_status=new_status,
            attempts=attempts,
            sent_at=now if new_status == S.SENT else None,
            delivered_at=now if new_status == S.DELIVERED else None,
            failed_at=now if new_status == S.FAILED else None,
        )
        if updated is None:
            latest = await self.storage.get_by_id(notification.id)
            if latest is None:
                raise NotFoundError(f"Notification {notification.id} not found")
            logger.warning(
                f"Lost transition race for {notification.id}: expected {current.value}, "
                f"found {latest.status.value}"
            )
            raise InvalidTransition(notification.id, latest.status.value, new_status.value)

        logger.info(
            f"Notification {notification.id}: {current.value} -> {new_status.value} "
            f"(attempts={updated.attempts}/{updated.max_attempts})"
        )
        await self._after_transition(updated, current)
        return updated

    async def transition_by_id(self, notification_id: str, new_status: NotificationStatus) -> Notification:
        notification = await self.storage.get_by_id(notification_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return await self.transition(notification, new_status)

    async def start_attempt(self, notification: Notification) -> Notification:
        return await self.transition(notification, S.PROCESSING)

    async def record_success(self, notification: Notification) -> Notification:
        return await self.transition(notification, S.SENT)

    async def record_failure(self, notification: Notification, error: ChannelDispatchError) -> Notification:
        """
        Resolve a failed attempt: re-queue while attempts remain and the
        error is retryable, otherwise fail. Writes one ledger entry.
        """
        retry = error.retryable and notification.attempts + 1 < notification.max_attempts
        updated = await self.transition(notification, S.QUEUED if retry else S.FAILED)
        await self.error_ledger.record(updated, error)
        return updated

    async def confirm_delivery(self, notification: Notification) -> Notification:
        return await self.transition(notification, S.DELIVERED)

    async def cancel(self, notification: Notification) -> Notification:
        return await self.transition(notification, S.CANCELLED)

    async def _after_transition(self, notification: Notification, previous: NotificationStatus):
        await self.event_bus.publish(DomainEvent(
            name=NOTIFICATION_STATUS_UPDATED,
            notification_id=notification.id,
            data={
                "old_status": previous.value,
                "new_status": notification.status.value,
                "attempts": notification.attempts,
            },
        ))
        if notification.status == S.DELIVERED:
            await self.event_bus.publish(DomainEvent(
                name=NOTIFICATION_DELIVERED,
                notification_id=notification.id,
                data={"delivered_at": notification.delivered_at.isoformat()},
            ))
        await self._record_statistics(notification, previous)

    async def _record_statistics(self, notification: Notification, previous: NotificationStatus):
        if self.statistic_storage is None:
            return
        delivery_time = None
        if notification.status == S.DELIVERED and notification.sent_at and notification.delivered_at:
            delivery_time = (notification.delivered_at - notification.sent_at).total_seconds() * 1000
        stats = [Statistic(
            metric_name=f"notifications_{notification.status.value}",
            channel=notification.channel.value,
            type=notification.type,
            priority=notification.priority.value,
            count=1,
            average_delivery_time=delivery_time,
        )]
        if previous == S.PROCESSING:
            # One resolved attempt; error_rate averages to the share that failed
            stats.append(Statistic(
                metric_name=ATTEMPTS_METRIC,
                channel=notification.channel.value,
                type=notification.type,
                priority=notification.priority.value,
                count=1,
                error_rate=0.0 if notification.status == S.SENT else 100.0,
            ))
        for stat in stats:
            try:
                await self.statistic_storage.record(stat)
            except Exception as e:
                logger.error(f"Failed to record statistic {stat.metric_name} for {notification.id}: {e}")
