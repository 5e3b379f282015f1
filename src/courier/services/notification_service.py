"""
Notification Service

Orchestrates the delivery engine:
1. Validates and persists new notifications (status=queued)
2. Optionally hands them to the dispatch queue right away
3. Exposes status changes, cancellation and administrative delete
4. Serves analytics and the error ledger
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from .dispatch_queue import PriorityDispatchQueue
from .error_ledger import ErrorLedger
from .events import DomainEvent, EventBus, NOTIFICATION_CREATED
from .state_machine import DeliveryStateMachine
from ..errors import BrokerUnavailable, InvalidTransition, NotFoundError, ValidationError
from ..models.notification import (
    HealthcareMetadata,
    Notification,
    NotificationChannel,
    NotificationContent,
    NotificationError,
    NotificationMetadata,
    NotificationPriority,
    NotificationRecipient,
    NotificationStatus,
    utcnow,
)
from ..models.statistic import Statistic
from ..queue.broker import QueueMetrics
from ..storage.error_storage import ErrorFilters
from ..storage.notification_storage import NotificationFilters, NotificationStorage
from ..storage.statistic_storage import StatisticStorage

logger = logging.getLogger("courier.services.notification")

MAX_SUBJECT_LENGTH = 255
HEALTHCARE_ENCRYPTION_ALGORITHM = "AES-256-GCM"
HEALTHCARE_TAG = "healthcare"


@dataclass
class CancelResult:
    """Outcome of a cancel request; `applied` is False when it did not apply"""
    applied: bool
    notification: Notification
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "cancelled": self.applied,
            "reason": self.reason,
            "notification": self.notification.to_dict(),
        }


def derive_subject(notification_type: str, content: NotificationContent) -> str:
    """First 255 chars of the text, or '<type> notification'"""
    if content.text:
        return content.text[:MAX_SUBJECT_LENGTH]
    return f"{notification_type} notification"


class NotificationService:
    """Notification delivery orchestrator"""

    def __init__(
        self,
        storage: NotificationStorage,
        state_machine: DeliveryStateMachine,
        dispatch_queue: PriorityDispatchQueue,
        error_ledger: ErrorLedger,
        statistic_storage: Optional[StatisticStorage] = None,
        event_bus: Optional[EventBus] = None,
        default_max_attempts: int = 3,
    ):
        self.storage = storage
        self.state_machine = state_machine
        self.dispatch_queue = dispatch_queue
        self.error_ledger = error_ledger
        self.statistic_storage = statistic_storage
        self.event_bus = event_bus or state_machine.event_bus
        self.default_max_attempts = default_max_attempts

    # ============================================
    # Creation
    # ============================================

    async def create_notification(
        self,
        type: str,
        channel: Union[NotificationChannel, str],
        recipient: NotificationRecipient,
        content: NotificationContent,
        priority: Union[NotificationPriority, str] = NotificationPriority.NORMAL,
        subject: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        metadata: Optional[NotificationMetadata] = None,
        tags: Optional[List[str]] = None,
        max_attempts: Optional[int] = None,
        process_immediately: bool = False,
    ) -> Notification:
        """
        Validate and persist a notification with status 'queued'.

        With process_immediately (and no scheduled_at) it is enqueued at
        once; an unavailable broker is logged and left to the sweep.
        """
        channel, priority = self._validate(type, channel, priority, recipient, content, max_attempts)

        notification = Notification(
            type=type,
            channel=channel,
            priority=priority,
            recipient=recipient,
            content=content,
            subject=subject or derive_subject(type, content),
            metadata=metadata or NotificationMetadata(),
            tags=list(dict.fromkeys(tags or [])),
            scheduled_at=scheduled_at,
            max_attempts=max_attempts or self.default_max_attempts,
        )
        created = await self.storage.create(notification)
        logger.info(
            f"Notification created: {created.id} (type={created.type}, channel={created.channel.value}, "
            f"priority={created.priority.value})"
        )

        await self.event_bus.publish(DomainEvent(
            name=NOTIFICATION_CREATED,
            notification_id=created.id,
            data={
                "type": created.type,
                "channel": created.channel.value,
                "priority": created.priority.value,
                "recipient_id": created.recipient.id,
            },
        ))

        if process_immediately and created.scheduled_at is None:
            try:
                await self.dispatch_queue.enqueue(created.id, created.priority, delay_ms=0)
            except BrokerUnavailable as e:
                logger.warning(f"Broker unavailable, {created.id} left for the next sweep: {e}")

        return created

    async def create_healthcare_notification(
        self,
        type: str,
        channel: Union[NotificationChannel, str],
        recipient: NotificationRecipient,
        content: NotificationContent,
        healthcare: HealthcareMetadata,
        priority: Union[NotificationPriority, str] = NotificationPriority.NORMAL,
        scheduled_at: Optional[datetime] = None,
        tags: Optional[List[str]] = None,
        process_immediately: bool = False,
    ) -> Notification:
        """Create a notification carrying healthcare metadata and the 'healthcare' tag"""
        if healthcare.encryption_enabled and not healthcare.encryption_algorithm:
            healthcare.encryption_algorithm = HEALTHCARE_ENCRYPTION_ALGORITHM

        return await self.create_notification(
            type=type,
            channel=channel,
            recipient=recipient,
            content=content,
            priority=priority,
            scheduled_at=scheduled_at,
            metadata=NotificationMetadata(source="healthcare", detail=healthcare),
            tags=[*(tags or []), HEALTHCARE_TAG],
            process_immediately=process_immediately,
        )

    def _validate(
        self,
        type: str,
        channel: Union[NotificationChannel, str],
        priority: Union[NotificationPriority, str],
        recipient: NotificationRecipient,
        content: NotificationContent,
        max_attempts: Optional[int],
    ) -> Tuple[NotificationChannel, NotificationPriority]:
        if not type:
            raise ValidationError("type is required")
        try:
            channel = NotificationChannel(channel)
        except ValueError:
            raise ValidationError(f"Unknown channel: {channel}")
        try:
            priority = NotificationPriority(priority)
        except ValueError:
            raise ValidationError(f"Unknown priority: {priority}")
        if content is None or not content.text:
            raise ValidationError("content.text is required")
        if recipient is None or not recipient.address_for(channel):
            raise ValidationError(f"recipient has no address for channel '{channel.value}'")
        if max_attempts is not None and max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        return channel, priority

    # ============================================
    # Queries
    # ============================================

    async def get_notification(self, notification_id: str) -> Notification:
        notification = await self.storage.get_by_id(notification_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return notification

    async def list_notifications(self, filters: NotificationFilters) -> Tuple[List[Notification], int]:
        """Page of notifications plus the total matching count"""
        items = await self.storage.find_many(filters)
        total = await self.storage.count(filters)
        return items, total

    async def get_queued_notifications(
        self, priority: Optional[NotificationPriority] = None, limit: int = 100
    ) -> List[Notification]:
        return await self.storage.get_queued(priority=priority, limit=limit)

    async def get_scheduled_notifications(
        self, before: Optional[datetime] = None, limit: int = 100
    ) -> List[Notification]:
        return await self.storage.get_scheduled(before or utcnow(), limit=limit)

    # ============================================
    # Lifecycle
    # ============================================

    async def update_status(self, notification_id: str, status: Union[NotificationStatus, str]) -> Notification:
        """Administrative status change, still bound by the state machine"""
        try:
            status = NotificationStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status: {status}")
        updated = await self.state_machine.transition_by_id(notification_id, status)
        if updated.status == NotificationStatus.SENT:
            await self.dispatch_queue.confirmation.schedule(updated)
        return updated

    async def cancel(self, notification_id: str) -> CancelResult:
        """Cancel a queued notification; reports not applicable otherwise"""
        notification = await self.get_notification(notification_id)
        if notification.status != NotificationStatus.QUEUED:
            logger.info(f"Cancel not applicable for {notification_id} ({notification.status.value})")
            return CancelResult(applied=False, notification=notification, reason="not_applicable")
        try:
            cancelled = await self.state_machine.cancel(notification)
        except InvalidTransition:
            latest = await self.get_notification(notification_id)
            return CancelResult(applied=False, notification=latest, reason="not_applicable")
        return CancelResult(applied=True, notification=cancelled)

    async def delete_notification(self, notification_id: str) -> bool:
        """Administrative delete outside the state machine"""
        deleted = await self.storage.delete(notification_id)
        if not deleted:
            raise NotFoundError(f"Notification {notification_id} not found")
        logger.info(f"Notification deleted: {notification_id}")
        return True

    async def process_notification(self, notification_id: str) -> bool:
        """Run one delivery attempt in-line"""
        await self.get_notification(notification_id)
        return await self.dispatch_queue.process(notification_id)

    # ============================================
    # Queue controls
    # ============================================

    async def queue_for_processing(
        self,
        notification_id: str,
        delay_ms: int = 0,
        priority: Optional[Union[NotificationPriority, str]] = None,
        attempts: Optional[int] = None,
    ) -> str:
        """Manually enqueue a queued notification; BrokerUnavailable propagates"""
        notification = await self.get_notification(notification_id)
        if notification.status != NotificationStatus.QUEUED:
            raise ValidationError(
                f"Notification {notification_id} is {notification.status.value}, only queued can be enqueued"
            )
        return await self.dispatch_queue.enqueue(
            notification.id,
            NotificationPriority(priority) if priority else notification.priority,
            delay_ms=delay_ms,
            attempts=attempts,
            attempt_number=notification.attempts,
        )

    async def get_queue_metrics(self) -> QueueMetrics:
        return await self.dispatch_queue.get_metrics()

    async def pause_processing(self):
        await self.dispatch_queue.pause()

    async def resume_processing(self):
        await self.dispatch_queue.resume()

    # ============================================
    # Analytics
    # ============================================

    async def get_notification_counts(self, filters: Optional[NotificationFilters] = None) -> int:
        return await self.storage.count(filters or NotificationFilters())

    async def get_delivery_metrics(self, date_from: datetime, date_to: datetime) -> Dict[str, float]:
        self._check_range(date_from, date_to)
        return await self.storage.delivery_metrics(date_from, date_to)

    async def get_channel_statistics(self, date_from: datetime, date_to: datetime) -> List[Dict[str, Any]]:
        self._check_range(date_from, date_to)
        return await self.storage.channel_stats(date_from, date_to)

    async def get_statistics(
        self,
        metric_name: Optional[str] = None,
        channel: Optional[str] = None,
        type: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[Statistic]:
        if self.statistic_storage is None:
            return []
        return await self.statistic_storage.list(
            metric_name=metric_name, channel=channel, type=type, date_from=date_from, date_to=date_to
        )

    @staticmethod
    def _check_range(date_from, date_to):
        if date_from and date_to and date_from > date_to:
            raise ValidationError("date_from must not be after date_to")

    # ============================================
    # Errors
    # ============================================

    async def get_notification_errors(self, notification_id: str) -> List[NotificationError]:
        return await self.error_ledger.get_errors(notification_id)

    async def get_all_errors(self, filters: ErrorFilters) -> Tuple[List[Dict[str, Any]], int]:
        return await self.error_ledger.list_errors(filters)

    async def get_error_statistics(self, days: int = 7, group_by: str = "date") -> List[Dict[str, Any]]:
        return await self.error_ledger.statistics(days=days, group_by=group_by)

    async def export_errors(self, filters: Optional[ErrorFilters] = None, format: str = "json") -> str:
        return await self.error_ledger.export(filters, format)
