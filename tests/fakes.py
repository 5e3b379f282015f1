"""
In-memory stand-ins for the PostgreSQL storages plus a scripted sender.

The storages honour the same contracts as the SQL versions: compare-and-set
transitions, count-bounded batch results, copies on every read.
"""
import asyncio
import copy
from dataclasses import replace
from types import SimpleNamespace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from courier.errors import BrokerUnavailable
from courier.models.batch import BatchStatus, NotificationBatch
from courier.models.notification import (
    Notification,
    NotificationChannel,
    NotificationError,
    NotificationPriority,
    NotificationStatus,
    utcnow,
)
from courier.models.statistic import Statistic
from courier.notifications.base_sender import BaseSender, SendResult
from courier.notifications.registry import ChannelDispatcher
from courier.queue.broker import InlineBroker, QueueBroker
from courier.services.batch_service import BatchService
from courier.services.confirmation import ConfirmationHandler, TimerConfirmation
from courier.services.dispatch_queue import PriorityDispatchQueue
from courier.services.error_ledger import ErrorLedger
from courier.services.events import EventBus
from courier.services.notification_service import NotificationService
from courier.services.state_machine import DeliveryStateMachine
from courier.storage.error_storage import ErrorFilters
from courier.storage.notification_storage import MAX_PAGE_SIZE, NotificationFilters


class _Lifecycle:
    async def init(self):
        pass

    async def close(self):
        pass


class InMemoryNotificationStorage(_Lifecycle):

    def __init__(self):
        self.rows: Dict[str, Notification] = {}

    async def create(self, notification: Notification) -> Notification:
        self.rows[notification.id] = copy.deepcopy(notification)
        return copy.deepcopy(notification)

    async def get_by_id(self, notification_id: str) -> Optional[Notification]:
        row = self.rows.get(notification_id)
        return copy.deepcopy(row) if row else None

    def _matching(self, filters: NotificationFilters) -> List[Notification]:
        result = []
        for n in self.rows.values():
            if filters.status and n.status != filters.status:
                continue
            if filters.priority and n.priority != filters.priority:
                continue
            if filters.channel and n.channel != filters.channel:
                continue
            if filters.type and n.type != filters.type:
                continue
            if filters.recipient_id and n.recipient.id != filters.recipient_id:
                continue
            if filters.recipient_email and n.recipient.email != filters.recipient_email:
                continue
            if filters.date_from and n.created_at < filters.date_from:
                continue
            if filters.date_to and n.created_at > filters.date_to:
                continue
            if filters.tags and not set(filters.tags) <= set(n.tags):
                continue
            result.append(n)
        return sorted(result, key=lambda n: n.created_at, reverse=True)

    async def find_many(self, filters: NotificationFilters) -> List[Notification]:
        page = self._matching(filters)[filters.offset:filters.offset + filters.limit]
        return [copy.deepcopy(n) for n in page]

    async def count(self, filters: NotificationFilters) -> int:
        return len(self._matching(filters))

    async def transition(
        self,
        notification_id: str,
        expected_status: NotificationStatus,
        new_status: NotificationStatus,
        attempts: int,
        sent_at: Optional[datetime] = None,
        delivered_at: Optional[datetime] = None,
        failed_at: Optional[datetime] = None,
    ) -> Optional[Notification]:
        row = self.rows.get(notification_id)
        if row is None or row.status != expected_status:
            return None
        row.status = new_status
        row.attempts = attempts
        row.sent_at = row.sent_at or sent_at
        row.delivered_at = row.delivered_at or delivered_at
        row.failed_at = row.failed_at or failed_at
        row.updated_at = utcnow()
        return copy.deepcopy(row)

    async def delete(self, notification_id: str) -> bool:
        return self.rows.pop(notification_id, None) is not None

    async def get_queued(
        self,
        priority: Optional[NotificationPriority] = None,
        limit: int = 100,
        now: Optional[datetime] = None,
    ) -> List[Notification]:
        now = now or utcnow()
        due = [
            n for n in self.rows.values()
            if n.status == NotificationStatus.QUEUED
            and n.is_due(now)
            and (priority is None or n.priority == priority)
        ]
        due.sort(key=lambda n: (n.priority.weight, n.created_at))
        return [copy.deepcopy(n) for n in due[:limit]]

    async def get_scheduled(self, before: datetime, limit: int = 100) -> List[Notification]:
        rows = [
            n for n in self.rows.values()
            if n.status == NotificationStatus.QUEUED and n.scheduled_at and n.scheduled_at <= before
        ]
        rows.sort(key=lambda n: n.scheduled_at)
        return [copy.deepcopy(n) for n in rows[:limit]]

    async def get_stuck_processing(self, updated_before: datetime, limit: int = 100) -> List[Notification]:
        rows = [
            n for n in self.rows.values()
            if n.status == NotificationStatus.PROCESSING and n.updated_at < updated_before
        ]
        rows.sort(key=lambda n: n.updated_at)
        return [copy.deepcopy(n) for n in rows[:limit]]

    def _in_range(self, date_from: datetime, date_to: datetime) -> List[Notification]:
        return [n for n in self.rows.values() if date_from <= n.created_at <= date_to]

    async def delivery_metrics(self, date_from: datetime, date_to: datetime) -> Dict[str, float]:
        rows = self._in_range(date_from, date_to)
        sent = [n for n in rows if n.status in (NotificationStatus.SENT, NotificationStatus.DELIVERED)]
        delivered = [n for n in rows if n.status == NotificationStatus.DELIVERED]
        failed = [n for n in rows if n.status == NotificationStatus.FAILED]
        times = [
            (n.delivered_at - n.sent_at).total_seconds() * 1000
            for n in delivered if n.sent_at and n.delivered_at
        ]
        return {
            "total_sent": len(sent),
            "total_delivered": len(delivered),
            "total_failed": len(failed),
            "average_delivery_time_ms": sum(times) / len(times) if times else 0.0,
            "success_rate": (len(delivered) / len(sent)) * 100 if sent else 0.0,
        }

    async def channel_stats(self, date_from: datetime, date_to: datetime) -> List[Dict[str, Any]]:
        by_channel: Dict[str, Dict[str, int]] = {}
        for n in self._in_range(date_from, date_to):
            bucket = by_channel.setdefault(n.channel.value, {"sent": 0, "delivered": 0, "failed": 0})
            if n.status in (NotificationStatus.SENT, NotificationStatus.DELIVERED):
                bucket["sent"] += 1
            if n.status == NotificationStatus.DELIVERED:
                bucket["delivered"] += 1
            if n.status == NotificationStatus.FAILED:
                bucket["failed"] += 1
        return [
            {
                "channel": channel,
                **counts,
                "success_rate": (counts["delivered"] / counts["sent"]) * 100 if counts["sent"] else 0.0,
            }
            for channel, counts in sorted(by_channel.items())
        ]


class InMemoryErrorStorage(_Lifecycle):

    def __init__(self, notifications: Optional[InMemoryNotificationStorage] = None):
        self.notifications = notifications
        self.entries: List[NotificationError] = []

    async def add(self, error: NotificationError) -> NotificationError:
        saved = replace(error, id=len(self.entries) + 1)
        self.entries.append(saved)
        return saved

    async def list_by_notification(self, notification_id: str) -> List[NotificationError]:
        return [e for e in self.entries if e.notification_id == notification_id]

    def _notification(self, notification_id: str) -> Optional[Notification]:
        if self.notifications is None:
            return None
        return self.notifications.rows.get(notification_id)

    async def list_with_details(self, filters: ErrorFilters) -> Tuple[List[Dict[str, Any]], int]:
        matched = []
        for entry in self.entries:
            notification = self._notification(entry.notification_id)
            if filters.channel and entry.channel != filters.channel:
                continue
            if filters.type and (notification is None or notification.type != filters.type):
                continue
            if filters.retryable is not None and entry.retryable != filters.retryable:
                continue
            if filters.date_from and entry.occurred_at < filters.date_from:
                continue
            if filters.date_to and entry.occurred_at > filters.date_to:
                continue
            item = entry.to_dict()
            item["type"] = notification.type if notification else None
            item["recipient_email"] = notification.recipient.email if notification else None
            matched.append(item)

        matched.sort(key=lambda e: (e["occurred_at"], e["id"]), reverse=True)
        total = len(matched)
        start = filters.offset or 0
        end = start + filters.limit if filters.limit is not None else None
        return matched[start:end], total

    async def statistics(self, since: datetime, group_by: str = "date") -> List[Dict[str, Any]]:
        groups: Dict[str, Dict[str, int]] = {}
        for entry in self.entries:
            if entry.occurred_at < since:
                continue
            notification = self._notification(entry.notification_id)
            key = {
                "date": entry.occurred_at.date().isoformat(),
                "channel": entry.channel.value,
                "type": notification.type if notification else None,
                "error_code": entry.error_code or "unknown",
            }[group_by]
            bucket = groups.setdefault(key, {"count": 0, "retryable": 0})
            bucket["count"] += 1
            bucket["retryable"] += 1 if entry.retryable else 0
        return [
            {group_by: key, **counts}
            for key, counts in sorted(groups.items(), key=lambda item: str(item[0]))
        ]


class InMemoryBatchStorage(_Lifecycle):

    def __init__(self):
        self.rows: Dict[str, NotificationBatch] = {}
        self.members: Dict[str, List[str]] = {}

    async def create(self, batch: NotificationBatch) -> NotificationBatch:
        self.rows[batch.id] = copy.deepcopy(batch)
        self.members[batch.id] = []
        return copy.deepcopy(batch)

    async def get_by_id(self, batch_id: str) -> Optional[NotificationBatch]:
        row = self.rows.get(batch_id)
        return copy.deepcopy(row) if row else None

    async def list(
        self, status: Optional[BatchStatus] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[NotificationBatch], int]:
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))
        rows = [b for b in self.rows.values() if status is None or b.status == status]
        rows.sort(key=lambda b: b.created_at, reverse=True)
        return [copy.deepcopy(b) for b in rows[offset:offset + limit]], len(rows)

    async def add_members(self, batch_id: str, notification_ids) -> Optional[NotificationBatch]:
        row = self.rows.get(batch_id)
        if row is None or row.status not in (BatchStatus.PENDING, BatchStatus.PROCESSING):
            return None
        members = self.members[batch_id]
        for notification_id in dict.fromkeys(notification_ids):
            if notification_id not in members:
                members.append(notification_id)
                row.total_count += 1
        return copy.deepcopy(row)

    async def get_member_ids(self, batch_id: str) -> List[str]:
        return list(self.members.get(batch_id, []))

    async def get_open_member_ids(self, notification_ids) -> set:
        wanted = set(notification_ids)
        return {
            notification_id
            for batch_id, members in self.members.items()
            if self.rows[batch_id].status in (BatchStatus.PENDING, BatchStatus.PROCESSING)
            for notification_id in members
            if notification_id in wanted
        }

    async def update_status(
        self,
        batch_id: str,
        expected,
        new_status: BatchStatus,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        all_counted: bool = False,
    ) -> Optional[NotificationBatch]:
        row = self.rows.get(batch_id)
        if row is None or row.status not in list(expected):
            return None
        if all_counted and row.success_count + row.failure_count < row.total_count:
            return None
        row.status = new_status
        row.started_at = row.started_at or started_at
        row.completed_at = row.completed_at or completed_at
        return copy.deepcopy(row)

    async def record_member_result(
        self, batch_id: str, success: bool, error: Optional[str] = None
    ) -> Optional[NotificationBatch]:
        row = self.rows.get(batch_id)
        if row is None or row.success_count + row.failure_count >= row.total_count:
            return None
        if success:
            row.success_count += 1
        else:
            row.failure_count += 1
        if error:
            row.errors.append(error)
        return copy.deepcopy(row)


def _weighted(old: Optional[float], old_count: int, new: Optional[float], new_count: int) -> Optional[float]:
    if new is None:
        return old
    if old is None:
        return new
    return (old * old_count + new * new_count) / (old_count + new_count)


class InMemoryStatisticStorage(_Lifecycle):

    def __init__(self):
        self.rows: List[Statistic] = []

    async def record(self, stat: Statistic) -> None:
        key = (stat.metric_name, stat.channel, stat.type, stat.priority, stat.date)
        for row in self.rows:
            if (row.metric_name, row.channel, row.type, row.priority, row.date) == key:
                row.average_delivery_time = _weighted(row.average_delivery_time, row.count,
                                                      stat.average_delivery_time, stat.count)
                row.error_rate = _weighted(row.error_rate, row.count, stat.error_rate, stat.count)
                row.count += stat.count
                return
        self.rows.append(replace(stat))

    async def list(self, metric_name=None, channel=None, type=None, date_from=None, date_to=None) -> List[Statistic]:
        return [
            s for s in self.rows
            if (metric_name is None or s.metric_name == metric_name)
            and (channel is None or s.channel == channel)
            and (type is None or s.type == type)
            and (date_from is None or s.date >= date_from)
            and (date_to is None or s.date <= date_to)
        ]

    def names(self) -> List[str]:
        return [s.metric_name for s in self.rows]


class FakeRedis:
    """Just enough of ArqRedis for the arq broker"""

    def __init__(self):
        self.values: Dict[str, Any] = {}
        self.jobs: Dict[str, Tuple[str, tuple]] = {}

    async def enqueue_job(self, function: str, *args, _job_id: Optional[str] = None, **kwargs):
        if _job_id in self.jobs:
            return None
        self.jobs[_job_id] = (function, args)
        return SimpleNamespace(job_id=_job_id)

    async def zcard(self, key):
        return len(self.jobs)

    async def incr(self, key):
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    async def expire(self, key, seconds):
        return True

    async def delete(self, key):
        self.values.pop(key, None)

    async def exists(self, key):
        return 1 if key in self.values else 0

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def ping(self):
        return True

    async def aclose(self):
        pass


class ScriptedSender(BaseSender):
    """
    Returns queued results in order, then `default`.

    A result may be an exception instance (raised) or a float (seconds to
    sleep before succeeding).
    """

    def __init__(self, *results, default: Optional[SendResult] = None):
        self.results = list(results)
        self.default = default or SendResult.ok()
        self.calls: List[str] = []

    async def send(self, notification: Notification) -> SendResult:
        self.calls.append(notification.id)
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        if isinstance(result, (int, float)):
            await asyncio.sleep(result)
            return SendResult.ok()
        return result

    async def close(self):
        pass


class FakeEngine:
    """Same wiring as EngineService, over in-memory storages"""

    def __init__(
        self,
        sender: Optional[BaseSender] = None,
        broker: Optional[QueueBroker] = None,
        confirmation_delay: float = 60.0,
        confirmation: Optional[ConfirmationHandler] = None,
        send_timeout: float = 5.0,
        backoff_ms: int = 10,
        release_delays: Optional[Dict[NotificationPriority, int]] = None,
        concurrency: int = 5,
        batch_size: int = 50,
        channel_concurrency: Optional[Dict[str, int]] = None,
    ):
        self.notification_storage = InMemoryNotificationStorage()
        self.error_storage = InMemoryErrorStorage(self.notification_storage)
        self.batch_storage = InMemoryBatchStorage()
        self.statistic_storage = InMemoryStatisticStorage()

        self.sender = sender or ScriptedSender()
        self.dispatcher = ChannelDispatcher(send_timeout=send_timeout)
        for channel in NotificationChannel:
            self.dispatcher.register(channel, self.sender)
        self.broker = broker or InlineBroker()

        self.event_bus = EventBus()
        self.events = []
        self.event_bus.subscribe("*", self._collect)
        self.error_ledger = ErrorLedger(self.error_storage)
        self.state_machine = DeliveryStateMachine(
            storage=self.notification_storage,
            error_ledger=self.error_ledger,
            statistic_storage=self.statistic_storage,
            event_bus=self.event_bus,
        )
        self.confirmation = confirmation or TimerConfirmation(self.state_machine, delay=confirmation_delay)
        self.dispatch_queue = PriorityDispatchQueue(
            storage=self.notification_storage,
            state_machine=self.state_machine,
            dispatcher=self.dispatcher,
            broker=self.broker,
            confirmation=self.confirmation,
            concurrency=concurrency,
            backoff_ms=backoff_ms,
            sweep_enabled=False,
            release_delays=release_delays or {p: 0 for p in NotificationPriority},
        )
        self.notification_service = NotificationService(
            storage=self.notification_storage,
            state_machine=self.state_machine,
            dispatch_queue=self.dispatch_queue,
            error_ledger=self.error_ledger,
            statistic_storage=self.statistic_storage,
            event_bus=self.event_bus,
        )
        self.batch_service = BatchService(
            batch_storage=self.batch_storage,
            notification_storage=self.notification_storage,
            dispatch_queue=self.dispatch_queue,
            state_machine=self.state_machine,
            concurrency=concurrency,
            batch_size=batch_size,
            channel_concurrency=channel_concurrency,
            item_delays_ms={c: 0 for c in NotificationChannel},
        )
        self._initialized = False

    async def _collect(self, event):
        self.events.append(event)

    async def initialize(self, consume: bool = False):
        try:
            await self.broker.open()
        except BrokerUnavailable:
            pass
        await self.dispatch_queue.start(consume=consume)
        self._initialized = True

    async def close(self):
        await self.batch_service.stop_collection()
        await self.dispatch_queue.stop()
        await self.confirmation.close()
        await self.broker.close()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def event_names(self) -> List[str]:
        return [e.name for e in self.events]
