"""
Batch Service

Treats a group of notifications as one controllable unit: membership,
bounded-concurrency processing with partial-failure accounting, retry as
a new batch, cancellation and health reporting.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .dispatch_queue import PriorityDispatchQueue
from .state_machine import DeliveryStateMachine
from ..errors import BrokerUnavailable, InvalidTransition, NotFoundError, ValidationError
from ..models.batch import BatchStatus, NotificationBatch
from ..models.notification import (
    Notification,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    utcnow,
)
from ..queue.broker import QueueMetrics
from ..storage.batch_storage import BatchStorage
from ..storage.notification_storage import NotificationStorage

logger = logging.getLogger("courier.services.batch")

# Waiting jobs above this mark the queue as degraded
DEGRADED_QUEUE_DEPTH = 1000

COLLECT_LOCK = "batch-collect"

# Pause after each item of an automatically collected batch, per channel
CHANNEL_ITEM_DELAYS_MS: Dict[NotificationChannel, int] = {
    NotificationChannel.EMAIL: 100,
    NotificationChannel.SMS: 200,
    NotificationChannel.PUSH: 50,
    NotificationChannel.CHAT: 300,
    NotificationChannel.WEBHOOK: 150,
}

# Priorities gathered by automatic collection: (priority, batch_size multiple fetched)
COLLECTED_PRIORITIES = (
    (NotificationPriority.NORMAL, 2),
    (NotificationPriority.LOW, 3),
)

_SUCCESS_STATUSES = (NotificationStatus.SENT, NotificationStatus.DELIVERED)


class BatchService:
    """Batch coordinator"""

    def __init__(
        self,
        batch_storage: BatchStorage,
        notification_storage: NotificationStorage,
        dispatch_queue: PriorityDispatchQueue,
        state_machine: DeliveryStateMachine,
        concurrency: int = 5,
        batch_size: int = 50,
        channel_concurrency: Optional[Dict[str, int]] = None,
        collection_interval: int = 60,
        item_delays_ms: Optional[Dict[NotificationChannel, int]] = None,
    ):
        self.batch_storage = batch_storage
        self.notification_storage = notification_storage
        self.dispatch_queue = dispatch_queue
        self.state_machine = state_machine
        self.concurrency = max(1, concurrency)
        self.batch_size = max(1, batch_size)
        self.channel_concurrency = dict(channel_concurrency or {})
        self.collection_interval = collection_interval
        self.item_delays_ms = dict(CHANNEL_ITEM_DELAYS_MS)
        if item_delays_ms is not None:
            self.item_delays_ms.update(item_delays_ms)
        self._collector: Optional[asyncio.Task] = None

    # ============================================
    # CRUD
    # ============================================

    async def create_batch(self, name: Optional[str] = None) -> NotificationBatch:
        batch = await self.batch_storage.create(NotificationBatch(name=name or ""))
        logger.info(f"Created batch {batch.id} '{batch.name}'")
        return batch

    async def get_batch(self, batch_id: str) -> NotificationBatch:
        batch = await self.batch_storage.get_by_id(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    async def list_batches(
        self, status: Optional[BatchStatus] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[NotificationBatch], int]:
        return await self.batch_storage.list(status=status, limit=limit, offset=offset)

    async def get_members(self, batch_id: str) -> List[str]:
        await self.get_batch(batch_id)
        return await self.batch_storage.get_member_ids(batch_id)

    async def get_notifications(self, batch_id: str) -> List[Notification]:
        """Member notifications still present in the store"""
        notifications = []
        for notification_id in await self.get_members(batch_id):
            notification = await self.notification_storage.get_by_id(notification_id)
            if notification:
                notifications.append(notification)
        return notifications

    async def add_members(self, batch_id: str, notification_ids: Iterable[str]) -> NotificationBatch:
        """Attach notifications; only while the batch is pending or processing"""
        ids = [i for i in notification_ids if i]
        if not ids:
            raise ValidationError("notification_ids must not be empty")

        batch = await self.get_batch(batch_id)
        for notification_id in ids:
            if await self.notification_storage.get_by_id(notification_id) is None:
                raise NotFoundError(f"Notification {notification_id} not found")

        updated = await self.batch_storage.add_members(batch_id, ids)
        if updated is None:
            raise InvalidTransition(batch_id, batch.status.value, "add_members", entity="Batch")
        logger.info(f"Batch {batch_id}: {updated.total_count} member(s)")
        return updated

    # ============================================
    # Processing
    # ============================================

    async def process(
        self, batch_id: str, concurrency: Optional[int] = None, item_delay_ms: int = 0
    ) -> NotificationBatch:
        """
        Drive every member through one dispatch attempt.

        Members added while the batch is processing are picked up before
        it completes. A member failure never aborts the batch. The batch
        ends 'completed' even when members failed; callers inspect
        failure_count.
        """
        batch = await self.get_batch(batch_id)
        started = await self.batch_storage.update_status(
            batch_id, [BatchStatus.PENDING], BatchStatus.PROCESSING, started_at=utcnow()
        )
        if started is None:
            raise InvalidTransition(batch_id, batch.status.value, BatchStatus.PROCESSING.value, entity="Batch")

        seen: Set[str] = set()
        finished: Optional[NotificationBatch] = None
        while True:
            fresh = await self._unprocessed_members(batch_id, seen)
            if fresh:
                seen.update(fresh)
                await self._process_members(batch_id, fresh, concurrency or self.concurrency, item_delay_ms)
                continue

            # Completes only once every member is counted
            finished = await self.batch_storage.update_status(
                batch_id, [BatchStatus.PROCESSING], BatchStatus.COMPLETED,
                completed_at=utcnow(), all_counted=True,
            )
            if finished is None and await self._unprocessed_members(batch_id, seen):
                continue
            break

        if finished is None:
            logger.warning(f"Batch {batch_id} completed with uncounted members")
            finished = await self.batch_storage.update_status(
                batch_id, [BatchStatus.PROCESSING], BatchStatus.COMPLETED, completed_at=utcnow()
            )
        result = finished or await self.get_batch(batch_id)
        logger.info(
            f"Batch {batch_id} {result.status.value}: "
            f"{result.success_count} succeeded, {result.failure_count} failed"
        )
        return result

    async def _unprocessed_members(self, batch_id: str, seen: Set[str]) -> List[str]:
        return [i for i in await self.batch_storage.get_member_ids(batch_id) if i not in seen]

    async def _process_members(
        self, batch_id: str, member_ids: List[str], concurrency: int, item_delay_ms: int = 0
    ):
        logger.info(f"Processing batch {batch_id}: {len(member_ids)} member(s), concurrency={concurrency}")
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run(notification_id: str):
            async with semaphore:
                success, error = await self._process_member(notification_id)
                if item_delay_ms:
                    await asyncio.sleep(item_delay_ms / 1000)
            await self.batch_storage.record_member_result(batch_id, success, error)

        try:
            await asyncio.gather(*(run(i) for i in member_ids))
        except Exception as e:
            logger.error(f"Batch {batch_id} aborted: {e}")
            await self.batch_storage.update_status(
                batch_id, [BatchStatus.PROCESSING], BatchStatus.FAILED, completed_at=utcnow()
            )
            raise

    async def _process_member(self, notification_id: str) -> Tuple[bool, Optional[str]]:
        try:
            notification = await self.notification_storage.get_by_id(notification_id)
            if notification is None:
                return False, f"{notification_id}: not found"
            if notification.status in _SUCCESS_STATUSES:
                return True, None
            if notification.status.is_terminal:
                return False, f"{notification_id}: {notification.status.value}"

            if await self.dispatch_queue.process(notification_id):
                return True, None

            latest = await self.notification_storage.get_by_id(notification_id)
            if latest and latest.status in _SUCCESS_STATUSES:
                # Sent by a concurrent dispatch of the same notification
                return True, None
            status = latest.status.value if latest else "missing"
            return False, f"{notification_id}: delivery failed (status={status})"
        except Exception as e:
            logger.error(f"Batch member {notification_id} failed: {e}")
            return False, f"{notification_id}: {e}"

    async def retry(self, batch_id: str) -> NotificationBatch:
        """Create a new batch over the same notifications; the original is untouched"""
        batch = await self.get_batch(batch_id)
        if batch.status != BatchStatus.FAILED and batch.failure_count == 0:
            raise ValidationError(f"Batch {batch_id} has no failures to retry")

        member_ids = await self.batch_storage.get_member_ids(batch_id)
        retry_batch = await self.create_batch(f"{batch.name} (retry)")
        if member_ids:
            retry_batch = await self.batch_storage.add_members(retry_batch.id, member_ids)
        logger.info(f"Batch {batch_id} retried as {retry_batch.id} ({len(member_ids)} member(s))")
        return retry_batch

    async def cancel(self, batch_id: str) -> bool:
        """
        Cancel a pending batch and its queued members.

        Returns False once processing has started; in-flight batches are
        never preempted.
        """
        batch = await self.get_batch(batch_id)
        if batch.status != BatchStatus.PENDING:
            logger.warning(f"Cannot cancel batch {batch_id} in status {batch.status.value}")
            return False

        cancelled = await self.batch_storage.update_status(
            batch_id, [BatchStatus.PENDING], BatchStatus.FAILED, completed_at=utcnow()
        )
        if cancelled is None:
            logger.warning(f"Batch {batch_id} left 'pending' before it could be cancelled")
            return False

        count = 0
        for notification_id in await self.batch_storage.get_member_ids(batch_id):
            notification = await self.notification_storage.get_by_id(notification_id)
            if notification is None or notification.status != NotificationStatus.QUEUED:
                continue
            try:
                await self.state_machine.cancel(notification)
                count += 1
            except InvalidTransition as e:
                logger.info(f"Batch {batch_id} member not cancelled: {e}")
        logger.info(f"Cancelled batch {batch_id} ({count} member(s) cancelled)")
        return True

    # ============================================
    # Automatic collection
    # ============================================

    async def collect(self) -> List[NotificationBatch]:
        """
        Group due normal/low priority notifications into per-channel batches.

        Notifications already in a pending or processing batch are left
        alone. Each channel is chunked into batches of at most batch_size.
        """
        queued: List[Notification] = []
        for priority, multiple in COLLECTED_PRIORITIES:
            queued.extend(
                await self.notification_storage.get_queued(priority=priority, limit=self.batch_size * multiple)
            )
        if not queued:
            return []

        taken = await self.batch_storage.get_open_member_ids([n.id for n in queued])
        by_channel: Dict[NotificationChannel, List[str]] = {}
        for notification in queued:
            if notification.id in taken:
                continue
            by_channel.setdefault(notification.channel, []).append(notification.id)

        batches = []
        stamp = utcnow().isoformat()
        for channel, ids in by_channel.items():
            for start in range(0, len(ids), self.batch_size):
                batch = await self.create_batch(f"Auto {channel.value} {stamp}")
                batch = await self.batch_storage.add_members(batch.id, ids[start:start + self.batch_size])
                batches.append(batch)
        if batches:
            logger.info(f"Collected {sum(b.total_count for b in batches)} notification(s) into {len(batches)} batch(es)")
        return batches

    async def collect_and_process(self) -> List[NotificationBatch]:
        """Collect and process each new batch with its channel's concurrency and pacing"""
        processed = []
        for batch in await self.collect():
            channel = await self._batch_channel(batch.id)
            concurrency = self.concurrency
            item_delay_ms = 0
            if channel:
                concurrency = self.channel_concurrency.get(channel.value, self.concurrency)
                item_delay_ms = self.item_delays_ms.get(channel, 0)
            try:
                processed.append(await self.process(batch.id, concurrency, item_delay_ms))
            except Exception as e:
                logger.error(f"Collected batch {batch.id} failed: {e}")
        return processed

    async def _batch_channel(self, batch_id: str) -> Optional[NotificationChannel]:
        for notification_id in await self.batch_storage.get_member_ids(batch_id):
            notification = await self.notification_storage.get_by_id(notification_id)
            if notification:
                return notification.channel
        return None

    async def collect_once(self) -> List[NotificationBatch]:
        """One collection pass; skipped when another node owns it"""
        try:
            owner = await self.dispatch_queue.broker.acquire_lock(
                COLLECT_LOCK, max(1, self.collection_interval - 1)
            )
        except BrokerUnavailable as e:
            logger.warning(f"Batch collection skipped, broker unavailable: {e}")
            return []
        if not owner:
            logger.debug("Batch collection lock held elsewhere, skipping")
            return []
        return await self.collect_and_process()

    async def start_collection(self):
        if self._collector and not self._collector.done():
            logger.warning("Batch collection is already running")
            return
        self._collector = asyncio.create_task(self._collection_loop())
        logger.info(f"Batch collection started (interval={self.collection_interval}s)")

    async def stop_collection(self):
        if self._collector and not self._collector.done():
            self._collector.cancel()
            try:
                await self._collector
            except asyncio.CancelledError:
                pass
            logger.info("Batch collection stopped")
        self._collector = None

    async def _collection_loop(self):
        while True:
            try:
                await self.collect_once()
            except Exception as e:
                logger.error(f"Batch collection error: {e}")

            try:
                await asyncio.sleep(self.collection_interval)
            except asyncio.CancelledError:
                break

    # ============================================
    # Broker controls / health
    # ============================================

    async def pause(self):
        await self.dispatch_queue.pause()

    async def resume(self):
        await self.dispatch_queue.resume()

    async def get_metrics(self) -> QueueMetrics:
        return await self.dispatch_queue.get_metrics()

    async def health(self) -> Dict[str, Any]:
        """healthy / degraded / unhealthy from broker reachability and counters"""
        broker = self.dispatch_queue.broker
        connected = await broker.ping()
        metrics: Optional[QueueMetrics] = None
        if connected:
            try:
                metrics = await broker.get_metrics()
            except Exception as e:
                logger.warning(f"Queue metrics unavailable: {e}")

        if metrics is None:
            status = "unhealthy"
            metrics = QueueMetrics(broker=broker.name)
        elif metrics.failed > metrics.completed / 2 or metrics.waiting > DEGRADED_QUEUE_DEPTH:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "queue": {
                "connected": connected,
                "broker": broker.name,
                "queue_depth": metrics.waiting,
            },
            "workers": {
                "active": metrics.active,
                "total": self.dispatch_queue.concurrency,
            },
            "failed": metrics.failed,
            "completed": metrics.completed,
        }
