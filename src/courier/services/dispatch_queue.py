"""
Priority Dispatch Queue

Bridges stored notifications and the queue broker:
- enqueue: submit one notification with its priority weight and release delay
- drain_queued: periodic sweep re-discovering due queued rows
- process: one delivery attempt through the dispatcher and state machine
- reap_stuck: watchdog for attempts left in 'processing'
"""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Iterable, Optional, TYPE_CHECKING

from .state_machine import DeliveryStateMachine
from ..errors import BrokerUnavailable, ChannelDispatchError, InvalidTransition
from ..models.notification import (
    Notification,
    NotificationPriority,
    NotificationStatus,
    PRIORITY_ORDER,
    utcnow,
)
from ..queue.broker import JobOptions, QueueBroker, QueueMetrics, backoff_delay_ms
from ..storage.notification_storage import NotificationStorage

if TYPE_CHECKING:
    from .confirmation import ConfirmationHandler
    from ..notifications.registry import ChannelDispatcher

logger = logging.getLogger("courier.services.dispatch_queue")

PROCESS_JOB = "process-notification"
SWEEP_LOCK = "sweep"

# Default release delay per priority, spreads low-priority bulk traffic
RELEASE_DELAYS_MS: Dict[NotificationPriority, int] = {
    NotificationPriority.CRITICAL: 0,
    NotificationPriority.URGENT: 100,
    NotificationPriority.HIGH: 1000,
    NotificationPriority.NORMAL: 5000,
    NotificationPriority.LOW: 30000,
}


def job_id_for(notification_id: str, attempts: int) -> str:
    """One broker job per notification attempt; repeated sweeps dedupe on it"""
    return f"{notification_id}:{attempts}"


class PriorityDispatchQueue:
    """
    Priority-aware dispatch pipeline.

    The broker's own retries cover infrastructure failures of the job
    handler (storage unreachable, crashes). Delivery failures are business
    retries: they go through the state machine and re-enqueue while the
    notification has attempts left.
    """

    def __init__(
        self,
        storage: NotificationStorage,
        state_machine: DeliveryStateMachine,
        dispatcher: ChannelDispatcher,
        broker: QueueBroker,
        confirmation: ConfirmationHandler,
        concurrency: int = 5,
        broker_attempts: int = 3,
        backoff_ms: int = 2000,
        sweep_interval: int = 30,
        sweep_limit: int = 100,
        sweep_enabled: bool = True,
        stuck_timeout: int = 120,
        release_delays: Optional[Dict[NotificationPriority, int]] = None,
    ):
        self.storage = storage
        self.state_machine = state_machine
        self.dispatcher = dispatcher
        self.broker = broker
        self.confirmation = confirmation
        self.concurrency = concurrency
        self.broker_attempts = broker_attempts
        self.backoff_ms = backoff_ms
        self.sweep_interval = sweep_interval
        self.sweep_limit = sweep_limit
        self.sweep_enabled = sweep_enabled
        self.stuck_timeout = stuck_timeout
        self.release_delays = dict(RELEASE_DELAYS_MS)
        if release_delays:
            self.release_delays.update(release_delays)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ============================================
    # Enqueue / sweep
    # ============================================

    async def enqueue(
        self,
        notification_id: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        delay_ms: Optional[int] = None,
        attempts: Optional[int] = None,
        attempt_number: int = 0,
    ) -> str:
        """
        Submit a notification to the broker.

        delay_ms defaults to the priority's release delay. Raises
        BrokerUnavailable when the broker cannot accept the job.
        """
        priority = NotificationPriority(priority)
        options = JobOptions(
            priority=priority.weight,
            delay_ms=self.release_delays[priority] if delay_ms is None else max(0, int(delay_ms)),
            attempts=attempts or self.broker_attempts,
            backoff_ms=self.backoff_ms,
            job_id=job_id_for(notification_id, attempt_number),
        )
        job_id = await self.broker.add(PROCESS_JOB, {"notification_id": notification_id}, options)
        logger.debug(f"Enqueued {notification_id} as job {job_id} (priority={priority.value}, delay={options.delay_ms}ms)")
        return job_id

    async def drain_queued(self, priority_order: Iterable[NotificationPriority] = PRIORITY_ORDER) -> int:
        """
        Enqueue every due queued notification, most urgent class first.

        Stops early if the broker becomes unavailable; the next sweep
        picks up whatever was left.
        """
        enqueued = 0
        for priority in priority_order:
            due = await self.storage.get_queued(priority=priority, limit=self.sweep_limit)
            for notification in due:
                try:
                    await self.enqueue(
                        notification.id,
                        notification.priority,
                        attempt_number=notification.attempts,
                    )
                    enqueued += 1
                except BrokerUnavailable as e:
                    logger.warning(f"Sweep stopped, broker unavailable: {e}")
                    return enqueued
        if enqueued:
            logger.info(f"Sweep enqueued {enqueued} notification(s)")
        return enqueued

    # ============================================
    # Processing
    # ============================================

    async def handle_job(self, payload: dict) -> bool:
        """Broker job handler"""
        return await self.process(payload["notification_id"])

    async def process(self, notification_id: str) -> bool:
        """
        Drive one delivery attempt.

        Returns True when the notification reached 'sent'. Delivery
        failures are recorded, never raised.
        """
        notification = await self.storage.get_by_id(notification_id)
        if notification is None:
            logger.warning(f"Notification {notification_id} not found, job dropped")
            return False
        if notification.status != NotificationStatus.QUEUED:
            logger.info(f"Notification {notification_id} is {notification.status.value}, skipped")
            return False
        if not notification.is_due():
            logger.info(f"Notification {notification_id} scheduled for {notification.scheduled_at}, skipped")
            return False

        try:
            notification = await self.state_machine.start_attempt(notification)
        except InvalidTransition as e:
            logger.info(f"Notification {notification_id} claimed elsewhere: {e}")
            return False

        try:
            await self.dispatcher.dispatch(notification)
        except ChannelDispatchError as e:
            logger.error(f"Delivery attempt failed for {notification_id}: {e}")
            await self._resolve_failure(notification, e)
            return False

        try:
            notification = await self.state_machine.record_success(notification)
        except InvalidTransition as e:
            logger.warning(f"Send of {notification_id} completed after it was reaped: {e}")
            return False

        await self.confirmation.schedule(notification)
        return True

    async def reap_stuck(self) -> int:
        """Force attempts stuck in 'processing' past the timeout through the failure path"""
        cutoff = utcnow() - timedelta(seconds=self.stuck_timeout)
        stuck = await self.storage.get_stuck_processing(cutoff, limit=self.sweep_limit)
        reaped = 0
        for notification in stuck:
            error = ChannelDispatchError(
                notification.channel.value,
                f"No outcome recorded within {self.stuck_timeout}s",
                code="TIMEOUT",
                retryable=True,
            )
            if await self._resolve_failure(notification, error):
                reaped += 1
        if reaped:
            logger.warning(f"Watchdog reaped {reaped} stuck notification(s)")
        return reaped

    async def _resolve_failure(self, notification: Notification, error: ChannelDispatchError) -> bool:
        try:
            updated = await self.state_machine.record_failure(notification, error)
        except InvalidTransition as e:
            logger.info(f"Failure of {notification.id} already resolved: {e}")
            return False

        if updated.status == NotificationStatus.QUEUED:
            delay = backoff_delay_ms(self.backoff_ms, updated.attempts)
            try:
                await self.enqueue(
                    updated.id, updated.priority, delay_ms=delay, attempt_number=updated.attempts
                )
            except BrokerUnavailable as e:
                logger.warning(f"Retry of {updated.id} left for the next sweep: {e}")
        return True

    # ============================================
    # Broker controls
    # ============================================

    async def pause(self):
        await self.broker.pause()

    async def resume(self):
        await self.broker.resume()

    async def get_metrics(self) -> QueueMetrics:
        return await self.broker.get_metrics()

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self, consume: bool = True):
        """Start consuming jobs and the periodic sweep"""
        if self._running:
            logger.warning("Dispatch queue is already running")
            return

        if consume:
            await self.broker.process(PROCESS_JOB, self.concurrency, self.handle_job)

        self._running = True
        if self.sweep_enabled:
            self._task = asyncio.create_task(self._sweep_loop())
            logger.info(f"Dispatch sweep started (interval={self.sweep_interval}s)")
        else:
            logger.info("Dispatch sweep is disabled (SWEEP_ENABLED=false)")

    async def stop(self):
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Dispatch queue stopped")

    async def sweep_once(self) -> int:
        """One watchdog pass plus one drain; skipped when another node owns the sweep"""
        try:
            owner = await self.broker.acquire_lock(SWEEP_LOCK, max(1, self.sweep_interval - 1))
        except BrokerUnavailable as e:
            logger.warning(f"Sweep skipped, broker unavailable: {e}")
            return 0
        if not owner:
            logger.debug("Sweep lock held elsewhere, skipping")
            return 0
        await self.reap_stuck()
        return await self.drain_queued()

    async def _sweep_loop(self):
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Sweep error: {e}")

            try:
                await asyncio.sleep(self.sweep_interval)
            except asyncio.CancelledError:
                break
