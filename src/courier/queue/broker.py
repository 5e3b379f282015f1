"""
Queue Broker

Abstract enqueue/consume contract used by the dispatch queue, and the
in-process asyncio implementation used when no external broker is set up.
"""
import asyncio
import heapq
import itertools
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..errors import BrokerUnavailable

logger = logging.getLogger("courier.queue.broker")

JobHandler = Callable[[dict], Awaitable[Any]]


def backoff_delay_ms(base_ms: int, attempt: int) -> int:
    """Exponential backoff: base, 2*base, 4*base, ... for attempt 1, 2, 3, ..."""
    return int(base_ms * (2 ** max(0, attempt - 1)))


@dataclass
class JobOptions:
    """Per-job scheduling options"""
    priority: int = 4                    # lower is serviced first
    delay_ms: int = 0
    attempts: int = 3                    # broker-level tries of the handler
    backoff_ms: int = 2000
    job_id: Optional[str] = None         # duplicate ids are ignored while pending


@dataclass
class QueueMetrics:
    """Broker counters"""
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False
    broker: str = ""

    def to_dict(self) -> dict:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "paused": self.paused,
            "broker": self.broker,
        }


class QueueBroker(ABC):
    """Abstract job broker with explicit open/close lifecycle"""

    name: str = "abstract"

    @abstractmethod
    async def open(self):
        """Connect; raises BrokerUnavailable when the backend is unreachable"""
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def add(self, job_name: str, payload: dict, options: Optional[JobOptions] = None) -> str:
        """Submit a job; returns its job id"""
        ...

    @abstractmethod
    async def process(self, job_name: str, concurrency: int, handler: JobHandler):
        """Start consuming `job_name` jobs with at most `concurrency` in flight"""
        ...

    @abstractmethod
    async def pause(self):
        ...

    @abstractmethod
    async def resume(self):
        ...

    @abstractmethod
    async def get_metrics(self) -> QueueMetrics:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """True when the backend is reachable"""
        ...

    async def acquire_lock(self, name: str, ttl_seconds: int) -> bool:
        """Single-owner lock for periodic work; local brokers always own it"""
        return True


@dataclass(order=True)
class _Job:
    sort_key: Tuple[int, int]
    id: str = field(compare=False, default="")
    name: str = field(compare=False, default="")
    payload: dict = field(compare=False, default_factory=dict)
    options: JobOptions = field(compare=False, default_factory=JobOptions)
    attempts_made: int = field(compare=False, default=0)


class InlineBroker(QueueBroker):
    """
    In-process broker built on asyncio.

    Jobs become eligible after their delay; among eligible jobs the lowest
    priority number runs first. Failed handlers are retried with
    exponential backoff up to `options.attempts` tries.
    """

    name = "inline"

    def __init__(self):
        self._seq = itertools.count()
        self._ready: List[_Job] = []                       # heap by (priority, seq)
        self._delayed: List[Tuple[float, int, _Job]] = []  # heap by ready time
        self._pending_ids: Set[str] = set()
        self._handlers: Dict[str, JobHandler] = {}
        self._concurrency = 1
        self._active = 0
        self._completed = 0
        self._failed = 0
        self._paused = False
        self._open = False
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._pump_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    async def open(self):
        self._open = True
        logger.info("Inline broker opened")

    async def close(self):
        self._open = False
        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Inline broker closed")

    async def add(self, job_name: str, payload: dict, options: Optional[JobOptions] = None) -> str:
        if not self._open:
            raise BrokerUnavailable("Inline broker is not open")
        options = options or JobOptions()
        job_id = options.job_id or uuid.uuid4().hex
        if job_id in self._pending_ids:
            logger.debug(f"Job {job_id} already pending, skipped")
            return job_id

        self._pending_ids.add(job_id)
        job = _Job(sort_key=(options.priority, next(self._seq)), id=job_id,
                   name=job_name, payload=dict(payload), options=options)
        self._schedule(job, options.delay_ms)
        return job_id

    async def process(self, job_name: str, concurrency: int, handler: JobHandler):
        self._handlers[job_name] = handler
        self._concurrency = max(1, int(concurrency))
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())
        self._wakeup.set()
        logger.info(f"Inline broker consuming '{job_name}' (concurrency={self._concurrency})")

    async def pause(self):
        self._paused = True
        logger.info("Inline broker paused")

    async def resume(self):
        self._paused = False
        self._wakeup.set()
        logger.info("Inline broker resumed")

    async def get_metrics(self) -> QueueMetrics:
        return QueueMetrics(
            waiting=len(self._ready),
            active=self._active,
            completed=self._completed,
            failed=self._failed,
            delayed=len(self._delayed),
            paused=self._paused,
            broker=self.name,
        )

    async def ping(self) -> bool:
        return self._open

    async def join(self, timeout: Optional[float] = None):
        """Wait until no job is waiting, delayed or running"""
        async def _wait():
            while self._ready or self._delayed or self._active:
                self._idle.clear()
                await self._idle.wait()
        await asyncio.wait_for(_wait(), timeout)

    # ============================================
    # Internals
    # ============================================

    def _schedule(self, job: _Job, delay_ms: int):
        self._idle.clear()
        if delay_ms > 0:
            heapq.heappush(self._delayed, (time.monotonic() + delay_ms / 1000, next(self._seq), job))
        else:
            heapq.heappush(self._ready, job)
        self._wakeup.set()

    def _promote_due(self):
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, job)

    def _next_due_in(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - time.monotonic())

    async def _pump(self):
        while True:
            self._promote_due()
            if self._ready and not self._paused and self._active < self._concurrency:
                job = heapq.heappop(self._ready)
                self._active += 1
                task = asyncio.create_task(self._run(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                continue

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), self._next_due_in())
            except asyncio.TimeoutError:
                pass

    async def _run(self, job: _Job):
        handler = self._handlers.get(job.name)
        retried = False
        try:
            if handler is None:
                raise LookupError(f"No handler registered for job '{job.name}'")
            job.attempts_made += 1
            await handler(job.payload)
            self._completed += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if handler is not None and job.attempts_made < job.options.attempts:
                delay = backoff_delay_ms(job.options.backoff_ms, job.attempts_made)
                logger.warning(
                    f"Job {job.id} attempt {job.attempts_made}/{job.options.attempts} failed: {e}; "
                    f"retrying in {delay}ms"
                )
                retried = True
                self._schedule(job, delay)
            else:
                self._failed += 1
                logger.error(f"Job {job.id} failed after {job.attempts_made} attempt(s): {e}")
        finally:
            self._active -= 1
            if not retried:
                self._pending_ids.discard(job.id)
            if not (self._ready or self._delayed or self._active):
                self._idle.set()
            self._wakeup.set()
