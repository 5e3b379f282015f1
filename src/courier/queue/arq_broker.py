"""
Arq Broker

Redis-backed broker using arq. Jobs are consumed either by an in-process
arq Worker or by a separate `arq courier.worker.WorkerSettings` process.

The Redis connection is opened lazily: when Redis is down at startup the
broker stays closed and every later call retries the connection (at most
once per reconnect interval) until Redis comes back.
"""
import asyncio
import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.worker import Worker, func

from .broker import JobHandler, JobOptions, QueueBroker, QueueMetrics, backoff_delay_ms
from ..errors import BrokerUnavailable

logger = logging.getLogger("courier.queue.arq")

PAUSE_KEY = "courier:queue:paused"
TRIES_KEY = "courier:queue:tries:{job_id}"
LOCK_KEY = "courier:lock:{name}"

# Seconds between pause-flag checks for a deferred job
PAUSE_RECHECK_SECONDS = 5
# arq's own try ceiling; the real limit is enforced per job via TRIES_KEY
WORKER_MAX_TRIES = 10_000
# Finished jobs keep no result key, so a job id can be enqueued again at once
KEEP_RESULT_SECONDS = 0


class ArqBroker(QueueBroker):
    """Broker backed by arq / Redis"""

    name = "arq"

    def __init__(
        self,
        redis_url: str,
        queue_name: str,
        run_worker: bool = True,
        attempts: int = 3,
        backoff_ms: int = 2000,
        job_timeout: int = 300,
        reconnect_interval: float = 5.0,
    ):
        self.redis_url = redis_url
        self.queue_name = queue_name
        self.run_worker = run_worker
        self.job_timeout = job_timeout
        self.reconnect_interval = reconnect_interval
        self._redis: Optional[ArqRedis] = None
        self._handlers: Dict[str, JobHandler] = {}
        self._consumer: Optional[Tuple[str, int]] = None
        self._retry_options = JobOptions(attempts=attempts, backoff_ms=backoff_ms)
        self._worker: Optional[Worker] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._next_connect_at = 0.0
        self._active = 0
        self._completed = 0
        self._failed = 0

    async def open(self):
        await self._connect(conn_retries=5)

    async def _connect(self, conn_retries: int):
        settings = RedisSettings.from_dsn(self.redis_url)
        settings.conn_retries = conn_retries
        try:
            self._redis = await create_pool(settings, default_queue_name=self.queue_name)
        except Exception as e:
            self._next_connect_at = time.monotonic() + self.reconnect_interval
            raise BrokerUnavailable(f"Cannot connect to Redis at {self.redis_url}: {e}") from e
        logger.info(f"Arq broker connected (queue={self.queue_name})")
        self._start_worker()

    async def _connection(self) -> ArqRedis:
        """The open pool, reconnecting when the broker was never opened or lost Redis at boot"""
        if self._redis is None:
            if time.monotonic() < self._next_connect_at:
                raise BrokerUnavailable(f"Redis at {self.redis_url} is unavailable")
            await self._connect(conn_retries=0)
        return self._redis

    async def close(self):
        if self._worker:
            await self._worker.close()
            self._worker = None
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except (asyncio.CancelledError, Exception):
                pass
            self._worker_task = None
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        self._next_connect_at = 0.0
        logger.info("Arq broker closed")

    async def add(self, job_name: str, payload: dict, options: Optional[JobOptions] = None) -> str:
        # arq has no native priority; priority is carried by the defer delay
        options = options or JobOptions()
        job_id = options.job_id or uuid.uuid4().hex
        redis = await self._connection()
        try:
            job = await redis.enqueue_job(
                job_name,
                payload,
                _job_id=job_id,
                _queue_name=self.queue_name,
                _defer_by=timedelta(milliseconds=options.delay_ms) if options.delay_ms else None,
            )
        except Exception as e:
            raise BrokerUnavailable(f"Enqueue failed: {e}") from e
        # arq returns None when a job with this id is still queued or running
        return job.job_id if job else job_id

    async def process(self, job_name: str, concurrency: int, handler: JobHandler):
        self._handlers[job_name] = handler
        if not self.run_worker:
            logger.info(f"Handler for '{job_name}' registered; consumption runs in an external worker")
            return

        self._consumer = (job_name, max(1, int(concurrency)))
        if self._redis is None:
            try:
                await self._connection()
            except BrokerUnavailable as e:
                logger.warning(f"Arq worker for '{job_name}' starts once Redis is reachable: {e}")
            return
        self._start_worker()

    def _start_worker(self):
        if self._consumer is None or self._worker is not None or self._redis is None:
            return
        job_name, concurrency = self._consumer

        async def run(ctx, payload: dict):
            return await self.run_job(ctx, job_name, payload)

        self._worker = Worker(
            functions=[func(run, name=job_name)],
            queue_name=self.queue_name,
            redis_pool=self._redis,
            max_jobs=concurrency,
            max_tries=WORKER_MAX_TRIES,
            job_timeout=self.job_timeout,
            keep_result=KEEP_RESULT_SECONDS,
            handle_signals=False,
        )
        self._worker_task = asyncio.create_task(self._worker.async_run())
        logger.info(f"Arq worker consuming '{job_name}' (concurrency={concurrency})")

    async def run_job(self, ctx: Dict[str, Any], job_name: str, payload: dict) -> Any:
        """
        Execute one arq job through the registered handler.

        While paused, the job is deferred without consuming a try. Handler
        failures are retried with exponential backoff up to the job's attempts.
        """
        if await self.is_paused():
            raise Retry(defer=PAUSE_RECHECK_SECONDS)

        handler = self._handlers.get(job_name)
        if handler is None:
            raise LookupError(f"No handler registered for job '{job_name}'")

        redis = await self._connection()
        options = self._retry_options
        job_id = ctx.get("job_id") or "unknown"
        tries_key = TRIES_KEY.format(job_id=job_id)
        attempt = int(await redis.incr(tries_key))
        await redis.expire(tries_key, 86400)

        self._active += 1
        try:
            result = await handler(payload)
        except Exception as e:
            if attempt < options.attempts:
                delay = backoff_delay_ms(options.backoff_ms, attempt)
                logger.warning(f"Job {job_id} attempt {attempt} failed: {e}; retrying in {delay}ms")
                raise Retry(defer=timedelta(milliseconds=delay)) from e
            self._failed += 1
            await redis.delete(tries_key)
            logger.error(f"Job {job_id} failed after {attempt} attempt(s): {e}")
            raise
        finally:
            self._active -= 1

        self._completed += 1
        await redis.delete(tries_key)
        return result

    async def pause(self):
        await (await self._connection()).set(PAUSE_KEY, "1")
        logger.info("Arq broker paused")

    async def resume(self):
        await (await self._connection()).delete(PAUSE_KEY)
        logger.info("Arq broker resumed")

    async def is_paused(self) -> bool:
        return bool(await (await self._connection()).exists(PAUSE_KEY))

    async def get_metrics(self) -> QueueMetrics:
        # arq keeps its queue in a sorted set; deferred jobs share it
        waiting = await (await self._connection()).zcard(self.queue_name)
        return QueueMetrics(
            waiting=int(waiting),
            active=self._active,
            completed=self._completed,
            failed=self._failed,
            paused=await self.is_paused(),
            broker=self.name,
        )

    async def ping(self) -> bool:
        try:
            redis = await self._connection()
            return bool(await redis.ping())
        except BrokerUnavailable as e:
            logger.warning(f"Redis unavailable: {e}")
            return False
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def acquire_lock(self, name: str, ttl_seconds: int) -> bool:
        token = uuid.uuid4().hex
        redis = await self._connection()
        acquired = await redis.set(LOCK_KEY.format(name=name), token, nx=True, ex=ttl_seconds)
        return bool(acquired)
