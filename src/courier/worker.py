"""
Courier Worker

Standalone arq worker for deployments that consume the notification queue
outside the API process:

    QUEUE_BROKER=arq QUEUE_CONSUME_IN_PROCESS=false courier   # API
    arq courier.worker.WorkerSettings                          # consumers
"""
import logging

from arq.connections import RedisSettings
from arq.worker import func

from .config import Config
from .queue.arq_broker import KEEP_RESULT_SECONDS, WORKER_MAX_TRIES, ArqBroker
from .services.dispatch_queue import PROCESS_JOB
from .services.engine_service import EngineService

logger = logging.getLogger("courier.worker")


async def startup(ctx):
    """Build the engine with an external-consumer arq broker"""
    broker = ArqBroker(
        redis_url=Config.REDIS_URL,
        queue_name=Config.QUEUE_NAME,
        run_worker=False,
        attempts=Config.MAX_RETRY_ATTEMPTS,
        backoff_ms=Config.BACKOFF_DELAY_MS,
    )
    engine = EngineService(broker=broker, consume=True)
    await engine.initialize()
    ctx["engine"] = engine
    logger.info(f"Courier worker ready (queue={Config.QUEUE_NAME})")


async def shutdown(ctx):
    engine = ctx.get("engine")
    if engine:
        await engine.close()
    logger.info("Courier worker stopped")


async def process_notification(ctx, payload: dict):
    engine: EngineService = ctx["engine"]
    return await engine.broker.run_job(ctx, PROCESS_JOB, payload)


class WorkerSettings:
    """arq worker settings"""
    functions = [func(process_notification, name=PROCESS_JOB)]
    redis_settings = RedisSettings.from_dsn(Config.REDIS_URL)
    queue_name = Config.QUEUE_NAME
    max_jobs = Config.PROCESSING_CONCURRENCY
    max_tries = WORKER_MAX_TRIES
    keep_result = KEEP_RESULT_SECONDS
    on_startup = startup
    on_shutdown = shutdown
