"""
Courier Queue Brokers

Abstract broker contract plus inline (asyncio) and arq (Redis) backends.
"""
from .broker import (
    InlineBroker,
    JobHandler,
    JobOptions,
    QueueBroker,
    QueueMetrics,
    backoff_delay_ms,
)

__all__ = [
    'InlineBroker',
    'JobHandler',
    'JobOptions',
    'QueueBroker',
    'QueueMetrics',
    'backoff_delay_ms',
    'create_broker',
]


def create_broker(
    kind: str,
    redis_url: str = "",
    queue_name: str = "",
    run_worker: bool = True,
    attempts: int = 3,
    backoff_ms: int = 2000,
) -> QueueBroker:
    """Build a broker by name ('inline' or 'arq')"""
    if kind == "arq":
        from .arq_broker import ArqBroker
        return ArqBroker(
            redis_url=redis_url,
            queue_name=queue_name,
            run_worker=run_worker,
            attempts=attempts,
            backoff_ms=backoff_ms,
        )
    if kind == "inline":
        return InlineBroker()
    raise ValueError(f"Unknown queue broker: {kind}")
