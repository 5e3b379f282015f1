import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from arq import Retry

from courier.errors import BrokerUnavailable
from courier.queue import InlineBroker, JobOptions, backoff_delay_ms, create_broker
from courier.queue.arq_broker import ArqBroker, PAUSE_KEY

from fakes import FakeRedis


def test_backoff_is_exponential():
    assert [backoff_delay_ms(2000, a) for a in (1, 2, 3, 4)] == [2000, 4000, 8000, 16000]


def test_create_broker():
    assert isinstance(create_broker("inline"), InlineBroker)
    assert isinstance(create_broker("arq", redis_url="redis://localhost:6379/0", queue_name="q"), ArqBroker)
    with pytest.raises(ValueError):
        create_broker("kafka")


# ============================================
# Inline broker
# ============================================

@pytest.mark.asyncio
async def test_inline_requires_open():
    broker = InlineBroker()
    assert await broker.ping() is False
    with pytest.raises(BrokerUnavailable):
        await broker.add("job", {})


@pytest.mark.asyncio
async def test_inline_runs_by_priority_then_fifo():
    broker = InlineBroker()
    await broker.open()
    seen = []

    async def handler(payload):
        seen.append(payload["n"])

    try:
        await broker.add("job", {"n": "low"}, JobOptions(priority=5))
        await broker.add("job", {"n": "normal-1"}, JobOptions(priority=4))
        await broker.add("job", {"n": "normal-2"}, JobOptions(priority=4))
        await broker.add("job", {"n": "critical"}, JobOptions(priority=1))
        await broker.process("job", 1, handler)
        await broker.join(timeout=2)
    finally:
        await broker.close()

    assert seen == ["critical", "normal-1", "normal-2", "low"]


@pytest.mark.asyncio
async def test_inline_delay_holds_job():
    broker = InlineBroker()
    await broker.open()
    seen = []

    async def handler(payload):
        seen.append(payload["n"])

    try:
        await broker.process("job", 2, handler)
        await broker.add("job", {"n": "later"}, JobOptions(priority=1, delay_ms=80))
        await broker.add("job", {"n": "now"}, JobOptions(priority=5))
        await asyncio.sleep(0.03)
        assert seen == ["now"]
        assert (await broker.get_metrics()).delayed == 1
        await broker.join(timeout=2)
    finally:
        await broker.close()

    assert seen == ["now", "later"]


@pytest.mark.asyncio
async def test_inline_retries_failed_handler():
    broker = InlineBroker()
    await broker.open()
    calls = []

    async def handler(payload):
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("database unreachable")

    try:
        await broker.process("job", 1, handler)
        await broker.add("job", {}, JobOptions(attempts=3, backoff_ms=5))
        await broker.join(timeout=2)
        metrics = await broker.get_metrics()
    finally:
        await broker.close()

    assert len(calls) == 3
    assert metrics.completed == 1
    assert metrics.failed == 0


@pytest.mark.asyncio
async def test_inline_gives_up_after_attempts():
    broker = InlineBroker()
    await broker.open()

    async def handler(payload):
        raise RuntimeError("always")

    try:
        await broker.process("job", 1, handler)
        await broker.add("job", {}, JobOptions(attempts=2, backoff_ms=5))
        await broker.join(timeout=2)
        metrics = await broker.get_metrics()
    finally:
        await broker.close()

    assert metrics.failed == 1


@pytest.mark.asyncio
async def test_inline_dedupes_pending_job_ids():
    broker = InlineBroker()
    await broker.open()
    try:
        first = await broker.add("job", {}, JobOptions(job_id="n1:0"))
        second = await broker.add("job", {}, JobOptions(job_id="n1:0"))
        metrics = await broker.get_metrics()
    finally:
        await broker.close()

    assert first == second == "n1:0"
    assert metrics.waiting == 1


# ============================================
# Arq broker
# ============================================

def _arq_broker(handler, attempts=3):
    broker = ArqBroker("redis://localhost:6379/0", "courier:test", run_worker=False,
                       attempts=attempts, backoff_ms=10)
    broker._redis = FakeRedis()
    broker._handlers["job"] = handler
    return broker


@pytest.mark.asyncio
async def test_arq_run_job_success_clears_tries():
    async def handler(payload):
        return payload["n"]

    broker = _arq_broker(handler)
    assert await broker.run_job({"job_id": "n1:0"}, "job", {"n": 7}) == 7
    assert broker._redis.values == {}
    assert broker._completed == 1


@pytest.mark.asyncio
async def test_arq_run_job_retries_with_backoff_then_raises():
    async def handler(payload):
        raise RuntimeError("storage down")

    broker = _arq_broker(handler, attempts=2)
    ctx = {"job_id": "n1:0"}

    with pytest.raises(Retry) as exc:
        await broker.run_job(ctx, "job", {})
    assert exc.value.defer_score == 10

    with pytest.raises(RuntimeError):
        await broker.run_job(ctx, "job", {})
    assert broker._failed == 1


@pytest.mark.asyncio
async def test_arq_pause_defers_without_consuming_tries():
    calls = []

    async def handler(payload):
        calls.append(payload)

    broker = _arq_broker(handler)
    await broker.pause()
    assert broker._redis.values[PAUSE_KEY] == "1"

    with pytest.raises(Retry):
        await broker.run_job({"job_id": "n1:0"}, "job", {})
    assert calls == []
    assert not any(key.startswith("courier:queue:tries") for key in broker._redis.values)

    await broker.resume()
    await broker.run_job({"job_id": "n1:0"}, "job", {})
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_arq_lock_single_owner():
    broker = _arq_broker(None)
    assert await broker.acquire_lock("sweep", 10) is True
    assert await broker.acquire_lock("sweep", 10) is False
    assert await broker.ping() is True


@pytest.mark.asyncio
async def test_arq_not_open():
    broker = ArqBroker("redis://127.0.0.1:1/0", "courier:test")
    refused = AsyncMock(side_effect=OSError("Connect call failed"))
    with patch("courier.queue.arq_broker.create_pool", new=refused):
        assert await broker.ping() is False
        with pytest.raises(BrokerUnavailable):
            await broker.add("job", {})
    # one connection attempt per reconnect interval
    assert refused.await_count == 1


@pytest.mark.asyncio
async def test_arq_open_failure_raises_broker_unavailable():
    broker = ArqBroker("redis://127.0.0.1:1/0", "courier:test")
    with patch("courier.queue.arq_broker.create_pool", new=AsyncMock(side_effect=OSError("refused"))):
        with pytest.raises(BrokerUnavailable):
            await broker.open()


@pytest.mark.asyncio
async def test_arq_reconnects_lazily_once_redis_returns():
    redis = FakeRedis()
    pool = AsyncMock(side_effect=[OSError("Connect call failed"), redis])
    broker = ArqBroker("redis://127.0.0.1:1/0", "courier:test", run_worker=False, reconnect_interval=0)

    with patch("courier.queue.arq_broker.create_pool", new=pool):
        with pytest.raises(BrokerUnavailable):
            await broker.add("job", {}, JobOptions(job_id="n1:0"))
        assert await broker.add("job", {}, JobOptions(job_id="n1:0")) == "n1:0"

    assert "n1:0" in redis.jobs
    assert await broker.acquire_lock("sweep", 10) is True
    assert pool.await_count == 2


@pytest.mark.asyncio
async def test_arq_worker_starts_after_late_connect():
    pool = AsyncMock(side_effect=[OSError("Connect call failed"), FakeRedis()])
    broker = ArqBroker("redis://127.0.0.1:1/0", "courier:test", reconnect_interval=0)

    async def handler(payload):
        return True

    with patch("courier.queue.arq_broker.create_pool", new=pool), \
            patch.object(ArqBroker, "_start_worker") as start_worker:
        await broker.process("job", 2, handler)
        start_worker.assert_not_called()
        assert await broker.ping() is True
        start_worker.assert_called_once()

    assert broker._consumer == ("job", 2)


def test_worker_settings_drop_job_results():
    from courier.worker import WorkerSettings

    assert WorkerSettings.keep_result == 0


def test_worker_settings_register_process_job():
    from courier.services.dispatch_queue import PROCESS_JOB
    from courier.worker import WorkerSettings

    assert [f.name for f in WorkerSettings.functions] == [PROCESS_JOB]
    assert WorkerSettings.max_tries > WorkerSettings.max_jobs
