"""Tests for the Redis queue runtime against an in-process fake Redis.

Jobs are driven one step at a time through ``_next_job`` / ``_process`` so a
worker crash can be simulated by simply not processing a fetched job.
"""

import asyncio
from datetime import timedelta

import fakeredis
import pytest

from constants import (
    EXECUTION_STATUS_RUNNING,
    IMAGE_GENERATION_QUEUE,
    JOB_STATUS_ACTIVE,
    JOB_STATUS_RECOVERED,
)
from models.database import utc_now
from models.queue import BackoffPolicy, QueueConfig
from services.queue import JobRecoveryService, QueueManager
from services.queue.redis_runtime import RedisQueueRuntime
from services.queue.runtime import STATE_COMPLETED, STATE_DELAYED, STATE_FAILED, STATE_WAITING

QUEUE = IMAGE_GENERATION_QUEUE
NO_BACKOFF = {QUEUE: QueueConfig(attempts=3, backoff=BackoffPolicy("fixed", 0))}
LEASE = 0.2


@pytest.fixture
async def client():
    redis = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield redis
    await redis.aclose()


async def _double(job):
    return {"doubled": job.data["n"] * 2}


@pytest.fixture
def redis_runtime(client) -> RedisQueueRuntime:
    return RedisQueueRuntime(client, NO_BACKOFF, poll_timeout=0.05, lock_duration=LEASE)


async def test_job_completes_and_releases_its_lease(redis_runtime):
    redis_runtime.register(QUEUE, _double)
    job_id = await redis_runtime.enqueue(QUEUE, "generate-image", {"n": 2}, job_id="job-1")

    job = await redis_runtime._next_job(QUEUE)
    assert job.id == job_id
    assert await redis_runtime.is_active(QUEUE, job_id) is True

    await redis_runtime._process(job)

    stored = await redis_runtime.get_job(QUEUE, job_id)
    assert stored.state == STATE_COMPLETED
    assert stored.return_value == {"doubled": 4}
    assert await redis_runtime.is_active(QUEUE, job_id) is False
    assert await redis_runtime.is_live(QUEUE, job_id) is False
    assert (await redis_runtime.get_counts(QUEUE))[STATE_COMPLETED] == 1


async def test_failures_pass_through_the_delayed_set(redis_runtime):
    async def handler(job):
        raise RuntimeError("provider down")

    redis_runtime.register(QUEUE, handler)
    await redis_runtime.enqueue(QUEUE, "generate-image", {}, job_id="job-1")

    job = await redis_runtime._next_job(QUEUE)
    await redis_runtime._process(job)

    stored = await redis_runtime.get_job(QUEUE, "job-1")
    assert stored.state == STATE_DELAYED
    assert stored.attempts_made == 1
    assert await redis_runtime.is_live(QUEUE, "job-1") is True

    for _ in range(2):
        job = await redis_runtime._next_job(QUEUE)
        await redis_runtime._process(job)

    stored = await redis_runtime.get_job(QUEUE, "job-1")
    assert stored.state == STATE_FAILED
    assert stored.attempts_made == 3
    assert stored.failed_reason == "provider down"


async def test_waiting_job_is_live_but_not_active(redis_runtime):
    await redis_runtime.enqueue(QUEUE, "generate-image", {}, job_id="job-1")

    assert (await redis_runtime.get_job(QUEUE, "job-1")).state == STATE_WAITING
    assert await redis_runtime.is_live(QUEUE, "job-1") is True
    assert await redis_runtime.is_active(QUEUE, "job-1") is False


async def test_lease_lapses_when_the_worker_dies(redis_runtime, client):
    await redis_runtime.enqueue(QUEUE, "generate-image", {}, job_id="job-1")
    job = await redis_runtime._next_job(QUEUE)
    await redis_runtime._save_active(job)

    await asyncio.sleep(LEASE * 2)

    assert await client.sismember(f"queue:{QUEUE}:active", "job-1")
    assert await redis_runtime.is_active(QUEUE, "job-1") is False
    assert await redis_runtime.is_live(QUEUE, "job-1") is False

    await redis_runtime.drop_stalled(QUEUE, "job-1")

    stored = await redis_runtime.get_job(QUEUE, "job-1")
    assert stored.state == STATE_FAILED
    assert stored.failed_reason == "Job stalled: worker lease expired"
    assert not await client.sismember(f"queue:{QUEUE}:active", "job-1")


async def test_drop_stalled_leaves_a_leased_job_alone(redis_runtime):
    await redis_runtime.enqueue(QUEUE, "generate-image", {}, job_id="job-1")
    job = await redis_runtime._next_job(QUEUE)
    await redis_runtime._save_active(job)

    await redis_runtime.drop_stalled(QUEUE, "job-1")

    assert await redis_runtime.is_active(QUEUE, "job-1") is True


async def test_lease_is_renewed_while_the_handler_runs(redis_runtime):
    observed = []

    async def handler(job):
        await asyncio.sleep(LEASE * 2.5)
        observed.append(await redis_runtime.is_active(QUEUE, job.id))
        return "done"

    redis_runtime.register(QUEUE, handler)
    await redis_runtime.enqueue(QUEUE, "generate-image", {}, job_id="job-1")
    await redis_runtime._process(await redis_runtime._next_job(QUEUE))

    assert observed == [True]
    assert await redis_runtime.is_active(QUEUE, "job-1") is False


async def test_recovery_reenqueues_job_once_its_lease_lapses(redis_runtime, store, executions, settings):
    manager = QueueManager(redis_runtime, store)
    recovery = JobRecoveryService(manager, store, executions, settings)
    execution = await executions.create_execution("wf1")
    await executions.update_execution_status(execution.id, EXECUTION_STATUS_RUNNING)
    job_id = await manager.enqueue_node(execution.id, "wf1", "A", "imageGen", {"prompt": "cat"})

    # A worker takes the job and its process dies before finishing
    job = await redis_runtime._next_job(QUEUE)
    await redis_runtime._save_active(job)
    await manager.update_job_status(job_id, JOB_STATUS_ACTIVE)
    stale = utc_now() - timedelta(minutes=10)
    await store.update(job_id, updated_at=stale)

    assert await recovery.recover_stalled_jobs() == 0

    await asyncio.sleep(LEASE * 2)
    await store.update(job_id, updated_at=stale, last_heartbeat=None)

    assert await recovery.recover_stalled_jobs() == 1

    assert (await store.require(job_id)).status == JOB_STATUS_RECOVERED
    assert (await redis_runtime.get_job(QUEUE, job_id)).state == STATE_FAILED
    counts = await redis_runtime.get_counts(QUEUE)
    assert counts[STATE_WAITING] == 1
    assert counts[STATE_FAILED] == 1
    assert len(await manager.get_execution_jobs(execution.id)) == 2


async def test_recovery_leaves_a_waiting_redis_job_alone(redis_runtime, store, executions, settings):
    manager = QueueManager(redis_runtime, store)
    recovery = JobRecoveryService(manager, store, executions, settings)
    execution = await executions.create_execution("wf1")
    await executions.update_execution_status(execution.id, EXECUTION_STATUS_RUNNING)
    job_id = await manager.enqueue_node(execution.id, "wf1", "A", "imageGen", {})
    await store.update(job_id, updated_at=utc_now() - timedelta(minutes=10))

    assert await recovery.recover_stalled_jobs() == 0

    assert (await redis_runtime.get_counts(QUEUE))[STATE_WAITING] == 1
    assert len(await manager.get_execution_jobs(execution.id)) == 1
