"""Redis-backed queue runtime (redis.asyncio).

Key layout per queue ``q``:

    queue:{q}:wait       ZSET  job ids scored by priority, then enqueue order
    queue:{q}:delayed    ZSET  job ids scored by ready-at (ms)
    queue:{q}:active     SET   job ids being processed
    queue:{q}:lock:{id}  STR   lease of the worker holding an active job (PX ttl)
    queue:{q}:completed  ZSET  job ids scored by finish time (ms)
    queue:{q}:failed     ZSET  job ids scored by finish time (ms)
    queue:{q}:seq        STR   enqueue counter
    queue:{q}:job:{id}   HASH  job fields, expired after the retention window
"""

import asyncio
import json
import time
from typing import Any, Dict, Optional

import redis.asyncio as redis

from constants import PRIORITY_NORMAL
from core.logging import get_logger
from models.queue import QueueConfig
from services.queue.runtime import (
    JobOptions,
    QueueJob,
    QueueRuntime,
    STATE_ACTIVE,
    STATE_COMPLETED,
    STATE_DELAYED,
    STATE_FAILED,
    STATE_WAITING,
)

logger = get_logger(__name__)

# Leaves room for ~10^12 enqueues per priority level
PRIORITY_SCALE = 10 ** 12


class RedisQueueRuntime(QueueRuntime):
    """Durable runtime; any number of processes may run workers on the same queues."""

    def __init__(self, client: redis.Redis, queue_configs: Optional[Dict[str, QueueConfig]] = None,
                 poll_timeout: float = 1.0, prefix: str = "queue", lock_duration: float = 30.0):
        super().__init__(queue_configs)
        self.redis = client
        self.poll_timeout = poll_timeout
        self.lock_duration = lock_duration
        self.prefix = prefix

    def _key(self, queue_name: str, suffix: str) -> str:
        return f"{self.prefix}:{queue_name}:{suffix}"

    def _job_key(self, queue_name: str, job_id: str) -> str:
        return self._key(queue_name, f"job:{job_id}")

    def _lock_key(self, queue_name: str, job_id: str) -> str:
        return self._key(queue_name, f"lock:{job_id}")

    @property
    def _lock_ms(self) -> int:
        return max(1, int(self.lock_duration * 1000))

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    async def enqueue(self, queue_name: str, name: str, data: Dict[str, Any],
                      job_id: Optional[str] = None, priority: int = PRIORITY_NORMAL) -> str:
        if job_id:
            state = await self.redis.hget(self._job_key(queue_name, job_id), "state")
            if state in (STATE_WAITING, STATE_DELAYED, STATE_ACTIVE):
                return job_id

        job = self._new_job(queue_name, name, data, job_id, priority)
        seq = await self.redis.incr(self._key(queue_name, "seq"))
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._job_key(queue_name, job.id))
            pipe.hset(self._job_key(queue_name, job.id), mapping=self._serialize(job))
            pipe.zadd(self._key(queue_name, "wait"), {job.id: priority * PRIORITY_SCALE + seq})
            await pipe.execute()
        return job.id

    def _serialize(self, job: QueueJob) -> Dict[str, str]:
        return {
            "name": job.name,
            "data": json.dumps(job.data, default=str),
            "attempts": str(job.opts.attempts),
            "priority": str(job.opts.priority),
            "attempts_made": str(job.attempts_made),
            "state": job.state,
            "progress": json.dumps(job.progress),
            "return_value": json.dumps(job.return_value, default=str),
            "failed_reason": job.failed_reason or "",
            "timestamp": str(job.timestamp),
            "processed_on": str(job.processed_on or ""),
            "finished_on": str(job.finished_on or ""),
        }

    def _deserialize(self, queue_name: str, job_id: str, raw: Dict[str, str]) -> QueueJob:
        return QueueJob(
            id=job_id,
            name=raw.get("name", ""),
            queue_name=queue_name,
            data=json.loads(raw.get("data") or "{}"),
            opts=JobOptions(attempts=int(raw.get("attempts") or 1),
                            priority=int(raw.get("priority") or PRIORITY_NORMAL)),
            attempts_made=int(raw.get("attempts_made") or 0),
            state=raw.get("state", STATE_WAITING),
            progress=json.loads(raw.get("progress") or "{}"),
            return_value=json.loads(raw.get("return_value") or "null"),
            failed_reason=raw.get("failed_reason") or None,
            timestamp=float(raw.get("timestamp") or time.time()),
            processed_on=float(raw["processed_on"]) if raw.get("processed_on") else None,
            finished_on=float(raw["finished_on"]) if raw.get("finished_on") else None,
            _runtime=self,
        )

    async def get_job(self, queue_name: str, job_id: str) -> Optional[QueueJob]:
        raw = await self.redis.hgetall(self._job_key(queue_name, job_id))
        if not raw:
            return None
        return self._deserialize(queue_name, job_id, raw)

    async def get_counts(self, queue_name: str) -> Dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key(queue_name, "wait"))
            pipe.scard(self._key(queue_name, "active"))
            pipe.zcard(self._key(queue_name, "completed"))
            pipe.zcard(self._key(queue_name, "failed"))
            pipe.zcard(self._key(queue_name, "delayed"))
            waiting, active, completed, failed, delayed = await pipe.execute()
        return {
            STATE_WAITING: waiting,
            STATE_ACTIVE: active,
            STATE_COMPLETED: completed,
            STATE_FAILED: failed,
            STATE_DELAYED: delayed,
        }

    async def _promote_delayed(self, queue_name: str) -> None:
        """Move due delayed jobs back to the wait set; zrem decides the winner across workers."""
        delayed_key = self._key(queue_name, "delayed")
        due = await self.redis.zrangebyscore(delayed_key, 0, self._now_ms())
        for job_id in due:
            if not await self.redis.zrem(delayed_key, job_id):
                continue
            priority = await self.redis.hget(self._job_key(queue_name, job_id), "priority")
            seq = await self.redis.incr(self._key(queue_name, "seq"))
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(queue_name, job_id), "state", STATE_WAITING)
                pipe.zadd(self._key(queue_name, "wait"),
                          {job_id: int(priority or PRIORITY_NORMAL) * PRIORITY_SCALE + seq})
                await pipe.execute()

    async def _next_job(self, queue_name: str) -> Optional[QueueJob]:
        await self._promote_delayed(queue_name)
        popped = await self.redis.bzpopmin(self._key(queue_name, "wait"), timeout=self.poll_timeout)
        if not popped:
            return None
        _, job_id, _ = popped
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.sadd(self._key(queue_name, "active"), job_id)
            pipe.set(self._lock_key(queue_name, job_id), "1", px=self._lock_ms)
            await pipe.execute()
        job = await self.get_job(queue_name, job_id)
        if job is None:
            # Hash expired while waiting
            await self._release(queue_name, job_id)
            logger.warning("Dropped queued job without data", queue=queue_name, job_id=job_id)
        return job

    async def _release(self, queue_name: str, job_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.srem(self._key(queue_name, "active"), job_id)
            pipe.delete(self._lock_key(queue_name, job_id))
            await pipe.execute()

    async def _run_handler(self, job: QueueJob) -> None:
        keeper = asyncio.create_task(self._hold_lock(job))
        try:
            await super()._run_handler(job)
        finally:
            keeper.cancel()
            await asyncio.gather(keeper, return_exceptions=True)

    async def _hold_lock(self, job: QueueJob) -> None:
        """Renew the job's lease at half its duration until the handler returns."""
        lock_key = self._lock_key(job.queue_name, job.id)
        while True:
            await asyncio.sleep(self.lock_duration / 2)
            try:
                await self.redis.pexpire(lock_key, self._lock_ms)
            except redis.RedisError as e:
                logger.warning("Lock renewal failed", job_id=job.id, queue=job.queue_name, error=str(e))

    async def is_active(self, queue_name: str, job_id: str) -> bool:
        """In the active set and still leased by a live worker."""
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.sismember(self._key(queue_name, "active"), job_id)
            pipe.exists(self._lock_key(queue_name, job_id))
            member, locked = await pipe.execute()
        return bool(member) and bool(locked)

    async def is_live(self, queue_name: str, job_id: str) -> bool:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zscore(self._key(queue_name, "wait"), job_id)
            pipe.zscore(self._key(queue_name, "delayed"), job_id)
            waiting, delayed = await pipe.execute()
        if waiting is not None or delayed is not None:
            return True
        return await self.is_active(queue_name, job_id)

    async def drop_stalled(self, queue_name: str, job_id: str) -> None:
        """Move an active job whose lease lapsed to the failed set."""
        if await self.is_active(queue_name, job_id):
            return
        if not await self.redis.sismember(self._key(queue_name, "active"), job_id):
            return
        job = await self.get_job(queue_name, job_id)
        if job is None:
            await self._release(queue_name, job_id)
            return
        job.state = STATE_FAILED
        job.failed_reason = "Job stalled: worker lease expired"
        job.finished_on = time.time()
        await self._save_finished(job)
        logger.warning("Dropped stalled job", queue=queue_name, job_id=job_id)

    async def _schedule(self, job: QueueJob, delay: float) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.queue_name, job.id), mapping=self._serialize(job))
            pipe.srem(self._key(job.queue_name, "active"), job.id)
            pipe.delete(self._lock_key(job.queue_name, job.id))
            pipe.zadd(self._key(job.queue_name, "delayed"),
                      {job.id: self._now_ms() + int(delay * 1000)})
            await pipe.execute()

    async def _save_active(self, job: QueueJob) -> None:
        await self.redis.hset(self._job_key(job.queue_name, job.id), mapping={
            "state": STATE_ACTIVE,
            "processed_on": str(job.processed_on or ""),
        })

    async def _save_progress(self, job: QueueJob) -> None:
        await self.redis.hset(self._job_key(job.queue_name, job.id),
                              "progress", json.dumps(job.progress))

    async def _save_finished(self, job: QueueJob) -> None:
        config = self.get_config(job.queue_name)
        ttl = config.completed_ttl if job.state == STATE_COMPLETED else config.failed_ttl
        finished_key = self._key(job.queue_name, job.state)
        now_ms = self._now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.queue_name, job.id), mapping=self._serialize(job))
            pipe.expire(self._job_key(job.queue_name, job.id), ttl)
            pipe.srem(self._key(job.queue_name, "active"), job.id)
            pipe.delete(self._lock_key(job.queue_name, job.id))
            pipe.zadd(finished_key, {job.id: now_ms})
            pipe.zremrangebyscore(finished_key, 0, now_ms - ttl * 1000)
            await pipe.execute()
