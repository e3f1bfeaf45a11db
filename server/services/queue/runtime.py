"""Queue runtime: the substrate that stores queued jobs and runs handlers.

The runtime is injected wherever jobs are enqueued or processed, so tests can
drive the pipeline with :class:`InMemoryQueueRuntime` while deployments use
the Redis-backed runtime. Retry, backoff and concurrency are configuration
read from :data:`models.queue.DEFAULT_QUEUE_CONFIGS`; handlers only signal
intent through exceptions:

- any exception: retry with backoff until ``attempts`` is exhausted
- :class:`UnrecoverableJobError`: fail now, no retry
- :class:`JobDeferredError`: run again after ``delay`` without using an attempt
"""

import asyncio
import itertools
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from constants import PRIORITY_NORMAL
from core.logging import get_logger, job_log_context
from models.queue import QueueConfig, get_queue_config

logger = get_logger(__name__)

STATE_WAITING = "waiting"
STATE_DELAYED = "delayed"
STATE_ACTIVE = "active"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

COUNT_STATES = (STATE_WAITING, STATE_ACTIVE, STATE_COMPLETED, STATE_FAILED, STATE_DELAYED)


class UnrecoverableJobError(Exception):
    """Fail the job immediately, skipping any remaining attempts."""


class JobDeferredError(Exception):
    """Put the job back after ``delay`` seconds; the attempt is not counted."""

    def __init__(self, delay: float, message: str = "Job deferred"):
        super().__init__(message)
        self.delay = delay


@dataclass
class JobOptions:
    attempts: int = 3
    priority: int = PRIORITY_NORMAL


@dataclass
class QueueJob:
    """A job as seen by a handler."""
    id: str
    name: str
    queue_name: str
    data: Dict[str, Any]
    opts: JobOptions = field(default_factory=JobOptions)
    attempts_made: int = 0
    state: str = STATE_WAITING
    progress: Dict[str, Any] = field(default_factory=dict)
    return_value: Any = None
    failed_reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    processed_on: Optional[float] = None
    finished_on: Optional[float] = None
    _runtime: Optional["QueueRuntime"] = field(default=None, repr=False, compare=False)

    async def update_progress(self, percent: float, message: str = "") -> None:
        self.progress = {"percent": round(percent, 2), "message": message}
        if self._runtime is not None:
            await self._runtime._save_progress(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "queue": self.queue_name,
            "data": self.data,
            "attempts": self.opts.attempts,
            "priority": self.opts.priority,
            "attemptsMade": self.attempts_made,
            "state": self.state,
            "progress": self.progress,
            "returnValue": self.return_value,
            "failedReason": self.failed_reason,
            "timestamp": self.timestamp,
            "processedOn": self.processed_on,
            "finishedOn": self.finished_on,
        }


JobHandler = Callable[[QueueJob], Awaitable[Any]]


class QueueRuntime(ABC):
    """Shared job-processing semantics; backends supply storage and delivery."""

    def __init__(self, queue_configs: Optional[Dict[str, QueueConfig]] = None):
        self._queue_configs = queue_configs or {}
        self._handlers: Dict[str, JobHandler] = {}
        self._concurrency: Dict[str, int] = {}
        self._workers: List[asyncio.Task] = []
        self._running = False

    def get_config(self, queue_name: str) -> QueueConfig:
        return self._queue_configs.get(queue_name) or get_queue_config(queue_name)

    def register(self, queue_name: str, handler: JobHandler, concurrency: int = 1) -> None:
        """Attach the handler that processes every job on ``queue_name``."""
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._handlers[queue_name] = handler
        self._concurrency[queue_name] = concurrency
        if self._running:
            self._spawn_workers(queue_name)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for queue_name in self._handlers:
            self._spawn_workers(queue_name)
        logger.info("Queue runtime started", backend=type(self).__name__,
                    queues={q: self._concurrency[q] for q in self._handlers})

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Queue runtime stopped", backend=type(self).__name__)

    def _spawn_workers(self, queue_name: str) -> None:
        for index in range(self._concurrency[queue_name]):
            task = asyncio.create_task(self._worker_loop(queue_name, index),
                                       name=f"worker:{queue_name}:{index}")
            self._workers.append(task)

    async def _worker_loop(self, queue_name: str, index: int) -> None:
        while self._running:
            try:
                job = await self._next_job(queue_name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Queue fetch failed", queue=queue_name, worker=index, error=str(e))
                await asyncio.sleep(1.0)
                continue
            if job is None:
                continue
            await self._process(job)

    async def _process(self, job: QueueJob) -> None:
        with job_log_context(job.id, job.queue_name, job.attempts_made + 1):
            await self._run_handler(job)

    async def _run_handler(self, job: QueueJob) -> None:
        handler = self._handlers[job.queue_name]
        job.state = STATE_ACTIVE
        job.processed_on = time.time()
        await self._save_active(job)

        try:
            result = await handler(job)
        except asyncio.CancelledError:
            # Worker shut down mid-job; the job stays active and is found by recovery
            raise
        except JobDeferredError as e:
            job.state = STATE_DELAYED
            await self._schedule(job, e.delay)
            logger.debug("Job deferred", job_id=job.id, queue=job.queue_name, delay=e.delay)
        except Exception as e:
            await self._handle_failure(job, e)
        else:
            job.state = STATE_COMPLETED
            job.return_value = result
            job.finished_on = time.time()
            await self._save_finished(job)
            logger.debug("Job completed", job_id=job.id, queue=job.queue_name)

    async def _handle_failure(self, job: QueueJob, error: Exception) -> None:
        job.failed_reason = str(error) or type(error).__name__
        exhausted = job.attempts_made + 1 >= job.opts.attempts
        job.attempts_made += 1

        if isinstance(error, UnrecoverableJobError) or exhausted:
            job.state = STATE_FAILED
            job.finished_on = time.time()
            await self._save_finished(job)
            logger.warning("Job failed", job_id=job.id, queue=job.queue_name,
                           attempts_made=job.attempts_made, error=job.failed_reason)
            return

        delay = self.get_config(job.queue_name).backoff.calculate_delay(job.attempts_made)
        job.state = STATE_DELAYED
        await self._schedule(job, delay)
        logger.info("Job scheduled for retry", job_id=job.id, queue=job.queue_name,
                    attempts_made=job.attempts_made, delay=delay, error=job.failed_reason)

    def _new_job(self, queue_name: str, name: str, data: Dict[str, Any],
                 job_id: Optional[str], priority: int) -> QueueJob:
        return QueueJob(
            id=job_id or uuid.uuid4().hex,
            name=name,
            queue_name=queue_name,
            data=data,
            opts=JobOptions(attempts=self.get_config(queue_name).attempts, priority=priority),
            _runtime=self,
        )

    # Backend interface

    @abstractmethod
    async def enqueue(self, queue_name: str, name: str, data: Dict[str, Any],
                      job_id: Optional[str] = None, priority: int = PRIORITY_NORMAL) -> str:
        """Add a job; an id that is already queued is not added twice."""

    @abstractmethod
    async def get_job(self, queue_name: str, job_id: str) -> Optional[QueueJob]:
        ...

    @abstractmethod
    async def get_counts(self, queue_name: str) -> Dict[str, int]:
        ...

    async def is_active(self, queue_name: str, job_id: str) -> bool:
        job = await self.get_job(queue_name, job_id)
        return job is not None and job.state == STATE_ACTIVE

    async def is_live(self, queue_name: str, job_id: str) -> bool:
        """Waiting, delayed, or held by a worker: the runtime will still run or finish it."""
        job = await self.get_job(queue_name, job_id)
        if job is None:
            return False
        if job.state in (STATE_WAITING, STATE_DELAYED):
            return True
        return job.state == STATE_ACTIVE and await self.is_active(queue_name, job_id)

    async def drop_stalled(self, queue_name: str, job_id: str) -> None:
        """Discard a job whose worker is gone; in-process jobs never outlive their worker."""
        return None

    @abstractmethod
    async def _next_job(self, queue_name: str) -> Optional[QueueJob]:
        """Block until a job is ready (or a poll timeout elapses)."""

    @abstractmethod
    async def _schedule(self, job: QueueJob, delay: float) -> None:
        ...

    @abstractmethod
    async def _save_active(self, job: QueueJob) -> None:
        ...

    @abstractmethod
    async def _save_finished(self, job: QueueJob) -> None:
        ...

    @abstractmethod
    async def _save_progress(self, job: QueueJob) -> None:
        ...


class InMemoryQueueRuntime(QueueRuntime):
    """Single-process runtime on asyncio priority queues.

    Finished jobs are pruned by count (``completed_keep`` / ``failed_keep``).
    """

    def __init__(self, queue_configs: Optional[Dict[str, QueueConfig]] = None):
        super().__init__(queue_configs)
        self._queues: Dict[str, asyncio.PriorityQueue] = {}
        self._jobs: Dict[str, Dict[str, QueueJob]] = {}
        self._finished: Dict[str, Dict[str, List[str]]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._seq = itertools.count()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def _queue(self, queue_name: str) -> asyncio.PriorityQueue:
        if queue_name not in self._queues:
            self._queues[queue_name] = asyncio.PriorityQueue()
            self._jobs[queue_name] = {}
            self._finished[queue_name] = {STATE_COMPLETED: [], STATE_FAILED: []}
        return self._queues[queue_name]

    def _push(self, job: QueueJob) -> None:
        job.state = STATE_WAITING
        self._queue(job.queue_name).put_nowait((job.opts.priority, next(self._seq), job.id))

    async def enqueue(self, queue_name: str, name: str, data: Dict[str, Any],
                      job_id: Optional[str] = None, priority: int = PRIORITY_NORMAL) -> str:
        self._queue(queue_name)
        existing = self._jobs[queue_name].get(job_id) if job_id else None
        if existing is not None and existing.state not in (STATE_COMPLETED, STATE_FAILED):
            return existing.id

        job = self._new_job(queue_name, name, data, job_id, priority)
        self._jobs[queue_name][job.id] = job
        self._outstanding += 1
        self._idle.clear()
        self._push(job)
        return job.id

    async def get_job(self, queue_name: str, job_id: str) -> Optional[QueueJob]:
        return self._jobs.get(queue_name, {}).get(job_id)

    async def get_counts(self, queue_name: str) -> Dict[str, int]:
        counts = {state: 0 for state in COUNT_STATES}
        for job in self._jobs.get(queue_name, {}).values():
            counts[job.state] = counts.get(job.state, 0) + 1
        return counts

    async def _next_job(self, queue_name: str) -> Optional[QueueJob]:
        _, _, job_id = await self._queue(queue_name).get()
        return self._jobs[queue_name].get(job_id)

    async def _schedule(self, job: QueueJob, delay: float) -> None:
        if delay <= 0:
            self._push(job)
            return
        loop = asyncio.get_running_loop()

        def _release():
            self._timers.pop(job.id, None)
            self._push(job)

        self._timers[job.id] = loop.call_later(delay, _release)

    async def _save_active(self, job: QueueJob) -> None:
        return None

    async def _save_progress(self, job: QueueJob) -> None:
        return None

    async def _save_finished(self, job: QueueJob) -> None:
        config = self.get_config(job.queue_name)
        keep = config.completed_keep if job.state == STATE_COMPLETED else config.failed_keep
        finished = self._finished[job.queue_name][job.state]
        finished.append(job.id)
        while len(finished) > keep:
            self._jobs[job.queue_name].pop(finished.pop(0), None)

        self._outstanding -= 1
        if self._outstanding <= 0:
            self._outstanding = 0
            self._idle.set()

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        await super().stop()

    async def wait_until_idle(self, timeout: float = 10.0) -> None:
        """Wait until every enqueued job has finished (completed or failed)."""
        await asyncio.wait_for(self._idle.wait(), timeout)
