"""Multi-queue job pipeline: runtime, job records, manager and recovery.

Usage:
    from services.queue import QueueManager, InMemoryQueueRuntime, JobStore

    runtime = InMemoryQueueRuntime()
    manager = QueueManager(runtime, JobStore(database))
    job_id = await manager.enqueue_workflow(execution_id, workflow_id)
"""

from .runtime import (
    QueueRuntime,
    InMemoryQueueRuntime,
    QueueJob,
    JobOptions,
    UnrecoverableJobError,
    JobDeferredError,
)
from .redis_runtime import RedisQueueRuntime
from .store import JobStore, JobNotFoundError, DlqJobNotFoundError
from .manager import QueueManager, get_queue_for_node_type
from .recovery import JobRecoveryService, get_job_recovery, set_job_recovery

from core.cache import CacheService
from core.config import Settings


def create_queue_runtime(settings: Settings, cache: CacheService) -> QueueRuntime:
    """Runtime for the configured ``queue_backend``; Redis must be started first."""
    if settings.queue_backend == "redis":
        return RedisQueueRuntime(cache.client(), poll_timeout=settings.redis_poll_timeout,
                                 lock_duration=settings.redis_lock_duration)
    return InMemoryQueueRuntime()

__all__ = [
    "QueueRuntime",
    "InMemoryQueueRuntime",
    "RedisQueueRuntime",
    "QueueJob",
    "JobOptions",
    "UnrecoverableJobError",
    "JobDeferredError",
    "JobStore",
    "JobNotFoundError",
    "DlqJobNotFoundError",
    "QueueManager",
    "get_queue_for_node_type",
    "JobRecoveryService",
    "get_job_recovery",
    "set_job_recovery",
    "create_queue_runtime",
]
