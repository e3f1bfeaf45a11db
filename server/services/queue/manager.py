"""Queue Manager: enqueue + persist, and the sole writer of Job records."""

import uuid
from typing import Any, Dict, List, Optional

from constants import (
    ALL_QUEUES,
    JOB_EXECUTE_NODE,
    JOB_EXECUTE_WORKFLOW,
    JOB_LOG_LEVELS,
    JOB_STATUS_ACTIVE,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_RECOVERED,
    JOB_STATUSES,
    NODE_TYPE_PRIORITY,
    NODE_TYPE_TO_JOB_NAME,
    NODE_TYPE_TO_QUEUE,
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    ROOT_NODE_ID,
    WORKFLOW_ORCHESTRATOR_QUEUE,
)
from core.logging import get_logger
from models.database import JobRecord, utc_now
from models.queue import JobLogEntry, JobResult, NodeJobData, WorkflowJobData
from services.queue.runtime import QueueRuntime
from services.queue.store import JobStore

logger = get_logger(__name__)


def get_queue_for_node_type(node_type: str) -> str:
    """Static node-type routing; unknown types are rejected rather than guessed."""
    try:
        return NODE_TYPE_TO_QUEUE[node_type]
    except KeyError:
        raise ValueError(f"No queue found for node type: {node_type}") from None


class QueueManager:
    """Boundary between orchestration decisions and the queue runtime.

    Persistence errors propagate to the caller; nothing here is swallowed.
    """

    def __init__(self, runtime: QueueRuntime, store: JobStore):
        self.runtime = runtime
        self.store = store

    async def _unique_job_id(self, base: str) -> str:
        """``base`` the first time, ``base-<suffix>`` for every re-enqueue."""
        if not await self.store.exists(base):
            return base
        return f"{base}-{uuid.uuid4().hex[:8]}"

    async def _enqueue(self, queue_name: str, job_name: str, job_id: str, execution_id: str,
                       node_id: str, data: Dict[str, Any], priority: int, recovery_count: int) -> str:
        # Record first so a worker that picks the job up immediately finds it
        await self.store.create(job_id, queue_name, execution_id, node_id, data,
                                recovery_count=recovery_count)
        try:
            await self.runtime.enqueue(queue_name, job_name, data, job_id=job_id, priority=priority)
        except Exception as e:
            await self.store.update(job_id, status=JOB_STATUS_FAILED, error=str(e),
                                    failed_reason=str(e), finished_at=utc_now())
            raise
        return job_id

    async def enqueue_workflow(self, execution_id: str, workflow_id: str, *, recovery_count: int = 0) -> str:
        """Create the orchestration job for one execution.

        ``recovery_count`` carries the stall-recovery tally over to a re-enqueued job.
        """
        job_id = await self._unique_job_id(f"workflow-{execution_id}")
        data = WorkflowJobData(execution_id=execution_id, workflow_id=workflow_id).to_dict()
        await self._enqueue(WORKFLOW_ORCHESTRATOR_QUEUE, JOB_EXECUTE_WORKFLOW, job_id,
                            execution_id, ROOT_NODE_ID, data, PRIORITY_HIGH, recovery_count)
        logger.info("Enqueued workflow execution", execution_id=execution_id,
                    workflow_id=workflow_id, job_id=job_id)
        return job_id

    async def enqueue_node(self, execution_id: str, workflow_id: str, node_id: str, node_type: str,
                           node_data: Dict[str, Any], depends_on: Optional[List[str]] = None,
                           *, recovery_count: int = 0) -> str:
        """Route one node to its queue; ``depends_on`` is None when the node has no dependencies."""
        queue_name = get_queue_for_node_type(node_type)
        job_id = await self._unique_job_id(f"{execution_id}-{node_id}")
        data = NodeJobData(
            execution_id=execution_id,
            workflow_id=workflow_id,
            node_id=node_id,
            node_type=node_type,
            node_data=node_data or {},
            depends_on=list(depends_on) if depends_on else None,
        ).to_dict()
        await self._enqueue(queue_name, NODE_TYPE_TO_JOB_NAME.get(node_type, JOB_EXECUTE_NODE), job_id,
                            execution_id, node_id, data, NODE_TYPE_PRIORITY.get(node_type, PRIORITY_NORMAL),
                            recovery_count)
        logger.info("Enqueued node", execution_id=execution_id, node_id=node_id,
                    node_type=node_type, queue=queue_name, job_id=job_id, depends_on=depends_on)
        return job_id

    async def update_job_status(self, job_id: str, status: str, *, result: Optional[Dict[str, Any]] = None,
                                error: Optional[str] = None, attempts_made: Optional[int] = None) -> None:
        if status not in JOB_STATUSES:
            raise ValueError(f"Invalid job status: {status}")

        values: Dict[str, Any] = {"status": status}
        if status == JOB_STATUS_ACTIVE:
            values["processed_at"] = utc_now()
        if status in (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED):
            values["finished_at"] = utc_now()
        if result is not None:
            values["result"] = result
        if error:
            values["error"] = error
            values["failed_reason"] = error
        if attempts_made is not None:
            values["attempts_made"] = attempts_made
        await self.store.update(job_id, **values)

    async def add_job_log(self, job_id: str, message: str, level: str = "info") -> None:
        """Append a timestamped entry; earlier entries are never rewritten."""
        if level not in JOB_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {level}")
        await self.store.append_log(job_id, JobLogEntry(message=message, level=level))

    async def move_to_dead_letter_queue(self, job_id: str, queue_name: str, error: str) -> None:
        """Flag the record as dead-lettered; data and origin queue are kept for retry."""
        await self.store.append_log(
            job_id,
            JobLogEntry(message=f"Moved to DLQ from {queue_name}: {error}", level="error"),
            moved_to_dlq=True,
            failed_reason=error,
            status=JOB_STATUS_FAILED,
            finished_at=utc_now(),
        )
        logger.warning("Job moved to DLQ", job_id=job_id, queue=queue_name, error=error)

    async def record_heartbeat(self, job_id: str) -> None:
        await self.store.update(job_id, last_heartbeat=utc_now())

    async def mark_recovered(self, job_id: str, message: str) -> None:
        record = await self.store.require(job_id)
        await self.store.append_log(
            job_id,
            JobLogEntry(message=message, level="warn"),
            status=JOB_STATUS_RECOVERED,
            recovery_count=record.recovery_count + 1,
        )

    async def mark_skipped(self, job_id: str, message: str) -> None:
        """Close the record without running it; the skipped result lets a DLQ retry resume it."""
        await self.store.append_log(
            job_id,
            JobLogEntry(message=message, level="info"),
            status=JOB_STATUS_COMPLETED,
            result=JobResult(success=True, skipped=True).to_dict(),
            finished_at=utc_now(),
        )

    async def mark_superseded(self, job_id: str, replacement_id: str, message: str) -> None:
        await self.store.append_log(job_id, JobLogEntry(message=message, level="info"),
                                    superseded_by=replacement_id)

    async def reset_from_dlq(self, job_id: str, replacement_id: str) -> None:
        """Take the record out of the DLQ; ``replacement_id`` now carries its work."""
        await self.store.append_log(
            job_id,
            JobLogEntry(message=f"Job retried from DLQ as {replacement_id}", level="info"),
            moved_to_dlq=False,
            status=JOB_STATUS_PENDING,
            recovery_count=0,
            superseded_by=replacement_id,
        )

    async def get_job(self, job_id: str) -> JobRecord:
        return await self.store.require(job_id)

    async def get_execution_jobs(self, execution_id: str) -> List[JobRecord]:
        return await self.store.list_for_execution(execution_id)

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """Live runtime state when the runtime still knows the job, else the persisted record."""
        record = await self.store.require(job_id)
        job = await self.runtime.get_job(record.queue_name, job_id)
        if job is not None:
            return {
                "status": job.state,
                "progress": job.progress.get("percent", 0),
                "result": job.return_value,
                "error": job.failed_reason,
            }
        return {
            "status": record.status,
            "progress": 100 if record.status == JOB_STATUS_COMPLETED else 0,
            "result": record.result,
            "error": record.error,
        }

    async def is_job_live(self, queue_name: str, job_id: str) -> bool:
        """Still queued, delayed or held by a worker in the runtime."""
        return await self.runtime.is_live(queue_name, job_id)

    async def drop_stalled_job(self, queue_name: str, job_id: str) -> None:
        await self.runtime.drop_stalled(queue_name, job_id)

    async def get_queue_metrics(self) -> List[Dict[str, Any]]:
        metrics = []
        for name in ALL_QUEUES:
            counts = await self.runtime.get_counts(name)
            metrics.append({"name": name, **counts})
        return metrics
