"""Job recovery service.

Runs as a background task to:
- Detect jobs stuck in active/pending past the staleness threshold
- Re-enqueue them through the normal routing
- Retry dead-lettered jobs on request
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional

from constants import (
    EXECUTION_STATUS_RUNNING,
    JOB_STATUS_ACTIVE,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_RECOVERED,
    NODE_STATUS_COMPLETE,
    ROOT_NODE_ID,
    TERMINAL_EXECUTION_STATUSES,
    WORKFLOW_ORCHESTRATOR_QUEUE,
)
from core.config import Settings
from core.logging import get_logger
from models.database import JobRecord, utc_now
from models.queue import NodeJobData
from services.executions import ExecutionNotFoundError, ExecutionService
from services.queue.manager import QueueManager
from services.queue.store import JobStore

logger = get_logger(__name__)


class JobRecoveryService:
    """Periodic and on-demand repair of stalled and dead-lettered jobs.

    A job is stalled when it is active or pending, has not been updated or
    heartbeated within ``stale_threshold_seconds``, and is not in the DLQ.
    """

    def __init__(self, queue_manager: QueueManager, store: JobStore,
                 executions: ExecutionService, settings: Settings):
        self.queue_manager = queue_manager
        self.store = store
        self.executions = executions
        self.stale_threshold = settings.stale_threshold_seconds
        self.sweep_interval = settings.recovery_interval_seconds
        self.max_recovery_attempts = settings.max_recovery_attempts
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Recover pre-restart stalls now, then keep sweeping in the background."""
        if self._running:
            logger.warning("Job recovery already running")
            return

        logger.info("Checking for stalled jobs to recover")
        try:
            await self.recover_stalled_jobs()
        except Exception as e:
            logger.error("Startup recovery failed", error=str(e))

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Job recovery started",
                    stale_threshold=self.stale_threshold,
                    sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Job recovery stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.recover_stalled_jobs()
            except Exception as e:
                logger.error("Recovery sweep failed", error=str(e))

    async def _is_terminal(self, execution_id: str) -> bool:
        try:
            execution = await self.executions.find_execution(execution_id)
        except ExecutionNotFoundError:
            # Orphaned job; nothing left to recover it into
            return True
        return execution.status in TERMINAL_EXECUTION_STATUSES

    async def recover_stalled_jobs(self) -> int:
        """Re-enqueue stalled jobs; returns how many were re-enqueued."""
        stale_before = utc_now() - timedelta(seconds=self.stale_threshold)
        candidates = await self.store.find_stalled(stale_before)
        if not candidates:
            return 0

        logger.warning("Found stalled job candidates", count=len(candidates))

        terminal: Dict[str, bool] = {}
        for execution_id in {job.execution_id for job in candidates}:
            terminal[execution_id] = await self._is_terminal(execution_id)

        recovered = 0
        for job in candidates:
            try:
                if terminal[job.execution_id]:
                    await self.queue_manager.mark_skipped(
                        job.job_id, "Skipped recovery - parent execution already terminal"
                    )
                    continue
                if await self._recover_job(job):
                    recovered += 1
            except Exception as e:
                logger.error("Failed to recover job", job_id=job.job_id, error=str(e))

        logger.info("Stalled job sweep finished", candidates=len(candidates), recovered=recovered)
        return recovered

    async def recover_execution(self, execution_id: str) -> int:
        """Re-enqueue one execution's incomplete, non-DLQ jobs."""
        await self.executions.find_execution(execution_id)
        incomplete = await self.store.find_incomplete_for_execution(execution_id)
        if not incomplete:
            return 0

        logger.info("Recovering incomplete jobs", execution_id=execution_id, count=len(incomplete))

        recovered = 0
        for job in incomplete:
            try:
                if await self._recover_job(job):
                    recovered += 1
            except Exception as e:
                logger.error("Failed to recover job", job_id=job.job_id, error=str(e))
        return recovered

    async def _recover_job(self, job: JobRecord) -> bool:
        """Re-enqueue one job unless a guard applies. True when a new job was created."""
        if await self.queue_manager.is_job_live(job.queue_name, job.job_id):
            await self.queue_manager.record_heartbeat(job.job_id)
            logger.debug("Job still live in runtime, refreshed heartbeat", job_id=job.job_id)
            return False

        await self.queue_manager.drop_stalled_job(job.queue_name, job.job_id)

        if job.recovery_count >= self.max_recovery_attempts:
            await self.queue_manager.move_to_dead_letter_queue(
                job.job_id, job.queue_name,
                f"Exceeded max recovery attempts ({self.max_recovery_attempts})",
            )
            return False

        attempt = job.recovery_count + 1
        logger.info("Recovering stalled job", job_id=job.job_id, queue=job.queue_name,
                    attempt=attempt, max_attempts=self.max_recovery_attempts)

        await self.queue_manager.mark_recovered(
            job.job_id,
            f"Job recovered after stall detection (attempt {attempt}/{self.max_recovery_attempts})",
        )
        await self._reenqueue(job, recovery_count=attempt)
        return True

    async def _reenqueue(self, job: JobRecord, recovery_count: int = 0) -> str:
        """Same routing as the original dispatch."""
        if job.queue_name == WORKFLOW_ORCHESTRATOR_QUEUE and job.node_id == ROOT_NODE_ID:
            return await self.queue_manager.enqueue_workflow(
                job.execution_id, job.data["workflowId"], recovery_count=recovery_count
            )
        data = NodeJobData.from_dict(job.data)
        return await self.queue_manager.enqueue_node(
            data.execution_id, data.workflow_id, data.node_id, data.node_type,
            data.node_data, data.depends_on, recovery_count=recovery_count,
        )

    async def retry_from_dlq(self, job_id: str) -> str:
        """Re-enqueue a dead-lettered job; returns the new job id.

        A failed run is reopened, and nodes that were skipped because the run
        had failed are enqueued again so the run can still complete.
        """
        job = await self.store.get_dlq(job_id)
        logger.info("Retrying job from DLQ", job_id=job_id, queue=job.queue_name)

        execution = await self.executions.reopen(job.execution_id)
        new_job_id = await self._reenqueue(job)
        await self.queue_manager.reset_from_dlq(job_id, new_job_id)
        if execution.status == EXECUTION_STATUS_RUNNING:
            await self._resume_skipped(job.execution_id)
        return new_job_id

    async def _resume_skipped(self, execution_id: str) -> int:
        """Re-enqueue each node whose job was skipped and that has no completed result."""
        results = await self.executions.get_node_results(execution_id)
        skipped: Dict[str, List[JobRecord]] = {}
        for record in await self.store.find_skipped_for_execution(execution_id):
            result = results.get(record.node_id)
            if result is not None and result.status == NODE_STATUS_COMPLETE:
                continue
            skipped.setdefault(record.node_id, []).append(record)

        for node_id, records in skipped.items():
            new_job_id = await self._reenqueue(records[-1])
            for record in records:
                await self.queue_manager.mark_superseded(
                    record.job_id, new_job_id, f"Resumed as {new_job_id} after DLQ retry"
                )
            logger.info("Resumed skipped node", execution_id=execution_id, node_id=node_id,
                        job_id=new_job_id)
        return len(skipped)

    async def get_job_stats(self) -> Dict[str, int]:
        counts = await self.store.count_by_status()
        return {
            "total": sum(counts.values()),
            "pending": counts.get(JOB_STATUS_PENDING, 0),
            "active": counts.get(JOB_STATUS_ACTIVE, 0),
            "completed": counts.get(JOB_STATUS_COMPLETED, 0),
            "failed": counts.get(JOB_STATUS_FAILED, 0),
            "recovered": counts.get(JOB_STATUS_RECOVERED, 0),
            "inDlq": await self.store.count_dlq(),
        }

    async def get_dlq_jobs(self, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        jobs, total = await self.store.list_dlq(limit=limit, offset=offset)
        return {"jobs": jobs, "total": total}


# Global recovery instance (initialized by main.py)
_recovery: Optional[JobRecoveryService] = None


def get_job_recovery() -> Optional[JobRecoveryService]:
    """Get global job recovery instance."""
    return _recovery


def set_job_recovery(service: Optional[JobRecoveryService]) -> None:
    """Set global job recovery instance."""
    global _recovery
    _recovery = service
