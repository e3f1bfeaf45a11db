"""Queue monitoring and dead letter queue routes."""

from fastapi import APIRouter, Depends, Query

from core.container import container
from core.logging import get_logger
from services.queue import JobRecoveryService, QueueManager
from services.queue.store import job_record_to_dict

logger = get_logger(__name__)
router = APIRouter(prefix="/api/queue", tags=["queue"])


@router.get("/stats")
async def get_job_stats(
    recovery: JobRecoveryService = Depends(lambda: container.job_recovery())
):
    """Job record counts by status, plus the DLQ size."""
    return {"success": True, "stats": await recovery.get_job_stats()}


@router.get("/metrics")
async def get_queue_metrics(
    queue_manager: QueueManager = Depends(lambda: container.queue_manager())
):
    """Live per-queue counts from the queue runtime."""
    return {"success": True, "queues": await queue_manager.get_queue_metrics()}


@router.get("/dlq")
async def get_dlq_jobs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    recovery: JobRecoveryService = Depends(lambda: container.job_recovery())
):
    page = await recovery.get_dlq_jobs(limit=limit, offset=offset)
    return {
        "success": True,
        "jobs": [job_record_to_dict(job) for job in page["jobs"]],
        "total": page["total"],
        "limit": limit,
        "offset": offset,
    }


@router.post("/dlq/{job_id}/retry")
async def retry_dlq_job(
    job_id: str,
    recovery: JobRecoveryService = Depends(lambda: container.job_recovery())
):
    new_job_id = await recovery.retry_from_dlq(job_id)
    return {"success": True, "jobId": job_id, "newJobId": new_job_id}


@router.post("/recover")
async def recover_stalled_jobs(
    recovery: JobRecoveryService = Depends(lambda: container.job_recovery())
):
    """Run one stalled-job sweep now."""
    recovered = await recovery.recover_stalled_jobs()
    return {"success": True, "recovered": recovered}


@router.get("/jobs/{job_id}")
async def get_job_status(
    job_id: str,
    queue_manager: QueueManager = Depends(lambda: container.queue_manager())
):
    return {"success": True, "jobId": job_id, **await queue_manager.get_job_status(job_id)}
