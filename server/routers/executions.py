"""Execution routes - start, inspect, cancel and recover workflow runs."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from core.container import container
from core.logging import get_logger
from services.executions import ExecutionService
from services.queue import JobRecoveryService, QueueManager
from services.queue.store import job_record_to_dict
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/executions", tags=["executions"])


class ExecutionStartRequest(BaseModel):
    workflow_id: str


@router.post("")
async def start_execution(
    request: ExecutionStartRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Create an execution and enqueue its orchestration job."""
    started = await workflow_service.start_execution(request.workflow_id)
    return {"success": True, **started}


@router.get("/{execution_id}")
async def get_execution(
    execution_id: str,
    executions: ExecutionService = Depends(lambda: container.executions())
):
    return {"success": True, "execution": await executions.get_execution_details(execution_id)}


@router.get("/{execution_id}/jobs")
async def get_execution_jobs(
    execution_id: str,
    executions: ExecutionService = Depends(lambda: container.executions()),
    queue_manager: QueueManager = Depends(lambda: container.queue_manager())
):
    """Job records of one execution, oldest first."""
    await executions.find_execution(execution_id)
    jobs = await queue_manager.get_execution_jobs(execution_id)
    return {"success": True, "jobs": [job_record_to_dict(job) for job in jobs]}


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    executions: ExecutionService = Depends(lambda: container.executions())
):
    """Mark the run cancelled; in-flight node jobs finish, queued ones are skipped."""
    execution = await executions.cancel_execution(execution_id)
    logger.info("Execution cancelled", execution_id=execution_id)
    return {"success": True, "status": execution.status}


@router.post("/{execution_id}/recover")
async def recover_execution(
    execution_id: str,
    recovery: JobRecoveryService = Depends(lambda: container.job_recovery())
):
    recovered = await recovery.recover_execution(execution_id)
    return {"success": True, "recovered": recovered}
