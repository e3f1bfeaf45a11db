"""Common node-job contract shared by every node processor.

Per job: skip if the execution is already terminal, wait for dependencies,
mark the job active and the node processing, run :meth:`NodeProcessor.execute`,
then record the result. A node blocked by a dead-lettered dependency is
closed as skipped and fails the execution. Any other failure (exception or
failed result) leaves a job log and a node error before it propagates, and on
the last allowed attempt also moves the job to the DLQ and fails the execution.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from constants import (
    JOB_STATUS_ACTIVE,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    NODE_STATUS_COMPLETE,
    NODE_STATUS_ERROR,
    NODE_STATUS_PROCESSING,
    TERMINAL_EXECUTION_STATUSES,
)
from core.config import Settings
from core.logging import get_logger
from models.queue import JobResult, NodeJobData
from services.executions import ExecutionService
from services.queue.manager import QueueManager
from services.queue.runtime import JobDeferredError, QueueJob, UnrecoverableJobError

logger = get_logger(__name__)


class DependencyFailedError(UnrecoverableJobError):
    """An upstream node failed for good; this node cannot run."""

    def __init__(self, node_id: str, dependency_id: str):
        super().__init__(f"Dependency {dependency_id} of node {node_id} failed")
        self.node_id = node_id
        self.dependency_id = dependency_id


class GenerationFailedError(Exception):
    """The provider finished the operation with a failure result."""

    def __init__(self, result: JobResult):
        super().__init__(result.error or "Generation failed")
        self.result = result


def is_final_attempt(job: QueueJob, error: Optional[Exception] = None) -> bool:
    """True when the runtime will not retry ``job`` after this failure."""
    if isinstance(error, UnrecoverableJobError):
        return True
    return job.attempts_made >= job.opts.attempts - 1


class NodeProcessor(ABC):
    """Base class; subclasses implement :meth:`execute` for their node family."""

    def __init__(self, queue_manager: QueueManager, executions: ExecutionService, settings: Settings):
        self.queue_manager = queue_manager
        self.executions = executions
        self.enforce_dependencies = settings.enforce_dependencies
        self.dependency_wait_delay = settings.dependency_wait_delay

    @abstractmethod
    async def execute(self, job: QueueJob, data: NodeJobData,
                      upstream: List[Optional[Dict[str, Any]]]) -> JobResult:
        """Run the node and return its result; raising counts as a failed attempt."""

    async def handle(self, job: QueueJob) -> Dict[str, Any]:
        """Queue runtime entry point."""
        data = NodeJobData.from_dict(job.data)

        execution = await self.executions.find_execution(data.execution_id)
        if execution.status in TERMINAL_EXECUTION_STATUSES:
            await self.queue_manager.mark_skipped(
                job.id, f"Skipped - execution already {execution.status}"
            )
            logger.info("Skipping node of terminal execution", job_id=job.id,
                        execution_id=data.execution_id, node_id=data.node_id, status=execution.status)
            return JobResult(success=True, skipped=True).to_dict()

        try:
            upstream = await self._resolve_dependencies(job, data)

            await self.queue_manager.update_job_status(job.id, JOB_STATUS_ACTIVE)
            await self.executions.update_node_result(data.execution_id, data.node_id, NODE_STATUS_PROCESSING)
            await job.update_progress(10, f"Starting {data.node_type}")
            await self.queue_manager.add_job_log(job.id, f"Starting {data.node_type}")

            result = await self.execute(job, data, upstream)
            if not result.success:
                raise GenerationFailedError(result)

            await self._record_success(job, data, result)
            return result.to_dict()
        except JobDeferredError:
            raise
        except DependencyFailedError as e:
            return await self._skip_blocked(job, data, e)
        except Exception as e:
            await self._record_failure(job, data, e)
            raise

    async def _skip_blocked(self, job: QueueJob, data: NodeJobData,
                            error: DependencyFailedError) -> Dict[str, Any]:
        """Close a node whose dependency was dead-lettered; a DLQ retry of that dependency resumes it."""
        await self.queue_manager.mark_skipped(job.id, f"Skipped - {error}")
        await self.executions.fail_execution(data.execution_id, str(error))
        logger.warning("Skipping node blocked by failed dependency", job_id=job.id,
                       execution_id=data.execution_id, node_id=data.node_id,
                       dependency_id=error.dependency_id)
        return JobResult(success=True, skipped=True).to_dict()

    async def _resolve_dependencies(self, job: QueueJob,
                                    data: NodeJobData) -> List[Optional[Dict[str, Any]]]:
        """Outputs of the node's dependencies, in ``depends_on`` order.

        With enforcement on, a dependency that is not complete defers the job,
        and one whose job was dead-lettered blocks it.
        """
        if not data.depends_on:
            return []

        results = await self.executions.get_node_results(data.execution_id)
        if not self.enforce_dependencies:
            return [results[dep].output if dep in results else None for dep in data.depends_on]

        waiting = []
        for dep in data.depends_on:
            result = results.get(dep)
            if result is not None and result.status == NODE_STATUS_COMPLETE:
                continue
            if result is not None and result.status == NODE_STATUS_ERROR:
                if await self._dependency_dead_lettered(data.execution_id, dep):
                    raise DependencyFailedError(data.node_id, dep)
            waiting.append(dep)

        if waiting:
            # Keep the waiting job from looking stalled
            await self.queue_manager.record_heartbeat(job.id)
            logger.debug("Waiting for dependencies", job_id=job.id, node_id=data.node_id, waiting=waiting)
            raise JobDeferredError(self.dependency_wait_delay,
                                   f"Waiting for dependencies: {', '.join(waiting)}")

        return [results[dep].output for dep in data.depends_on]

    async def _dependency_dead_lettered(self, execution_id: str, node_id: str) -> bool:
        jobs = await self.queue_manager.get_execution_jobs(execution_id)
        return any(j.node_id == node_id and j.moved_to_dlq for j in jobs)

    async def _record_success(self, job: QueueJob, data: NodeJobData, result: JobResult) -> None:
        await self.queue_manager.update_job_status(job.id, JOB_STATUS_COMPLETED, result=result.to_dict())
        await job.update_progress(100, "Completed")
        await self.queue_manager.add_job_log(job.id, f"{data.node_type} completed")
        await self.executions.update_node_result(
            data.execution_id, data.node_id, NODE_STATUS_COMPLETE,
            output=result.output, cost=result.cost,
        )
        await self.executions.complete_if_finished(data.execution_id)
        logger.info("Node completed", job_id=job.id, execution_id=data.execution_id,
                    node_id=data.node_id, node_type=data.node_type, cost=result.cost)

    async def _record_failure(self, job: QueueJob, data: NodeJobData, error: Exception) -> None:
        message = str(error) or type(error).__name__
        final = is_final_attempt(job, error)
        result = error.result.to_dict() if isinstance(error, GenerationFailedError) else None

        logger.error("Node failed", job_id=job.id, execution_id=data.execution_id, node_id=data.node_id,
                     node_type=data.node_type, attempt=job.attempts_made + 1,
                     max_attempts=job.opts.attempts, final=final, error=message)

        writes = [
            ("job status", lambda: self.queue_manager.update_job_status(
                job.id, JOB_STATUS_FAILED, result=result, error=message,
                attempts_made=job.attempts_made + 1,
            )),
            ("job log", lambda: self.queue_manager.add_job_log(
                job.id, f"Attempt {job.attempts_made + 1}/{job.opts.attempts} failed: {message}", "error"
            )),
            ("node result", lambda: self.executions.update_node_result(
                data.execution_id, data.node_id, NODE_STATUS_ERROR, error=message
            )),
        ]
        if final:
            writes += [
                ("dead letter", lambda: self.queue_manager.move_to_dead_letter_queue(
                    job.id, job.queue_name, message
                )),
                ("execution status", lambda: self.executions.fail_execution(
                    data.execution_id, f"Node {data.node_id} failed: {message}"
                )),
            ]
        # Each write stands alone; the original error is re-raised by the caller either way
        for what, write in writes:
            try:
                await write()
            except Exception as e:
                logger.error("Failed to record node failure", job_id=job.id, write=what, error=str(e))
