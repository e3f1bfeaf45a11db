"""Workflow orchestration: cycle check, ordering and fan-out of node jobs.

The orchestration queue carries two job shapes: ``execute-workflow`` jobs for
a whole run, and ``workflowRef`` node jobs that run another workflow as a
child execution and wait for it.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from constants import (
    EXECUTION_STATUS_CANCELLED,
    EXECUTION_STATUS_COMPLETED,
    EXECUTION_STATUS_FAILED,
    EXECUTION_STATUS_RUNNING,
    JOB_STATUS_ACTIVE,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    NODE_STATUS_COMPLETE,
    PASSTHROUGH_NODE_TYPES,
    WORKFLOW_INPUT_NODE_TYPE,
    WORKFLOW_OUTPUT_NODE_TYPE,
)
from core.config import Settings
from core.exceptions import NotFoundError
from core.logging import get_logger
from models.queue import JobResult, NodeJobData, WorkflowJobData
from services.executions import ExecutionService
from services.graph import (
    WorkflowContainsCyclesError,
    build_dependency_map,
    detect_cycles,
    topological_sort,
)
from services.pricing import PricingService
from services.processors.base import NodeProcessor, is_final_attempt
from services.queue.manager import QueueManager
from services.queue.runtime import QueueJob, UnrecoverableJobError
from services.workflow import WorkflowService

logger = get_logger(__name__)

OUTPUT_VALUE_KEYS = ("value", "text", "image", "video", "audio")


async def fan_out(queue_manager: QueueManager, executions: ExecutionService, execution_id: str,
                  workflow_id: str, nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]],
                  skip_node_ids: Iterable[str] = ()) -> int:
    """Enqueue every node of an acyclic graph in topological order.

    Passthrough nodes are completed in place with their data as output. Nodes
    in ``skip_node_ids`` are left untouched. Returns the number of jobs enqueued.
    """
    order = topological_sort(nodes, edges)
    dependency_map = build_dependency_map(nodes, edges)
    node_map = {node["id"]: node for node in nodes}
    skip = set(skip_node_ids)

    await executions.set_expected_nodes(execution_id, [node["id"] for node in nodes])

    enqueued = 0
    for node_id in order:
        node = node_map.get(node_id)
        if node is None:
            logger.warning("Node in execution order missing from graph", execution_id=execution_id,
                           node_id=node_id)
            continue
        if node_id in skip:
            continue

        node_type = node.get("type", "")
        node_data = node.get("data") or {}
        if node_type in PASSTHROUGH_NODE_TYPES:
            await executions.update_node_result(execution_id, node_id, NODE_STATUS_COMPLETE,
                                                output=node_data)
            continue

        await queue_manager.enqueue_node(execution_id, workflow_id, node_id, node_type, node_data,
                                         dependency_map.get(node_id))
        enqueued += 1

    await executions.complete_if_finished(execution_id)
    return enqueued


def _output_value(output: Optional[Dict[str, Any]]) -> Any:
    if not isinstance(output, dict):
        return output
    for key in OUTPUT_VALUE_KEYS:
        if output.get(key) is not None:
            return output[key]
    return output


class WorkflowRefProcessor(NodeProcessor):
    """Run a referenced workflow as a child execution and map its outputs back."""

    def __init__(self, queue_manager: QueueManager, executions: ExecutionService, settings: Settings,
                 workflows: WorkflowService, pricing: PricingService):
        super().__init__(queue_manager, executions, settings)
        self.workflows = workflows
        self.pricing = pricing
        self.max_depth = settings.max_workflow_depth
        self.poll_interval = settings.child_poll_interval
        self.max_polls = settings.child_max_polls

    async def execute(self, job: QueueJob, data: NodeJobData,
                      upstream: List[Optional[Dict[str, Any]]]) -> JobResult:
        node_data = data.node_data
        child_workflow_id = node_data.get("workflowId") or node_data.get("referencedWorkflowId")
        if not child_workflow_id:
            raise UnrecoverableJobError(f"workflowRef node {data.node_id} has no referenced workflow")

        parent = await self.executions.find_execution(data.execution_id)
        if parent.depth >= self.max_depth:
            raise UnrecoverableJobError(f"Maximum workflow nesting depth ({self.max_depth}) exceeded")

        try:
            graph = await self.workflows.find_one(child_workflow_id)
        except NotFoundError as e:
            raise UnrecoverableJobError(str(e)) from e
        nodes, edges = graph["nodes"], graph["edges"]
        if detect_cycles(nodes, edges):
            raise UnrecoverableJobError("Child workflow contains cycles")

        child = await self.executions.create_execution(
            child_workflow_id,
            parent_execution_id=parent.id,
            parent_node_id=data.node_id,
            depth=parent.depth + 1,
            estimated_cost=self.pricing.estimate_workflow(nodes)["total"],
        )
        await self.executions.add_child_execution(parent.id, child.id)
        await self.executions.update_execution_status(child.id, EXECUTION_STATUS_RUNNING)
        await self.queue_manager.add_job_log(job.id, f"Created child execution {child.id}")
        logger.info("Created child execution", job_id=job.id, execution_id=parent.id,
                    child_execution_id=child.id, workflow_id=child_workflow_id, depth=child.depth)

        try:
            prefilled = await self._map_inputs(child.id, nodes, node_data.get("inputMappings") or {})
        except ValueError as e:
            await self.executions.fail_execution(child.id, str(e))
            raise UnrecoverableJobError(str(e)) from e

        await fan_out(self.queue_manager, self.executions, child.id, child_workflow_id,
                      nodes, edges, skip_node_ids=prefilled)

        outputs = await self._wait_for_child(job, child.id, nodes, edges)
        finished = await self.executions.find_execution(child.id)
        return JobResult(
            success=True,
            output={"outputMappings": outputs, "childExecutionId": child.id},
            cost=finished.total_cost,
        )

    async def _map_inputs(self, child_execution_id: str, nodes: List[Dict[str, Any]],
                          mappings: Dict[str, Any]) -> List[str]:
        """Complete the child's workflowInput nodes from the parent's mappings."""
        prefilled = []
        for node in nodes:
            if node.get("type") != WORKFLOW_INPUT_NODE_TYPE:
                continue
            input_data = node.get("data") or {}
            name = input_data.get("inputName") or "input"
            value = mappings.get(name)
            if value is None:
                if input_data.get("required"):
                    raise ValueError(f'Required input "{name}" not provided for child workflow')
                value = input_data.get("defaultValue")
            await self.executions.update_node_result(child_execution_id, node["id"], NODE_STATUS_COMPLETE,
                                                     output={"value": value})
            prefilled.append(node["id"])
        return prefilled

    async def _wait_for_child(self, job: QueueJob, child_execution_id: str,
                              nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]]) -> Dict[str, Any]:
        dependency_map = build_dependency_map(nodes, edges)

        for _ in range(self.max_polls):
            child = await self.executions.find_execution(child_execution_id)
            await self.queue_manager.record_heartbeat(job.id)

            if child.status == EXECUTION_STATUS_COMPLETED:
                results = await self.executions.get_node_results(child_execution_id)
                outputs: Dict[str, Any] = {}
                for node in nodes:
                    if node.get("type") != WORKFLOW_OUTPUT_NODE_TYPE:
                        continue
                    name = (node.get("data") or {}).get("outputName") or "output"
                    sources = dependency_map.get(node["id"]) or []
                    source = results.get(sources[0]) if sources else None
                    outputs[name] = _output_value(source.output) if source is not None else None
                return outputs

            if child.status in (EXECUTION_STATUS_FAILED, EXECUTION_STATUS_CANCELLED):
                raise RuntimeError(
                    f"Child execution {child_execution_id} {child.status}: {child.error or 'Unknown error'}"
                )

            await asyncio.sleep(self.poll_interval)

        raise RuntimeError(f"Child execution {child_execution_id} timed out")


class WorkflowProcessor:
    """Handler for the orchestration queue."""

    def __init__(self, queue_manager: QueueManager, executions: ExecutionService,
                 workflows: WorkflowService, ref_processor: WorkflowRefProcessor):
        self.queue_manager = queue_manager
        self.executions = executions
        self.workflows = workflows
        self.ref_processor = ref_processor

    async def handle(self, job: QueueJob) -> Dict[str, Any]:
        if "nodeType" in job.data:
            return await self.ref_processor.handle(job)
        return await self.run_workflow(job)

    async def run_workflow(self, job: QueueJob) -> Dict[str, Any]:
        data = WorkflowJobData.from_dict(job.data)
        execution_id = data.execution_id

        execution = await self.executions.find_execution(execution_id)
        # A retry of this job reopens the run it failed itself
        retrying = job.attempts_made > 0 and execution.status == EXECUTION_STATUS_FAILED
        if execution.status in (EXECUTION_STATUS_COMPLETED, EXECUTION_STATUS_CANCELLED) or (
            execution.status == EXECUTION_STATUS_FAILED and not retrying
        ):
            await self.queue_manager.mark_skipped(job.id, f"Skipped - execution already {execution.status}")
            return JobResult(success=True, skipped=True).to_dict()

        logger.info("Processing workflow execution", job_id=job.id, execution_id=execution_id,
                    workflow_id=data.workflow_id, attempt=job.attempts_made + 1)
        try:
            await self.executions.update_execution_status(execution_id, EXECUTION_STATUS_RUNNING,
                                                          force=retrying)
            await self.queue_manager.update_job_status(job.id, JOB_STATUS_ACTIVE)
            await self.queue_manager.add_job_log(job.id, "Starting workflow execution")

            graph = await self.workflows.find_one(data.workflow_id)
            nodes, edges = graph["nodes"], graph["edges"]

            if detect_cycles(nodes, edges):
                raise WorkflowContainsCyclesError()

            # Nodes fanned out by an earlier attempt or a stalled predecessor of this job
            existing = {
                record.node_id
                for record in await self.queue_manager.get_execution_jobs(execution_id)
                if record.job_id != job.id
            }
            enqueued = await fan_out(self.queue_manager, self.executions, execution_id,
                                     data.workflow_id, nodes, edges, skip_node_ids=existing)

            result = {"success": True, "nodesEnqueued": enqueued}
            await self.queue_manager.update_job_status(job.id, JOB_STATUS_COMPLETED, result=result)
            await self.queue_manager.add_job_log(job.id, f"Enqueued {enqueued} node jobs")
            logger.info("Workflow fan-out complete", job_id=job.id, execution_id=execution_id,
                        nodes=len(nodes), enqueued=enqueued)
            return result

        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("Workflow execution failed", job_id=job.id, execution_id=execution_id, error=message)
            fatal = isinstance(e, (WorkflowContainsCyclesError, NotFoundError, UnrecoverableJobError))

            await self.queue_manager.update_job_status(job.id, JOB_STATUS_FAILED, error=message,
                                                       attempts_made=job.attempts_made + 1)
            await self.queue_manager.add_job_log(job.id, f"Workflow execution failed: {message}", "error")
            await self.executions.update_execution_status(execution_id, EXECUTION_STATUS_FAILED, message)
            if not fatal and is_final_attempt(job):
                await self.queue_manager.move_to_dead_letter_queue(job.id, job.queue_name, message)

            if fatal and not isinstance(e, UnrecoverableJobError):
                raise UnrecoverableJobError(message) from e
            raise
