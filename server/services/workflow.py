"""Workflow Service - graph storage, lookup, and starting executions."""

import uuid
from typing import Any, Dict, List, Optional

from core.database import Database
from core.exceptions import NotFoundError
from core.logging import get_logger
from models.database import Execution, Workflow, utc_now
from services.executions import ExecutionService
from services.graph import validate_graph
from services.pricing import PricingService
from services.queue.manager import QueueManager

logger = get_logger(__name__)


class WorkflowNotFoundError(NotFoundError):
    entity = "Workflow"


class WorkflowService:
    """Read-only graph lookup for the processors, plus the run entry point."""

    def __init__(self, database: Database, executions: ExecutionService,
                 pricing: PricingService, queue_manager: QueueManager):
        self.database = database
        self.executions = executions
        self.pricing = pricing
        self.queue_manager = queue_manager

    async def get_workflow(self, workflow_id: str) -> Workflow:
        async with self.database.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def find_one(self, workflow_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """``{"nodes": [...], "edges": [...]}`` for one workflow."""
        workflow = await self.get_workflow(workflow_id)
        data = workflow.data or {}
        return {"nodes": list(data.get("nodes") or []), "edges": list(data.get("edges") or [])}

    async def save_workflow(self, name: str, nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]],
                            workflow_id: Optional[str] = None,
                            description: Optional[str] = None) -> Workflow:
        """Create or replace a workflow graph.

        The graph must be well formed (unique node ids, edges between known
        nodes). Cycles are allowed here; they fail the run, not the save.
        """
        validate_graph(nodes, edges)
        workflow_id = workflow_id or uuid.uuid4().hex

        async with self.database.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
            if workflow is None:
                workflow = Workflow(id=workflow_id, name=name)
            workflow.name = name
            workflow.description = description
            workflow.data = {"nodes": nodes, "edges": edges}
            workflow.updated_at = utc_now()
            session.add(workflow)
            await session.commit()
            await session.refresh(workflow)

        logger.info("Workflow saved", workflow_id=workflow_id, nodes=len(nodes), edges=len(edges))
        return workflow

    async def start_execution(self, workflow_id: str) -> Dict[str, Any]:
        """Create an execution with its cost estimate and enqueue the orchestration job."""
        graph = await self.find_one(workflow_id)
        estimate = self.pricing.estimate_workflow(graph["nodes"])

        execution: Execution = await self.executions.create_execution(
            workflow_id, estimated_cost=estimate["total"]
        )
        job_id = await self.queue_manager.enqueue_workflow(execution.id, workflow_id)

        logger.info("Execution started", execution_id=execution.id, workflow_id=workflow_id,
                    job_id=job_id, estimated_cost=estimate["total"])
        return {
            "executionId": execution.id,
            "jobId": job_id,
            "status": execution.status,
            "estimatedCost": estimate,
        }
