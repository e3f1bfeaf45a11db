"""Execution state: run status, per-node results and cost reconciliation."""

from typing import Any, Dict, Iterable, List, Optional
import math
import uuid

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from constants import (
    EXECUTION_STATUS_CANCELLED,
    EXECUTION_STATUS_COMPLETED,
    EXECUTION_STATUS_FAILED,
    EXECUTION_STATUS_PENDING,
    EXECUTION_STATUS_RUNNING,
    NODE_STATUS_COMPLETE,
    NODE_STATUS_ERROR,
    NODE_STATUS_PROCESSING,
    NODE_RESULT_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
)
from core.database import Database
from core.exceptions import NotFoundError
from core.logging import get_logger
from models.database import Execution, NodeResult, utc_now

logger = get_logger(__name__)


class ExecutionNotFoundError(NotFoundError):
    entity = "Execution"


def compute_cost_summary(node_costs: Iterable[float], estimated: float = 0.0) -> Dict[str, float]:
    """Actual cost and variance (%) from the current node costs.

    Pure: the same node costs always give the same summary.
    """
    actual = round(sum(cost or 0.0 for cost in node_costs), 6)
    variance = ((actual - estimated) / estimated) * 100 if estimated > 0 else 0.0
    return {"estimated": estimated, "actual": actual, "variance": round(variance, 4)}


class ExecutionService:
    """Execution store consumed and mutated by the processors."""

    def __init__(self, database: Database):
        self.database = database

    async def create_execution(self, workflow_id: str, *, parent_execution_id: Optional[str] = None,
                               parent_node_id: Optional[str] = None, depth: int = 0,
                               estimated_cost: float = 0.0) -> Execution:
        execution = Execution(
            id=uuid.uuid4().hex,
            workflow_id=workflow_id,
            status=EXECUTION_STATUS_PENDING,
            parent_execution_id=parent_execution_id,
            parent_node_id=parent_node_id,
            depth=depth,
            cost_estimated=estimated_cost,
        )
        async with self.database.get_session() as session:
            session.add(execution)
            await session.commit()
            await session.refresh(execution)
        logger.info("Execution created", execution_id=execution.id, workflow_id=workflow_id,
                    depth=depth, parent_execution_id=parent_execution_id)
        return execution

    async def find_execution(self, execution_id: str) -> Execution:
        async with self.database.get_session() as session:
            execution = await session.get(Execution, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def get_node_results(self, execution_id: str) -> Dict[str, NodeResult]:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(NodeResult).where(NodeResult.execution_id == execution_id).order_by(NodeResult.id)
            )
            return {row.node_id: row for row in result.scalars().all()}

    async def update_execution_status(self, execution_id: str, status: str,
                                      error: Optional[str] = None, *, force: bool = False) -> Execution:
        """Set the run status.

        A terminal execution keeps its status unless ``force`` is given, so late
        node results cannot reopen a cancelled or finished run.
        """
        async with self.database.get_session() as session:
            execution = await session.get(Execution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)

            if execution.status in TERMINAL_EXECUTION_STATUSES and not force:
                if execution.status != status:
                    logger.info("Ignoring status change on terminal execution",
                                execution_id=execution_id, current=execution.status, requested=status)
                return execution

            now = utc_now()
            execution.status = status
            if error:
                execution.error = error
            elif force and status == EXECUTION_STATUS_RUNNING:
                execution.error = None
            if status == EXECUTION_STATUS_RUNNING and (execution.started_at is None or force):
                execution.started_at = now
            if status in TERMINAL_EXECUTION_STATUSES:
                execution.completed_at = now
            execution.updated_at = now
            session.add(execution)
            await session.commit()
            await session.refresh(execution)

        logger.info("Execution status updated", execution_id=execution_id, status=status, error=error)
        return execution

    async def update_node_result(self, execution_id: str, node_id: str, status: str,
                                 output: Optional[Dict[str, Any]] = None, error: Optional[str] = None,
                                 cost: Optional[float] = None) -> NodeResult:
        """Upsert the single result row for ``node_id`` and recompute the execution cost."""
        if status not in NODE_RESULT_STATUSES:
            raise ValueError(f"Invalid node status: {status}")
        await self.find_execution(execution_id)

        try:
            node_result = await self._upsert_node_result(execution_id, node_id, status, output, error, cost)
        except IntegrityError:
            # Lost an insert race for the same node; the row now exists, so update it
            node_result = await self._upsert_node_result(execution_id, node_id, status, output, error, cost)

        await self.recompute_cost(execution_id)
        return node_result

    async def _upsert_node_result(self, execution_id: str, node_id: str, status: str,
                                  output: Optional[Dict[str, Any]], error: Optional[str],
                                  cost: Optional[float]) -> NodeResult:
        now = utc_now()
        async with self.database.get_session() as session:
            result = await session.execute(
                select(NodeResult)
                .where(NodeResult.execution_id == execution_id)
                .where(NodeResult.node_id == node_id)
            )
            node_result = result.scalar_one_or_none()
            if node_result is None:
                node_result = NodeResult(execution_id=execution_id, node_id=node_id)

            node_result.status = status
            node_result.output = output
            node_result.error = error
            node_result.cost = cost or 0.0
            if status == NODE_STATUS_PROCESSING:
                node_result.started_at = now
                node_result.completed_at = None
            elif status in (NODE_STATUS_COMPLETE, NODE_STATUS_ERROR):
                node_result.completed_at = now
            node_result.updated_at = now

            session.add(node_result)
            await session.commit()
            await session.refresh(node_result)
            return node_result

    async def recompute_cost(self, execution_id: str, estimated: Optional[float] = None,
                             claimed: Optional[Dict[str, float]] = None) -> Dict[str, float]:
        """Derive total/actual cost from node results; never incremented in place.

        A new ``estimated`` is stored alongside. ``claimed`` actual/variance values
        must match the derived ones, otherwise ValueError and nothing is written.
        """
        async with self.database.get_session() as session:
            costs = await session.execute(
                select(NodeResult.cost).where(NodeResult.execution_id == execution_id)
            )
            execution = await session.get(Execution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)

            summary = compute_cost_summary(
                costs.scalars().all(),
                execution.cost_estimated if estimated is None else estimated,
            )
            for key, value in (claimed or {}).items():
                if not math.isclose(value, summary[key], abs_tol=1e-6):
                    raise ValueError(
                        f"Cost {key} {value} does not match recorded node costs ({summary[key]})"
                    )
            execution.cost_estimated = summary["estimated"]
            execution.total_cost = summary["actual"]
            execution.cost_actual = summary["actual"]
            execution.cost_variance = summary["variance"]
            execution.updated_at = utc_now()
            session.add(execution)
            await session.commit()
        return summary

    async def update_cost_summary(self, execution_id: str, *, estimated: Optional[float] = None,
                                  actual: Optional[float] = None,
                                  variance: Optional[float] = None) -> Dict[str, float]:
        """Set the estimate; actual and variance always follow the node costs."""
        claimed = {key: value for key, value in (("actual", actual), ("variance", variance))
                   if value is not None}
        return await self.recompute_cost(execution_id, estimated=estimated, claimed=claimed)

    async def set_expected_nodes(self, execution_id: str, node_ids: List[str]) -> None:
        async with self.database.get_session() as session:
            result = await session.execute(
                update(Execution)
                .where(Execution.id == execution_id)
                .values(expected_nodes=list(node_ids), updated_at=utc_now())
            )
            await session.commit()
        if result.rowcount == 0:
            raise ExecutionNotFoundError(execution_id)

    async def add_child_execution(self, parent_execution_id: str, child_execution_id: str) -> None:
        async with self.database.get_session() as session:
            parent = await session.get(Execution, parent_execution_id)
            if parent is None:
                raise ExecutionNotFoundError(parent_execution_id)
            parent.child_execution_ids = [*(parent.child_execution_ids or []), child_execution_id]
            parent.updated_at = utc_now()
            session.add(parent)
            await session.commit()

    async def complete_if_finished(self, execution_id: str) -> bool:
        """Mark the run completed once every expected node is complete."""
        execution = await self.find_execution(execution_id)
        if execution.status in TERMINAL_EXECUTION_STATUSES or not execution.expected_nodes:
            return False

        results = await self.get_node_results(execution_id)
        if all(
            node_id in results and results[node_id].status == NODE_STATUS_COMPLETE
            for node_id in execution.expected_nodes
        ):
            await self.update_execution_status(execution_id, EXECUTION_STATUS_COMPLETED)
            return True
        return False

    async def fail_execution(self, execution_id: str, error: str) -> Execution:
        return await self.update_execution_status(execution_id, EXECUTION_STATUS_FAILED, error)

    async def cancel_execution(self, execution_id: str) -> Execution:
        execution = await self.find_execution(execution_id)
        if execution.status in TERMINAL_EXECUTION_STATUSES:
            raise ValueError(f"Execution {execution_id} is already {execution.status}")
        return await self.update_execution_status(execution_id, EXECUTION_STATUS_CANCELLED)

    async def reopen(self, execution_id: str) -> Execution:
        """Put a failed run back to running, e.g. when one of its jobs is retried."""
        execution = await self.find_execution(execution_id)
        if execution.status != EXECUTION_STATUS_FAILED:
            return execution
        return await self.update_execution_status(execution_id, EXECUTION_STATUS_RUNNING, force=True)

    async def get_execution_details(self, execution_id: str) -> Dict[str, Any]:
        execution = await self.find_execution(execution_id)
        results = await self.get_node_results(execution_id)
        return execution_to_dict(execution, results.values())


def execution_to_dict(execution: Execution, node_results: Iterable[NodeResult]) -> Dict[str, Any]:
    return {
        "id": execution.id,
        "workflowId": execution.workflow_id,
        "status": execution.status,
        "error": execution.error,
        "totalCost": execution.total_cost,
        "costSummary": {
            "estimated": execution.cost_estimated,
            "actual": execution.cost_actual,
            "variance": execution.cost_variance,
        },
        "expectedNodes": execution.expected_nodes,
        "parentExecutionId": execution.parent_execution_id,
        "parentNodeId": execution.parent_node_id,
        "depth": execution.depth,
        "childExecutionIds": execution.child_execution_ids,
        "nodeResults": [
            {
                "nodeId": r.node_id,
                "status": r.status,
                "output": r.output,
                "error": r.error,
                "cost": r.cost,
                "startedAt": r.started_at,
                "completedAt": r.completed_at,
            }
            for r in node_results
        ],
        "startedAt": execution.started_at,
        "completedAt": execution.completed_at,
        "createdAt": execution.created_at,
    }
