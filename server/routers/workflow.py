"""Workflow graph routes - save and fetch the graphs executions run."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from core.container import container
from core.logging import get_logger
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])


class WorkflowSaveRequest(BaseModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)


@router.post("")
async def save_workflow(
    request: WorkflowSaveRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Create or replace a workflow graph."""
    workflow = await workflow_service.save_workflow(
        name=request.name,
        nodes=request.nodes,
        edges=request.edges,
        workflow_id=request.id,
        description=request.description,
    )
    return {"success": True, "id": workflow.id}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    workflow = await workflow_service.get_workflow(workflow_id)
    return {
        "success": True,
        "workflow": {
            "id": workflow.id,
            "name": workflow.name,
            "description": workflow.description,
            "nodes": (workflow.data or {}).get("nodes", []),
            "edges": (workflow.data or {}).get("edges", []),
            "createdAt": workflow.created_at,
            "updatedAt": workflow.updated_at,
        },
    }
