"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint

from constants import (
    EXECUTION_STATUS_PENDING,
    JOB_STATUS_PENDING,
    NODE_STATUS_PENDING,
)


def utc_now() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _created_column() -> Column:
    return Column(DateTime, nullable=False, default=utc_now)


def _updated_column() -> Column:
    return Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now, index=True)


class Workflow(SQLModel, table=True):
    """Workflow definitions. ``data`` holds the node graph: ``{"nodes": [...], "edges": [...]}``."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, sa_column=_created_column())
    updated_at: datetime = Field(default_factory=utc_now, sa_column=_updated_column())


class Execution(SQLModel, table=True):
    """One run of a workflow. Node results live in ``node_results`` keyed by node id."""

    __tablename__ = "executions"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    status: str = Field(default=EXECUTION_STATUS_PENDING, max_length=50, index=True)
    error: Optional[str] = Field(default=None, max_length=2000)

    # total_cost and cost_actual are always recomputed from node results
    total_cost: float = Field(default=0.0)
    cost_estimated: float = Field(default=0.0)
    cost_actual: float = Field(default=0.0)
    cost_variance: float = Field(default=0.0)

    expected_nodes: List[str] = Field(default_factory=list, sa_column=Column(JSON))

    # Nested execution (workflowRef)
    parent_execution_id: Optional[str] = Field(default=None, index=True, max_length=255)
    parent_node_id: Optional[str] = Field(default=None, max_length=255)
    depth: int = Field(default=0)
    child_execution_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))

    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    created_at: datetime = Field(default_factory=utc_now, sa_column=_created_column())
    updated_at: datetime = Field(default_factory=utc_now, sa_column=_updated_column())


class NodeResult(SQLModel, table=True):
    """Per-node outcome inside an execution; at most one row per (execution, node)."""

    __tablename__ = "node_results"
    __table_args__ = (UniqueConstraint("execution_id", "node_id", name="uq_node_result"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    status: str = Field(default=NODE_STATUS_PENDING, max_length=50)
    output: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=2000)
    cost: float = Field(default=0.0)
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    updated_at: datetime = Field(default_factory=utc_now, sa_column=_updated_column())


class JobRecord(SQLModel, table=True):
    """Persisted mirror of every enqueued job, used for recovery, stats and the DLQ."""

    __tablename__ = "queue_jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(index=True, unique=True, max_length=255)
    queue_name: str = Field(index=True, max_length=100)
    execution_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    status: str = Field(default=JOB_STATUS_PENDING, max_length=50, index=True)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=2000)
    failed_reason: Optional[str] = Field(default=None, max_length=2000)
    attempts_made: int = Field(default=0)
    logs: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    moved_to_dlq: bool = Field(default=False, index=True)
    # Refreshed while a worker polls a long-running provider operation
    last_heartbeat: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    recovery_count: int = Field(default=0)
    # Job id that replaced this record (DLQ retry or resumed skip); excluded from recovery
    superseded_by: Optional[str] = Field(default=None, max_length=255)
    processed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    finished_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    created_at: datetime = Field(default_factory=utc_now, sa_column=_created_column())
    updated_at: datetime = Field(default_factory=utc_now, sa_column=_updated_column())
