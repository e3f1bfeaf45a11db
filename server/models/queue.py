"""Queue configuration and job payload models.

All payload models are JSON-serializable so they can be stored on the Job
record and carried through either queue backend unchanged.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from constants import (
    WORKFLOW_ORCHESTRATOR_QUEUE,
    IMAGE_GENERATION_QUEUE,
    VIDEO_GENERATION_QUEUE,
    LLM_GENERATION_QUEUE,
    PROCESSING_QUEUE,
)


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before a failed job runs again.

    fixed:       delay
    exponential: delay * 2 ** (attempt - 1)
    """
    type: str = "fixed"
    delay: int = 1000  # milliseconds

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-indexed)."""
        if self.type == "exponential":
            return (self.delay * (2 ** max(attempt - 1, 0))) / 1000.0
        return self.delay / 1000.0


@dataclass(frozen=True)
class QueueConfig:
    """Per-queue defaults consumed by the queue runtime."""
    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    completed_ttl: int = 3600     # seconds
    completed_keep: int = 1000    # most recent finished jobs kept in memory
    failed_ttl: int = 86400
    failed_keep: int = 5000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": {"type": self.backoff.type, "delay": self.backoff.delay},
            "removeOnComplete": {"age": self.completed_ttl, "count": self.completed_keep},
            "removeOnFail": {"age": self.failed_ttl, "count": self.failed_keep},
        }


DEFAULT_QUEUE_CONFIGS: Dict[str, QueueConfig] = {
    WORKFLOW_ORCHESTRATOR_QUEUE: QueueConfig(
        backoff=BackoffPolicy("exponential", 2000),
    ),
    IMAGE_GENERATION_QUEUE: QueueConfig(
        backoff=BackoffPolicy("fixed", 1000),
    ),
    VIDEO_GENERATION_QUEUE: QueueConfig(
        backoff=BackoffPolicy("exponential", 3000),
        completed_keep=500,
        failed_keep=2000,
    ),
    LLM_GENERATION_QUEUE: QueueConfig(
        backoff=BackoffPolicy("fixed", 500),
        completed_keep=2000,
    ),
    PROCESSING_QUEUE: QueueConfig(
        backoff=BackoffPolicy("exponential", 2000),
        completed_keep=500,
        failed_keep=2000,
    ),
}


def get_queue_config(queue_name: str) -> QueueConfig:
    """Config for a queue, falling back to the shared defaults."""
    return DEFAULT_QUEUE_CONFIGS.get(queue_name, QueueConfig())


@dataclass
class WorkflowJobData:
    """Payload of an ``execute-workflow`` job."""
    execution_id: str
    workflow_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"executionId": self.execution_id, "workflowId": self.workflow_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowJobData":
        return cls(execution_id=data["executionId"], workflow_id=data["workflowId"])


@dataclass
class NodeJobData:
    """Payload of a per-node job.

    ``depends_on`` is None for a node with no incoming edges, never an empty list.
    """
    execution_id: str
    workflow_id: str
    node_id: str
    node_type: str
    node_data: Dict[str, Any] = field(default_factory=dict)
    depends_on: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "nodeId": self.node_id,
            "nodeType": self.node_type,
            "nodeData": self.node_data,
        }
        if self.depends_on:
            data["dependsOn"] = list(self.depends_on)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeJobData":
        return cls(
            execution_id=data["executionId"],
            workflow_id=data["workflowId"],
            node_id=data["nodeId"],
            node_type=data["nodeType"],
            node_data=data.get("nodeData") or {},
            depends_on=data.get("dependsOn") or None,
        )


@dataclass
class JobResult:
    """Outcome of one node job, stored as the Job record's ``result``."""
    success: bool
    output: Any = None
    error: Optional[str] = None
    operation_id: Optional[str] = None
    cost: float = 0.0
    metrics: Dict[str, Any] = field(default_factory=dict)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.output is not None:
            data["output"] = self.output
        if self.error is not None:
            data["error"] = self.error
        if self.operation_id is not None:
            data["predictionId"] = self.operation_id
        if self.cost:
            data["cost"] = self.cost
        if self.metrics:
            data["metrics"] = self.metrics
        if self.skipped:
            data["skipped"] = True
        return data


@dataclass
class JobLogEntry:
    """One entry of a Job record's append-only audit log."""
    message: str
    level: str = "info"
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "message": self.message, "level": self.level}


@dataclass
class ProviderStatus:
    """Envelope returned by ``GenerationProvider.poll_status``.

    status is one of: starting, processing, succeeded, failed, canceled.
    """
    status: str
    output: Any = None
    error: Optional[str] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("succeeded", "failed", "canceled")
