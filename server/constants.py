"""Centralized constants for queues, node types and status values.

Single source of truth for the node-type routing table and every status
string persisted on jobs, executions and node results.
"""

from typing import Dict, FrozenSet

# =============================================================================
# QUEUE NAMES
# =============================================================================

WORKFLOW_ORCHESTRATOR_QUEUE = "workflow-orchestrator"
IMAGE_GENERATION_QUEUE = "image-generation"
VIDEO_GENERATION_QUEUE = "video-generation"
LLM_GENERATION_QUEUE = "llm-generation"
PROCESSING_QUEUE = "processing"

ALL_QUEUES = (
    WORKFLOW_ORCHESTRATOR_QUEUE,
    IMAGE_GENERATION_QUEUE,
    VIDEO_GENERATION_QUEUE,
    LLM_GENERATION_QUEUE,
    PROCESSING_QUEUE,
)

# Queues whose workers call third-party generation providers
PROVIDER_QUEUES: FrozenSet[str] = frozenset([
    IMAGE_GENERATION_QUEUE,
    VIDEO_GENERATION_QUEUE,
    LLM_GENERATION_QUEUE,
    PROCESSING_QUEUE,
])

# =============================================================================
# JOB NAMES
# =============================================================================

JOB_EXECUTE_WORKFLOW = "execute-workflow"
JOB_EXECUTE_NODE = "execute-node"
JOB_GENERATE_IMAGE = "generate-image"
JOB_GENERATE_VIDEO = "generate-video"
JOB_GENERATE_TEXT = "generate-text"

# Lower number = higher priority
PRIORITY_CRITICAL = 1
PRIORITY_HIGH = 2
PRIORITY_NORMAL = 5
PRIORITY_LOW = 10

ROOT_NODE_ID = "root"

# =============================================================================
# NODE TYPES
# =============================================================================

IMAGE_NODE_TYPES: FrozenSet[str] = frozenset(['imageGen'])

VIDEO_NODE_TYPES: FrozenSet[str] = frozenset(['videoGen', 'motionControl'])
MOTION_NODE_TYPE = 'motionControl'

LLM_NODE_TYPES: FrozenSet[str] = frozenset(['llm'])

PROCESSING_NODE_TYPES: FrozenSet[str] = frozenset([
    'reframe',
    'upscale',
    'videoFrameExtract',
    'lipSync',
    'voiceChange',
    'textToSpeech',
])

WORKFLOW_REF_NODE_TYPE = 'workflowRef'
WORKFLOW_INPUT_NODE_TYPE = 'workflowInput'
WORKFLOW_OUTPUT_NODE_TYPE = 'workflowOutput'

# Input/output/display nodes carry data only; they complete without a job
PASSTHROUGH_NODE_TYPES: FrozenSet[str] = frozenset([
    'prompt',
    'imageInput',
    'videoInput',
    'audioInput',
    'output',
    'preview',
    'annotation',
    WORKFLOW_INPUT_NODE_TYPE,
    WORKFLOW_OUTPUT_NODE_TYPE,
])

NODE_TYPE_TO_QUEUE: Dict[str, str] = {
    **{t: IMAGE_GENERATION_QUEUE for t in IMAGE_NODE_TYPES},
    **{t: VIDEO_GENERATION_QUEUE for t in VIDEO_NODE_TYPES},
    **{t: LLM_GENERATION_QUEUE for t in LLM_NODE_TYPES},
    **{t: PROCESSING_QUEUE for t in PROCESSING_NODE_TYPES},
    # Nested execution runs through the orchestrator
    WORKFLOW_REF_NODE_TYPE: WORKFLOW_ORCHESTRATOR_QUEUE,
}

NODE_TYPE_TO_JOB_NAME: Dict[str, str] = {
    'imageGen': JOB_GENERATE_IMAGE,
    'videoGen': JOB_GENERATE_VIDEO,
    'llm': JOB_GENERATE_TEXT,
}

NODE_TYPE_PRIORITY: Dict[str, int] = {
    'llm': PRIORITY_HIGH,
    'imageGen': PRIORITY_NORMAL,
    'videoGen': PRIORITY_LOW,
}

# =============================================================================
# STATUS VALUES
# =============================================================================

JOB_STATUS_PENDING = "pending"
JOB_STATUS_ACTIVE = "active"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_DELAYED = "delayed"
JOB_STATUS_WAITING = "waiting"
JOB_STATUS_STALLED = "stalled"
JOB_STATUS_RECOVERED = "recovered"

JOB_STATUSES: FrozenSet[str] = frozenset([
    JOB_STATUS_PENDING,
    JOB_STATUS_ACTIVE,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_DELAYED,
    JOB_STATUS_WAITING,
    JOB_STATUS_STALLED,
    JOB_STATUS_RECOVERED,
])

JOB_LOG_LEVELS: FrozenSet[str] = frozenset(['info', 'warn', 'error', 'debug'])

EXECUTION_STATUS_PENDING = "pending"
EXECUTION_STATUS_RUNNING = "running"
EXECUTION_STATUS_COMPLETED = "completed"
EXECUTION_STATUS_FAILED = "failed"
EXECUTION_STATUS_CANCELLED = "cancelled"

TERMINAL_EXECUTION_STATUSES: FrozenSet[str] = frozenset([
    EXECUTION_STATUS_COMPLETED,
    EXECUTION_STATUS_FAILED,
    EXECUTION_STATUS_CANCELLED,
])

NODE_STATUS_PENDING = "pending"
NODE_STATUS_PROCESSING = "processing"
NODE_STATUS_COMPLETE = "complete"
NODE_STATUS_ERROR = "error"

NODE_RESULT_STATUSES: FrozenSet[str] = frozenset([
    NODE_STATUS_PENDING,
    NODE_STATUS_PROCESSING,
    NODE_STATUS_COMPLETE,
    NODE_STATUS_ERROR,
])
