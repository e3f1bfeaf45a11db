"""Queue job processors.

Usage:
    from services.processors import register_processors

    register_processors(runtime, workflow_processor, generation_processor, settings)
    await runtime.start()
"""

from constants import PROVIDER_QUEUES, WORKFLOW_ORCHESTRATOR_QUEUE
from core.config import Settings
from core.logging import get_logger
from services.queue.runtime import QueueRuntime

from .base import NodeProcessor, DependencyFailedError, GenerationFailedError, is_final_attempt
from .generation import GenerationProcessor
from .handlers import NODE_HANDLERS, NodeHandler, get_node_handler
from .workflow import WorkflowProcessor, WorkflowRefProcessor, fan_out

logger = get_logger(__name__)


def register_processors(runtime: QueueRuntime, workflow_processor: WorkflowProcessor,
                        generation_processor: GenerationProcessor, settings: Settings) -> None:
    """Attach handlers to every queue.

    Provider queues run at ``provider_concurrency`` to stay under provider
    rate limits; the orchestration queue only enqueues, so it runs wider.
    """
    runtime.register(WORKFLOW_ORCHESTRATOR_QUEUE, workflow_processor.handle,
                     concurrency=settings.orchestrator_concurrency)
    for queue_name in sorted(PROVIDER_QUEUES):
        runtime.register(queue_name, generation_processor.handle,
                         concurrency=settings.provider_concurrency)
    logger.info("Queue processors registered",
                orchestrator_concurrency=settings.orchestrator_concurrency,
                provider_concurrency=settings.provider_concurrency)


__all__ = [
    "NodeProcessor",
    "DependencyFailedError",
    "GenerationFailedError",
    "is_final_attempt",
    "GenerationProcessor",
    "NODE_HANDLERS",
    "NodeHandler",
    "get_node_handler",
    "WorkflowProcessor",
    "WorkflowRefProcessor",
    "fan_out",
    "register_processors",
]
