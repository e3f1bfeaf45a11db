"""Provider-backed node processor for image, video, LLM and processing nodes."""

from typing import Any, Dict, List, Mapping, Optional

from constants import JOB_STATUS_ACTIVE
from core.config import Settings
from core.logging import get_logger
from models.queue import JobResult, NodeJobData
from services.executions import ExecutionService
from services.poller import POLL_CONFIGS, PollConfig, poll_for_completion
from services.pricing import PricingService
from services.processors.base import NodeProcessor
from services.processors.handlers import (
    FAMILY_PROCESSING,
    NodeHandler,
    collect_inputs,
    get_node_handler,
    shape_output,
    with_input_type,
)
from services.providers.base import GenerationProvider
from services.queue.manager import QueueManager
from services.queue.runtime import QueueJob, UnrecoverableJobError

logger = get_logger(__name__)


class GenerationProcessor(NodeProcessor):
    """Dispatch, poll, cost and shape one node through its family's provider.

    ``providers`` maps a handler family (image, video, llm, processing) to the
    provider that serves it.
    """

    def __init__(self, queue_manager: QueueManager, executions: ExecutionService, settings: Settings,
                 pricing: PricingService, providers: Mapping[str, GenerationProvider],
                 poll_configs: Optional[Mapping[str, PollConfig]] = None):
        super().__init__(queue_manager, executions, settings)
        self.pricing = pricing
        self.providers = dict(providers)
        self.poll_configs = dict(poll_configs or POLL_CONFIGS)

    def _provider_for(self, handler: NodeHandler) -> GenerationProvider:
        provider = self.providers.get(handler.family)
        if provider is None:
            raise UnrecoverableJobError(f"No provider configured for {handler.family} nodes")
        return provider

    async def _existing_operation(self, job_id: str) -> Optional[str]:
        """Operation id dispatched by an earlier attempt that never reported an outcome."""
        record = await self.queue_manager.get_job(job_id)
        result = record.result or {}
        if "success" in result:
            return None
        return result.get("predictionId")

    async def execute(self, job: QueueJob, data: NodeJobData,
                      upstream: List[Optional[Dict[str, Any]]]) -> JobResult:
        try:
            handler = get_node_handler(data.node_type)
        except ValueError as e:
            raise UnrecoverableJobError(str(e)) from e

        provider = self._provider_for(handler)
        inputs = collect_inputs(upstream)
        node_data = data.node_data
        if handler.family == FAMILY_PROCESSING:
            node_data = with_input_type(node_data, inputs)

        logger.info(f"Starting {data.node_type} generation", job_id=job.id,
                    execution_id=data.execution_id, node_id=data.node_id)

        operation_id = await self._existing_operation(job.id)
        if operation_id:
            logger.info("Retry: resuming existing prediction", job_id=job.id, prediction_id=operation_id)
            await self.queue_manager.add_job_log(job.id, f"Resuming prediction: {operation_id}")
        else:
            model, params = handler.build_request(node_data, inputs)
            operation_id = await provider.dispatch(model, params)
            await self.queue_manager.update_job_status(
                job.id, JOB_STATUS_ACTIVE, result={"predictionId": operation_id}
            )
            await self.queue_manager.add_job_log(job.id, f"Created prediction: {operation_id}")

        config = self.poll_configs[handler.poll_config(node_data)]
        await job.update_progress(config.progress_start, "Prediction created")

        result = await poll_for_completion(
            provider, operation_id, config,
            on_progress=job.update_progress,
            on_heartbeat=lambda: self.queue_manager.record_heartbeat(job.id),
        )
        if not result.success:
            return result

        result.output = shape_output(handler.output_kind(node_data), result.output)
        result.cost = handler.cost(self.pricing, data.node_type, node_data, result.metrics)
        logger.info(f"{data.node_type} generation completed", job_id=job.id,
                    prediction_id=operation_id, cost=result.cost)
        return result
