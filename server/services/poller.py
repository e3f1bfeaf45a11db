"""Poll-for-completion loop shared by every provider-backed node processor."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from core.logging import get_logger
from models.queue import JobResult
from services.providers.base import GenerationProvider

logger = get_logger(__name__)

ProgressCallback = Callable[[float, str], Awaitable[None]]
HeartbeatCallback = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class PollConfig:
    interval: float       # seconds between status checks
    max_attempts: int
    progress_start: float = 30
    progress_end: float = 90

    def progress_at(self, attempt: int) -> float:
        span = self.progress_end - self.progress_start
        return self.progress_start + min((attempt / self.max_attempts) * span, span)


POLL_IMAGE = "image"
POLL_VIDEO = "video"
POLL_LLM = "llm"
POLL_PROCESSING_IMAGE = "processing-image"
POLL_PROCESSING_VIDEO = "processing-video"

POLL_CONFIGS: Dict[str, PollConfig] = {
    POLL_IMAGE: PollConfig(interval=5, max_attempts=60, progress_start=30, progress_end=90),
    POLL_VIDEO: PollConfig(interval=10, max_attempts=120, progress_start=15, progress_end=95),
    POLL_LLM: PollConfig(interval=2, max_attempts=90, progress_start=20, progress_end=90),
    POLL_PROCESSING_IMAGE: PollConfig(interval=5, max_attempts=180, progress_start=30, progress_end=90),
    POLL_PROCESSING_VIDEO: PollConfig(interval=10, max_attempts=180, progress_start=30, progress_end=90),
}

_METRIC_NAMES = {
    "predict_time": "predictTime",
    "input_token_count": "inputTokens",
    "output_token_count": "outputTokens",
}


async def poll_for_completion(provider: GenerationProvider, operation_id: str, config: PollConfig,
                              on_progress: Optional[ProgressCallback] = None,
                              on_heartbeat: Optional[HeartbeatCallback] = None) -> JobResult:
    """Poll until the operation reaches a terminal state or the attempt budget runs out.

    Provider-reported failure, cancellation and timeout come back as a
    ``JobResult(success=False)``; only transport errors raise.
    """
    for attempt in range(config.max_attempts):
        status = await provider.poll_status(operation_id)

        if on_progress:
            await on_progress(config.progress_at(attempt), f"Status: {status.status}")
        if on_heartbeat:
            await on_heartbeat()

        if status.status == "succeeded":
            if on_progress:
                await on_progress(100, "Completed")
            metrics = {
                name: status.metrics[key]
                for key, name in _METRIC_NAMES.items()
                if status.metrics.get(key) is not None
            }
            return JobResult(
                success=True,
                output=status.output,
                operation_id=operation_id,
                metrics=metrics,
            )

        if status.status in ("failed", "canceled"):
            return JobResult(
                success=False,
                error=status.error or f"Prediction {status.status}",
                operation_id=operation_id,
            )

        await asyncio.sleep(config.interval)

    logger.warning("Prediction timed out", prediction_id=operation_id, attempts=config.max_attempts)
    return JobResult(success=False, error="Prediction timed out", operation_id=operation_id)
