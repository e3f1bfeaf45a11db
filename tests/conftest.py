"""
Pytest configuration and fixtures for the workflow pipeline tests.

Every test gets its own SQLite file, an in-process queue runtime and a
scripted provider, so nothing touches Redis or the network.
"""

import os
from collections import defaultdict
from typing import Any, Dict, List, Optional

# Keep module-level Settings() in main.py off the real data directory
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("REDIS_ENABLED", "false")

import pytest

from core.config import Settings
from core.database import Database
from models.queue import ProviderStatus
from services.executions import ExecutionService
from services.poller import POLL_CONFIGS, PollConfig
from services.pricing import PricingService
from services.processors import GenerationProcessor, WorkflowProcessor, WorkflowRefProcessor
from services.queue import InMemoryQueueRuntime, JobRecoveryService, JobStore, QueueManager
from services.workflow import WorkflowService


class FakeProvider:
    """Scripted GenerationProvider.

    Each dispatched operation walks through ``statuses`` one poll at a time
    and then keeps repeating the last one.
    """

    name = "fake"

    def __init__(self, statuses: Optional[List[str]] = None, output: Any = "https://cdn.test/out.bin",
                 error: Optional[str] = None, metrics: Optional[Dict[str, Any]] = None,
                 dispatch_error: Optional[Exception] = None):
        self.statuses = statuses or ["succeeded"]
        self.output = output
        self.error = error
        self.metrics = metrics or {}
        self.dispatch_error = dispatch_error
        self.dispatched: List[Dict[str, Any]] = []
        self.poll_calls: Dict[str, int] = defaultdict(int)

    @property
    def total_polls(self) -> int:
        return sum(self.poll_calls.values())

    async def dispatch(self, model: str, params: Dict[str, Any]) -> str:
        if self.dispatch_error is not None:
            raise self.dispatch_error
        self.dispatched.append({"model": model, "params": params})
        return f"pred-{len(self.dispatched)}"

    async def poll_status(self, operation_id: str) -> ProviderStatus:
        index = min(self.poll_calls[operation_id], len(self.statuses) - 1)
        self.poll_calls[operation_id] += 1
        status = self.statuses[index]
        if status == "succeeded":
            return ProviderStatus(status=status, output=self.output, metrics=self.metrics)
        if status in ("failed", "canceled"):
            return ProviderStatus(status=status, error=self.error)
        return ProviderStatus(status=status)


# No waiting between polls in tests
FAST_POLL_CONFIGS = {
    name: PollConfig(interval=0, max_attempts=config.max_attempts,
                     progress_start=config.progress_start, progress_end=config.progress_end)
    for name, config in POLL_CONFIGS.items()
}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}",
        queue_backend="memory",
        redis_enabled=False,
        dependency_wait_delay=0,
        child_poll_interval=0.01,
        child_max_polls=1000,
        recovery_enabled=False,
        stale_threshold_seconds=60,
        max_recovery_attempts=3,
        log_format="console",
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def pricing() -> PricingService:
    return PricingService()


@pytest.fixture
def runtime() -> InMemoryQueueRuntime:
    return InMemoryQueueRuntime()


@pytest.fixture
def store(database) -> JobStore:
    return JobStore(database)


@pytest.fixture
def queue_manager(runtime, store) -> QueueManager:
    return QueueManager(runtime, store)


@pytest.fixture
def executions(database) -> ExecutionService:
    return ExecutionService(database)


@pytest.fixture
def workflows(database, executions, pricing, queue_manager) -> WorkflowService:
    return WorkflowService(database, executions, pricing, queue_manager)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def generation_processor(queue_manager, executions, settings, pricing, provider) -> GenerationProcessor:
    return GenerationProcessor(
        queue_manager, executions, settings, pricing,
        providers={"image": provider, "video": provider, "llm": provider, "processing": provider},
        poll_configs=FAST_POLL_CONFIGS,
    )


@pytest.fixture
def ref_processor(queue_manager, executions, settings, workflows, pricing) -> WorkflowRefProcessor:
    return WorkflowRefProcessor(queue_manager, executions, settings, workflows, pricing)


@pytest.fixture
def workflow_processor(queue_manager, executions, workflows, ref_processor) -> WorkflowProcessor:
    return WorkflowProcessor(queue_manager, executions, workflows, ref_processor)


@pytest.fixture
def recovery(queue_manager, store, executions, settings) -> JobRecoveryService:
    return JobRecoveryService(queue_manager, store, executions, settings)


@pytest.fixture
def restarted_manager(store) -> QueueManager:
    """Same job records, empty runtime: the state after a process restart."""
    return QueueManager(InMemoryQueueRuntime(), store)


@pytest.fixture
def restarted_recovery(restarted_manager, store, executions, settings) -> JobRecoveryService:
    return JobRecoveryService(restarted_manager, store, executions, settings)


def node(node_id: str, node_type: str, **data: Any) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "data": data}


def edge(source: str, target: str) -> Dict[str, Any]:
    return {"id": f"{source}->{target}", "source": source, "target": target}
