"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.executions import ExecutionService
from services.pricing import PricingService
from services.processors import GenerationProcessor, WorkflowProcessor, WorkflowRefProcessor
from services.processors.handlers import FAMILY_IMAGE, FAMILY_LLM, FAMILY_PROCESSING, FAMILY_VIDEO
from services.providers import ReplicateProvider
from services.queue import JobRecoveryService, JobStore, QueueManager, create_queue_runtime
from services.workflow import WorkflowService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Redis client (required only when it backs the queues)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    # Queue layer; the runtime is built after cache startup
    queue_runtime = providers.Singleton(
        create_queue_runtime,
        settings=settings,
        cache=cache
    )

    job_store = providers.Singleton(
        JobStore,
        database=database
    )

    queue_manager = providers.Singleton(
        QueueManager,
        runtime=queue_runtime,
        store=job_store
    )

    # Services
    executions = providers.Singleton(
        ExecutionService,
        database=database
    )

    pricing = providers.Singleton(
        PricingService,
        config_path=settings.provided.pricing_config_path
    )

    workflow_service = providers.Singleton(
        WorkflowService,
        database=database,
        executions=executions,
        pricing=pricing,
        queue_manager=queue_manager
    )

    job_recovery = providers.Singleton(
        JobRecoveryService,
        queue_manager=queue_manager,
        store=job_store,
        executions=executions,
        settings=settings
    )

    # Generation providers, one per node family
    replicate = providers.Singleton(
        ReplicateProvider,
        settings=settings
    )

    generation_providers = providers.Dict({
        FAMILY_IMAGE: replicate,
        FAMILY_VIDEO: replicate,
        FAMILY_LLM: replicate,
        FAMILY_PROCESSING: replicate,
    })

    # Processors
    generation_processor = providers.Singleton(
        GenerationProcessor,
        queue_manager=queue_manager,
        executions=executions,
        settings=settings,
        pricing=pricing,
        providers=generation_providers
    )

    workflow_ref_processor = providers.Singleton(
        WorkflowRefProcessor,
        queue_manager=queue_manager,
        executions=executions,
        settings=settings,
        workflows=workflow_service,
        pricing=pricing
    )

    workflow_processor = providers.Singleton(
        WorkflowProcessor,
        queue_manager=queue_manager,
        executions=executions,
        workflows=workflow_service,
        ref_processor=workflow_ref_processor
    )


# Global container instance
container = Container()
