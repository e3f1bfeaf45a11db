"""
Workflow execution pipeline service.
FastAPI app wiring the queue runtime, node processors and job recovery.
"""

from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.exceptions import NotFoundError
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import executions, queue, workflow
from services.processors import register_processors
from services.queue import get_job_recovery, set_job_recovery

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


async def startup_services() -> None:
    """Bring up storage, the queue runtime with its processors, and recovery."""
    current = container.settings()

    await container.database().startup()
    await container.cache().startup()

    runtime = container.queue_runtime()
    register_processors(runtime, container.workflow_processor(), container.generation_processor(), current)
    await runtime.start()

    if current.recovery_enabled:
        recovery = container.job_recovery()
        set_job_recovery(recovery)
        await recovery.start()

    set_startup_time()
    logger.info("Services started successfully", queue_backend=current.queue_backend,
                recovery_enabled=current.recovery_enabled)


async def shutdown_services() -> None:
    # Stop recovery before the runtime so no sweep enqueues into a stopped runtime
    recovery = get_job_recovery()
    if recovery is not None:
        await recovery.stop()
        set_job_recovery(None)

    await container.queue_runtime().stop()
    await container.replicate().aclose()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting workflow pipeline service")
    await startup_services()
    yield
    await shutdown_services()


# Create FastAPI app
app = FastAPI(
    title="Workflow Pipeline Service",
    version="1.0.0",
    description="Queue-backed execution of generation workflows",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"success": False, "error": str(exc)}
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": str(exc)}
    )


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


# Exception middleware goes in before CORS to catch all errors
app.add_middleware(CatchAllExceptionsMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflow.router)
app.include_router(executions.router)
app.include_router(queue.router)


@app.get("/health")
async def health_check():
    """Database and Redis checks, uptime, queue and recovery state."""
    health = await get_health_status(
        container.database(),
        container.cache(),
        container.settings(),
        container.queue_runtime(),
        get_job_recovery(),
    )
    return {
        **health,
        "service": "workflow-pipeline",
        "environment": "development" if settings.debug else "production",
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting workflow pipeline service",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
    )
