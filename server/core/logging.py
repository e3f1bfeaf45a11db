"""Structured logging for the pipeline service.

Log lines emitted while a queue job runs carry that job's ``job_id``, ``queue`` and
``attempt`` through structlog's contextvars, so handler code only adds what it knows
(execution, node, prediction ids).
"""

import sys
import logging
from pathlib import Path
from typing import ContextManager

import structlog

from core.config import Settings

NOISY_LOGGERS = (
    "aiosqlite",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "httpx",
    "httpcore",
    "uvicorn.access",
)


def _build_handlers(settings: Settings, level: int):
    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def _renderer(log_format: str):
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=False,
        pad_event=35,
        exception_formatter=structlog.dev.plain_traceback
    )


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging with the configured level, format and file."""
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(level=level, handlers=_build_handlers(settings, level),
                        format="%(message)s", force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    as_json = settings.log_format == "json"
    timestamp_fmt = "iso" if as_json else "%H:%M:%S"

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        structlog.stdlib.add_log_level,
    ]
    if as_json:
        processors.append(structlog.stdlib.add_logger_name)
    processors += [
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _renderer(settings.log_format),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def job_log_context(job_id: str, queue: str, attempt: int) -> ContextManager:
    """Bind job identity to every log line emitted inside the block."""
    return structlog.contextvars.bound_contextvars(job_id=job_id, queue=queue, attempt=attempt)


def log_provider_call(logger: structlog.BoundLogger, provider: str, model: str,
                      operation: str, success: bool, **kwargs) -> None:
    """Log generation provider calls with standardized format."""
    logger.info(
        "Provider call completed",
        provider=provider,
        model=model,
        operation=operation,
        success=success,
        **kwargs
    )
