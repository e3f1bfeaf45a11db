"""Async database service with SQLModel and SQLAlchemy 2.0."""

from contextlib import asynccontextmanager
from typing import Any, Dict

from sqlmodel import SQLModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from core.config import Settings
from core.logging import get_logger
# Imported for table registration on SQLModel.metadata
from models.database import Workflow, Execution, NodeResult, JobRecord  # noqa: F401

logger = get_logger(__name__)


class Database:
    """Owns the async engine and session factory.

    Query logic lives in the stores and services that take this object;
    Database itself only manages connections and schema creation.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    def _engine_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
        if not self.settings.is_sqlite:
            kwargs["pool_size"] = self.settings.database_pool_size
            kwargs["max_overflow"] = self.settings.database_max_overflow
            kwargs["pool_pre_ping"] = True
        else:
            kwargs["connect_args"] = {"timeout": 30}
        return kwargs

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            self.engine = create_async_engine(self.settings.database_url, **self._engine_kwargs())

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized", url=self.settings.database_url.split("@")[-1])

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> bool:
        """Round-trip a trivial query; used by the health endpoint."""
        async with self.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
