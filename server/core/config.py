"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=3010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/pipeline.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=5, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=10, le=100)

    # Redis / Queue substrate
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_enabled: bool = Field(default=False, env="REDIS_ENABLED")
    queue_backend: Literal["memory", "redis"] = Field(default="memory", env="QUEUE_BACKEND")
    redis_poll_timeout: float = Field(default=1.0, env="REDIS_POLL_TIMEOUT", gt=0)
    # Lease on an active job; renewed while its worker runs, lapses if the process dies
    redis_lock_duration: float = Field(default=30.0, env="REDIS_LOCK_DURATION", gt=0)

    # Queue tuning
    orchestrator_concurrency: int = Field(default=10, env="ORCHESTRATOR_CONCURRENCY", ge=1, le=100)
    provider_concurrency: int = Field(default=1, env="PROVIDER_CONCURRENCY", ge=1, le=20)

    # Dependency gating between node jobs
    enforce_dependencies: bool = Field(default=True, env="ENFORCE_DEPENDENCIES")
    dependency_wait_delay: float = Field(default=5.0, env="DEPENDENCY_WAIT_DELAY", ge=0)

    # Job recovery
    recovery_enabled: bool = Field(default=True, env="RECOVERY_ENABLED")
    stale_threshold_seconds: int = Field(default=300, env="STALE_THRESHOLD_SECONDS", ge=1)
    recovery_interval_seconds: int = Field(default=300, env="RECOVERY_INTERVAL_SECONDS", ge=1)
    max_recovery_attempts: int = Field(default=3, env="MAX_RECOVERY_ATTEMPTS", ge=1)

    # Generation providers
    replicate_api_token: Optional[str] = Field(default=None, env="REPLICATE_API_TOKEN")
    replicate_base_url: str = Field(default="https://api.replicate.com/v1", env="REPLICATE_BASE_URL")
    provider_timeout: int = Field(default=30, env="PROVIDER_TIMEOUT", ge=5, le=300)

    # Pricing
    pricing_config_path: Optional[str] = Field(default=None, env="PRICING_CONFIG_PATH")

    # Nested workflow execution
    max_workflow_depth: int = Field(default=10, env="MAX_WORKFLOW_DEPTH", ge=1)
    child_poll_interval: float = Field(default=5.0, env="CHILD_POLL_INTERVAL", ge=0)
    child_max_polls: int = Field(default=360, env="CHILD_MAX_POLLS", ge=1)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split("///")[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @model_validator(mode="after")
    def validate_queue_backend(self):
        """Redis queue backend needs Redis switched on and reachable by URL."""
        if self.queue_backend == "redis" and not (self.redis_enabled and self.redis_url):
            raise ValueError("QUEUE_BACKEND=redis requires REDIS_ENABLED=true and REDIS_URL")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
