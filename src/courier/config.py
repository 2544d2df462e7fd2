"""Configuration management for Courier."""

import logging
import warnings
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Courier configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the COURIER_ prefix. For example:
        COURIER_STORAGE_BACKEND=qdrant
        COURIER_QDRANT_URL=http://localhost:6333
        COURIER_WEBHOOK_TIMEOUT_SECONDS=10

    The retry schedule, attempt limit and circuit breaker threshold are
    part of the delivery contract and live in `courier.webhooks` as
    constants rather than here.
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    storage_backend: Literal["memory", "qdrant"] = Field(
        default="memory",
        description="Where subscriptions and deliveries are persisted",
    )
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (for cloud)",
    )
    collection_prefix: str = Field(
        default="courier",
        description="Prefix for Qdrant collection names",
    )
    storage_max_scroll_limit: int = Field(
        default=10000,
        ge=100,
        le=100000,
        description="Maximum records to fetch in a single scroll page",
    )

    # Scheduling
    scheduler_backend: Literal["inprocess", "polling"] = Field(
        default="inprocess",
        description=(
            "Job scheduler: 'inprocess' (one asyncio timer per job) or "
            "'polling' (due-time queue drained on a fixed tick)"
        ),
    )
    scheduler_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="Tick interval for the polling scheduler",
    )

    # Delivery
    webhook_timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Timeout for one outbound webhook POST",
    )
    webhook_max_concurrent: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum outbound attempts in flight at once",
    )

    # Recovery sweep
    sweep_enabled: bool = Field(
        default=True,
        description="Periodically reschedule pending deliveries that lost their job",
    )
    sweep_interval_seconds: float = Field(
        default=60.0,
        ge=1.0,
        description="How often the recovery sweep runs",
    )
    sweep_grace_seconds: float = Field(
        default=120.0,
        ge=1.0,
        description=(
            "A pending delivery is only considered orphaned once it has been "
            "due for at least this long"
        ),
    )
    sweep_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum deliveries rescheduled per sweep",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # CORS Configuration
    cors_enabled: bool = Field(
        default=True,
        description="Enable CORS middleware",
    )
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        description="List of allowed CORS origins",
    )
    cors_allow_methods: list[str] = Field(
        default_factory=lambda: ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        description="Allowed HTTP methods for CORS requests",
    )
    cors_allow_headers: list[str] = Field(
        default_factory=lambda: ["*"],
        description="Allowed headers for CORS requests",
    )

    model_config = {
        "env_prefix": "COURIER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @model_validator(mode="after")
    def validate_durability(self) -> "Settings":
        """Check that production deployments can keep the at-least-once promise.

        - The memory store loses every pending delivery on restart, so it
          only warns in production.
        - With the in-process scheduler, timers die with the process; the
          recovery sweep is the only thing that picks those deliveries up
          again, so production refuses to run without it.
        """
        if self.env != "production":
            return self

        if self.storage_backend == "memory":
            warnings.warn(
                "COURIER_STORAGE_BACKEND=memory in production: pending deliveries "
                "are lost on restart. Use 'qdrant' for durable storage.",
                UserWarning,
                stacklevel=2,
            )
            logger.warning("Memory storage backend used in production")

        if self.scheduler_backend == "inprocess" and not self.sweep_enabled:
            raise ValueError(
                "COURIER_SWEEP_ENABLED must be true in production when the in-process "
                "scheduler is used; scheduled retries do not survive a restart."
            )

        return self


# Global settings instance
settings = Settings()
