"""Pydantic configuration schema for mailflow.

This module defines the configuration schema that mirrors config.yaml
structure. Configuration is validated against these models on startup and
the resulting AppConfig is passed explicitly to every component.

Usage:
    from mailflow.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class DatabaseConfig(BaseModel):
    """SQLite storage configuration."""

    path: str = Field(
        default="data/mailflow.db",
        description="Path to the SQLite database holding actions, jobs, digests and the queue",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the database path is set and doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LoggingConfig(BaseModel):
    """Log output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level",
    )
    json_output: bool = Field(
        default=True,
        description="Emit JSON lines (services) instead of console output",
    )


class QueueConfig(BaseModel):
    """Durable job queue and consumer configuration."""

    poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        le=60,
        description="How often the consumer polls for due jobs",
    )
    claim_batch_size: int = Field(
        default=20,
        ge=1,
        le=200,
        description="Max jobs claimed per poll",
    )
    lease_seconds: int = Field(
        default=900,
        ge=60,
        le=7200,
        description="How long a claimed job is owned before it is considered abandoned",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts per job (first run included)",
    )
    retry_delays_seconds: list[int] = Field(
        default=[60, 300],
        description="Delay before each retry; the last value repeats",
    )

    @field_validator("retry_delays_seconds")
    @classmethod
    def validate_retry_delays(cls, v: list[int]) -> list[int]:
        """Delays must be non-negative and at least one must be given."""
        if not v:
            raise ValueError("At least one retry delay is required")
        if any(delay < 0 for delay in v):
            raise ValueError("Retry delays cannot be negative")
        return v


class ScheduledActionsConfig(BaseModel):
    """Delayed action execution and recovery sweeper configuration."""

    executor_timeout_seconds: int = Field(
        default=300,
        ge=10,
        le=3600,
        description="Wall-clock limit for one executor invocation",
    )
    sweeper_interval_minutes: int = Field(
        default=5,
        ge=1,
        le=1440,
        description="How often the recovery sweeper re-arms itself",
    )
    sweeper_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Max overdue actions re-driven per sweep",
    )
    sweeper_timeout_seconds: int = Field(
        default=300,
        ge=10,
        le=3600,
        description="Wall-clock limit for one sweep",
    )


class BulkConfig(BaseModel):
    """Bulk mailbox processing configuration."""

    page_size: int = Field(
        default=25,
        ge=1,
        le=100,
        description="Messages fetched per fetcher invocation",
    )
    fetcher_concurrency: int = Field(
        default=1,
        ge=1,
        le=1,
        description="Concurrent fetchers per account (page cursors are not shareable)",
    )
    worker_concurrency: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Concurrent message workers per account",
    )
    fetcher_timeout_seconds: int = Field(default=300, ge=10, le=3600)
    worker_timeout_seconds: int = Field(default=300, ge=10, le=3600)
    ignored_senders: list[str] = Field(
        default_factory=list,
        description="Sender addresses never queued for bulk processing",
    )

    @field_validator("ignored_senders")
    @classmethod
    def normalize_senders(cls, v: list[str]) -> list[str]:
        """Lowercase and strip sender addresses."""
        return [s.strip().lower() for s in v if s and s.strip()]


class DigestConfig(BaseModel):
    """Digest aggregation and delivery configuration."""

    system_from_email: str | None = Field(
        default=None,
        description="Address the system sends from; mail from it is never digested",
    )
    fetch_batch_size: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Message ids fetched per provider batch call",
    )
    fetch_batch_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        le=60,
        description="Pause between message batches",
    )
    aggregator_concurrency: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Concurrent digest aggregation jobs per account",
    )
    send_timeout_seconds: int = Field(default=300, ge=10, le=3600)
    cold_email_rule_name: str = Field(
        default="Cold Email",
        description="Rule name used for items that came from cold-email detection",
    )
    base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL used for links in the digest email",
    )


class ModelsConfig(BaseModel):
    """Claude model selection per task type."""

    digest_summary: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for per-message digest summaries",
    )
    max_tokens: int = Field(default=512, ge=64, le=4096)


class ProviderConfig(BaseModel):
    """Mail provider API client configuration."""

    graph_base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Microsoft Graph API base URL",
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    max_retries: int = Field(default=3, ge=0, le=10)
    rate_per_second: float = Field(
        default=10.0,
        gt=0,
        le=100,
        description="Requests per second per mailbox",
    )
    burst_capacity: int = Field(default=10, ge=1, le=100)


class AppConfig(BaseModel):
    """Root configuration schema for mailflow.

    If validation fails on startup, the application exits with a clear error.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    scheduled_actions: ScheduledActionsConfig = Field(default_factory=ScheduledActionsConfig)
    bulk: BulkConfig = Field(default_factory=BulkConfig)
    digest: DigestConfig = Field(default_factory=DigestConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
