"""Intake queue configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Nested configs are populated from their own env-var prefixes.
"""

from __future__ import annotations

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Shared relational store holding runs, items and classification jobs."""

    model_config = {"env_prefix": "DATABASE_"}

    url: str = Field(
        default="sqlite+aiosqlite:///./intake_queue.db",
        description="Async SQLAlchemy URL (postgresql+asyncpg://... in production)",
    )
    pool_size: int = Field(default=5, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Extra connections allowed beyond pool_size")
    echo: bool = Field(default=False, description="Log every SQL statement")


class SliceConfig(BaseSettings):
    """Time budget and batching for one slice invocation."""

    model_config = {"env_prefix": "SLICE_"}

    hard_limit_seconds: float = Field(
        default=60.0,
        description="Platform ceiling on a single invocation",
    )
    safety_margin_seconds: float = Field(
        default=10.0,
        description="Time reserved for bookkeeping and the response",
    )
    item_allowance_seconds: float = Field(
        default=20.0,
        description="Maximum time a single item may spend in the pipeline per slice",
    )
    min_enumeration_seconds: float = Field(
        default=5.0,
        description="Minimum remaining budget required to start an enumeration page",
    )
    concurrency: int = Field(default=2, ge=1, description="Parallel item workers per slice")
    batch_factor: int = Field(
        default=2,
        ge=1,
        description="Claim batch size is concurrency * batch_factor",
    )
    page_size: int = Field(default=100, ge=1, description="Provider page size during enumeration")
    max_item_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts before a transiently failing item stays failed",
    )
    run_retention: int = Field(
        default=10,
        ge=1,
        description="Terminal runs kept per job; older ones are pruned",
    )
    stale_after_seconds: float = Field(
        default=600.0,
        description="Running runs without activity for this long are reaped",
    )

    @property
    def soft_limit_seconds(self) -> float:
        return self.hard_limit_seconds - self.safety_margin_seconds

    @property
    def batch_size(self) -> int:
        return self.concurrency * self.batch_factor

    @model_validator(mode="after")
    def _check_budget(self) -> SliceConfig:
        if self.soft_limit_seconds <= 0:
            raise ValueError("safety_margin_seconds must be smaller than hard_limit_seconds")
        if self.item_allowance_seconds >= self.soft_limit_seconds:
            raise ValueError("item_allowance_seconds must be smaller than the soft limit")
        return self


class EnumerationConfig(BaseSettings):
    """Lookback windows for the two enumeration phases."""

    model_config = {"env_prefix": "ENUMERATION_"}

    search_lookback_days: int = Field(
        default=90,
        description="Broad search pass covers messages newer than this",
    )
    deep_lookback_days: int = Field(
        default=365,
        description="Deep pass walks backward in time down to this age",
    )
    default_max_emails: int = Field(
        default=5000,
        description="Per-run cap on enumerated messages when the request sets none",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum provider call attempts")
    initial_wait_seconds: float = Field(
        default=2.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=6.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class AttachmentConfig(BaseSettings):
    """Which attachments make a message worth processing."""

    model_config = {"env_prefix": "ATTACHMENT_"}

    allowed_extensions: list[str] = Field(
        default_factory=lambda: ["pdf", "docx"],
        description="Lower-case file extensions accepted as resumes",
    )
    max_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Attachments larger than this are ignored",
    )


class ClassificationConfig(BaseSettings):
    """Downstream AI classification backlog."""

    model_config = {"env_prefix": "CLASSIFICATION_"}

    enabled: bool = Field(
        default=False,
        description="Queue a classification job per processed item",
    )
    concurrency: int = Field(default=3, ge=1, description="Parallel classification workers")
    timeout_seconds: float = Field(default=20.0, description="Per-job classifier timeout")
    max_attempts: int = Field(default=5, ge=1, description="Attempts before a job is failed")
    base_backoff_seconds: float = Field(default=15.0, description="First retry delay")
    max_backoff_seconds: float = Field(default=300.0, description="Retry delay ceiling")
    soft_limit_seconds: float = Field(
        default=50.0,
        description="Classification slice stops claiming after this long",
    )
    min_remaining_seconds: float = Field(
        default=25.0,
        description="Do not claim a job with less budget than this left",
    )
    stall_grace_seconds: float = Field(
        default=30.0,
        description="Time past timeout_seconds after which a processing job is treated as abandoned",
    )


class TriggerConfig(BaseSettings):
    """Continuation signal posted at the end of an unfinished slice."""

    model_config = {"env_prefix": "TRIGGER_"}

    dispatch_url: str = Field(
        default="",
        description="URL of the dispatch endpoint; empty disables the signal",
    )
    timeout_seconds: float = Field(default=5.0, description="HTTP request timeout")


class ImapConfig(BaseSettings):
    """IMAP server connection settings."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(description="IMAP login username")
    password: SecretStr = Field(description="IMAP login password")


class AppConfig(BaseSettings):
    """Top-level settings for the intake queue service.

    All env vars are prefixed with ``INTAKE_``.
    Example: ``INTAKE_LOG_LEVEL=DEBUG``
    """

    model_config = SettingsConfigDict(env_prefix="INTAKE_")

    # --- Server -------------------------------------------------------------
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(
        default=True,
        description="Use JSON log output (True for prod, False for dev)",
    )

    # --- Components ---------------------------------------------------------
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    slice: SliceConfig = Field(default_factory=SliceConfig)
    enumeration: EnumerationConfig = Field(default_factory=EnumerationConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    attachments: AttachmentConfig = Field(default_factory=AttachmentConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
