"""Pydantic models for pipeline configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class QueueConfig(BaseModel):
    """Queue store connection and lease settings."""

    url: str = Field(
        default="sqlite:///queue.db", description="Queue store endpoint (sqlite:///path)"
    )
    pool_min: int = Field(default=1, ge=0, description="Idle connections kept open (low watermark)")
    pool_max: int = Field(default=4, ge=1, description="Max concurrent connections (high watermark)")
    acquire_timeout_s: float = Field(
        default=10.0, gt=0.0, description="Max wait for a pooled connection before failing"
    )
    visibility_timeout_s: int = Field(
        default=900, gt=0, description="Seconds a lease stays exclusive without heartbeat"
    )
    lock_retries: int = Field(
        default=3, ge=1, description="Attempts on 'database is locked' before TransientQueueError"
    )

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("queue url must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def watermarks_ordered(self) -> "QueueConfig":
        if self.pool_min > self.pool_max:
            raise ValueError(f"pool_min ({self.pool_min}) must be <= pool_max ({self.pool_max})")
        return self


class StorageConfig(BaseModel):
    """Analysis store connection settings."""

    url: str = Field(
        default="sqlite:///analyses.db", description="SQLAlchemy database URL for analyses"
    )
    pool_min: int = Field(default=5, ge=0, description="Persistent pool size (low watermark)")
    pool_max: int = Field(default=10, ge=1, description="Pool size plus overflow (high watermark)")
    pool_timeout_s: float = Field(
        default=5.0, gt=0.0, description="Wait for a free connection before failing"
    )
    echo: bool = Field(default=False, description="Log emitted SQL")

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("storage url must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def watermarks_ordered(self) -> "StorageConfig":
        if self.pool_min > self.pool_max:
            raise ValueError(f"pool_min ({self.pool_min}) must be <= pool_max ({self.pool_max})")
        return self


class RetryConfig(BaseModel):
    """Job-level retry policy (seconds, not connection-level milliseconds)."""

    max_attempts: int = Field(
        default=3, ge=1, description="Attempt budget stamped on each submitted job"
    )
    base_delay_s: float = Field(
        default=30.0, ge=0.0, description="Delay per attempt: attempt * base_delay_s"
    )
    max_delay_s: float = Field(default=600.0, ge=0.0, description="Ceiling on the retry delay")


class WorkerConfig(BaseModel):
    """Dispatcher settings."""

    concurrency: int = Field(default=4, ge=1, description="Number of worker threads")
    poll_min_s: float = Field(default=0.5, gt=0.0, description="First idle poll delay")
    poll_max_s: float = Field(default=5.0, gt=0.0, description="Ceiling for idle poll delay")
    heartbeat_interval_s: float = Field(
        default=60.0, gt=0.0, description="Lease extension interval while a job runs"
    )
    shutdown_timeout_s: float = Field(
        default=30.0, ge=0.0, description="Wait for in-flight jobs on shutdown"
    )

    @model_validator(mode="after")
    def poll_bounds_ordered(self) -> "WorkerConfig":
        if self.poll_min_s > self.poll_max_s:
            raise ValueError("poll_min_s must be <= poll_max_s")
        return self


class CapabilityConfig(BaseModel):
    """Analysis capability selection."""

    target: str = Field(
        default="demo", description="'demo' or an import path 'package.module:attribute'"
    )
    timeout_s: float = Field(default=600.0, gt=0.0, description="Per-invocation timeout")


class LoggingConfig(BaseModel):
    """Logging output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    file: Optional[str] = Field(default=None, description="Also log to this file if set")

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class PipelineConfig(BaseModel):
    """Complete pipeline configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    capability: CapabilityConfig = Field(default_factory=CapabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("workers") is not None:
            config_dict["worker"]["concurrency"] = cli_args["workers"]
        if cli_args.get("queue_url") is not None:
            config_dict["queue"]["url"] = cli_args["queue_url"]
        if cli_args.get("storage_url") is not None:
            config_dict["storage"]["url"] = cli_args["storage_url"]
        if cli_args.get("max_attempts") is not None:
            config_dict["retry"]["max_attempts"] = cli_args["max_attempts"]
        if cli_args.get("capability") is not None:
            config_dict["capability"]["target"] = cli_args["capability"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return PipelineConfig.from_dict(config_dict)
