"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobState(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → active      (worker leases)
        failed  → active      (retry delay elapsed, worker leases)
        active  → active      (lease expired, another worker leases)
        active  → completed   (analysis committed or already committed)
        active  → failed      (attempt failed, retry scheduled)
        active  → dead        (attempts exhausted or non-retriable error)
        active  → pending     (crash recovery sweep)
        dead    → pending     (operator retry)
    """

    PENDING = "pending"  # Queued, visible at next_visible_at
    ACTIVE = "active"  # Leased by a worker until lease_expires_at
    COMPLETED = "completed"  # Acked after commit
    FAILED = "failed"  # Attempt failed, waiting for retry delay
    DEAD = "dead"  # Retry budget exhausted, kept for operators


LEASABLE_STATES = (JobState.PENDING.value, JobState.FAILED.value)


class JobEnvelope(BaseModel):
    """Wire form of a job: stable field names, monotonically increasing attempt."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    video_id: str = Field(..., alias="videoId")
    user_id: str = Field(..., alias="userId")
    attempt: int = Field(..., ge=0)
    enqueued_at: datetime = Field(..., alias="enqueuedAt")


class Job(BaseModel):
    """Queued request to analyze one video.

    Many jobs may reference the same video (redelivery, resubmission); only
    one analysis per video is ever committed.
    """

    model_config = ConfigDict(use_enum_values=True)

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    video_id: str = Field(..., min_length=1, description="Video to analyze")
    user_id: str = Field(..., min_length=1, description="Owner of the video")
    state: JobState = Field(default=JobState.PENDING, description="Current job state")
    attempt: int = Field(default=0, ge=0, description="Leases taken so far")
    max_attempts: int = Field(default=3, ge=1, description="Leases before dead-letter")
    enqueued_at: datetime = Field(default_factory=datetime.now, description="Queue time")
    updated_at: Optional[datetime] = Field(default=None, description="Last state change")
    next_visible_at: Optional[datetime] = Field(
        default=None, description="Not leasable before this time (None = immediately)"
    )
    leased_by: Optional[str] = Field(default=None, description="Worker holding the lease")
    lease_expires_at: Optional[datetime] = Field(default=None, description="Visibility deadline")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal state time")
    last_error: Optional[str] = Field(default=None, description="Last error message (truncated)")
    analysis_id: Optional[str] = Field(default=None, description="Committed analysis, if any")

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempt, 0)

    def to_envelope(self) -> JobEnvelope:
        return JobEnvelope(
            id=self.job_id,
            video_id=self.video_id,
            user_id=self.user_id,
            attempt=self.attempt,
            enqueued_at=self.enqueued_at,
        )


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=datetime.now, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")


class JobResult(BaseModel):
    """Processing outcome returned by a worker for one leased job."""

    model_config = ConfigDict(use_enum_values=True)

    job_id: str = Field(..., description="Job identifier")
    video_id: str = Field(..., description="Video the job referenced")
    state: JobState = Field(..., description="State after processing (completed, failed, dead)")
    attempt: int = Field(..., ge=0, description="Attempt this result belongs to")
    analysis_id: Optional[str] = Field(default=None, description="Committed analysis id")
    already_committed: bool = Field(
        default=False, description="Commit absorbed by the one-analysis-per-video guard"
    )
    retry_delay_s: Optional[float] = Field(default=None, description="Delay before next lease")
    error: Optional[Dict[str, Any]] = Field(default=None, description="Structured error record")
    duration_s: float = Field(default=0.0, ge=0.0, description="Processing time in seconds")
