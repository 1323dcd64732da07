"""Pydantic models for the committed analysis artifact.

These models carry already-validated data; structural rules live in
``analysis.validation`` so they run before any storage round-trip. Field
aliases match the camelCase wire form produced by the capability and served
by the API.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CaptionType(str, Enum):
    """Caption variant."""

    HOOK = "hook"
    VALUE = "value"
    EMOTION = "emotion"


class Caption(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    type: CaptionType
    text: str


class KeyMoment(BaseModel):
    """One short clip candidate inside an analysis."""

    model_config = ConfigDict(populate_by_name=True)

    start_time: float = Field(..., alias="startTime", description="Start in seconds")
    end_time: float = Field(..., alias="endTime", description="End in seconds")
    summary: str
    suggested_hook: str = Field(..., alias="suggestedHook")
    viral_score: int = Field(..., alias="viralScore", description="1-10")
    captions: List[Caption]

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class ValidatedAnalysis(BaseModel):
    """Capability output that passed validation, not yet committed."""

    model_config = ConfigDict(populate_by_name=True)

    key_moments: List[KeyMoment] = Field(..., alias="keyMoments")
    overall_summary: Optional[str] = Field(default=None, alias="overallSummary")
    total_duration: Optional[float] = Field(default=None, alias="totalDuration")


class Analysis(ValidatedAnalysis):
    """Committed artifact: at most one per video."""

    analysis_id: str = Field(..., alias="id")
    video_id: str = Field(..., alias="videoId")
    user_id: str = Field(..., alias="userId")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    def top_moments(self, limit: int = 3) -> List[KeyMoment]:
        """Moments ordered by viral score, highest first."""
        return sorted(self.key_moments, key=lambda m: m.viral_score, reverse=True)[:limit]
