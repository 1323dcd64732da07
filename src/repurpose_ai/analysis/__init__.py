"""Analysis payloads: capability seam, validation and the commit store."""

from .capability import (
    AnalysisCapability,
    CallableCapability,
    DemoCapability,
    invoke_with_timeout,
    load_capability,
)
from .models import Analysis, Caption, CaptionType, KeyMoment, ValidatedAnalysis
from .store import AnalysisStore, CommitResult
from .validation import validate_analysis

__all__ = [
    "AnalysisCapability",
    "CallableCapability",
    "DemoCapability",
    "invoke_with_timeout",
    "load_capability",
    "Analysis",
    "Caption",
    "CaptionType",
    "KeyMoment",
    "ValidatedAnalysis",
    "AnalysisStore",
    "CommitResult",
    "validate_analysis",
]
