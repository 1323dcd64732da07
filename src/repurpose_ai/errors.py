"""Error taxonomy for the analysis pipeline.

Every failure the pipeline reasons about is a ``PipelineError`` tagged with an
``ErrorKind``. Callers dispatch on ``error.kind`` (and ``error.retriable``),
never on the exception class name.

    Kind              Retriable  Surfaced to
    QUEUE             yes        logs only (worker backs off)
    STORE             yes        logs only (job retried)
    CAPABILITY        yes        dead-letter record once attempts run out
    VALIDATION        yes        dead-letter record with the violated field
    COMMIT_CONFLICT   n/a        absorbed as success, job acked
    FATAL_CONFIG      no         process refuses to start
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of pipeline failure kinds."""

    QUEUE = "queue"
    STORE = "store"
    CAPABILITY = "capability"
    VALIDATION = "validation"
    COMMIT_CONFLICT = "commit_conflict"
    FATAL_CONFIG = "fatal_config"


class PipelineError(Exception):
    """Base class for all tagged pipeline errors."""

    kind: ErrorKind
    retriable: bool = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_record(self) -> Dict[str, Any]:
        """Structured form for logs and dead-letter records."""
        return {"kind": self.kind.value, "retriable": self.retriable, "message": self.message}

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class TransientQueueError(PipelineError):
    """Queue store unreachable, locked, or timed out."""

    kind = ErrorKind.QUEUE


class TransientStoreError(PipelineError):
    """Analysis store temporarily unavailable (pool exhausted, lock, disconnect)."""

    kind = ErrorKind.STORE


class CapabilityError(PipelineError):
    """The analysis capability failed or exceeded its timeout."""

    kind = ErrorKind.CAPABILITY

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record["timed_out"] = self.timed_out
        return record


class ValidationError(PipelineError):
    """Raw capability output violated a structural invariant.

    Attributes:
        field: Name of the first failing field (wire name, e.g. ``viralScore``)
        moment_index: Index of the offending key moment, or None for
            payload-level fields
    """

    kind = ErrorKind.VALIDATION

    def __init__(self, field: str, message: str, moment_index: Optional[int] = None):
        self.field = field
        self.moment_index = moment_index
        if moment_index is not None:
            message = f"keyMoments[{moment_index}].{field}: {message}"
        else:
            message = f"{field}: {message}"
        super().__init__(message)

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record["field"] = self.field
        record["moment_index"] = self.moment_index
        return record


class CommitConflictError(PipelineError):
    """An analysis for this video is already committed.

    Not a failure: the commit layer absorbs it and the job is acked.
    """

    kind = ErrorKind.COMMIT_CONFLICT
    retriable = False

    def __init__(self, video_id: str, analysis_id: Optional[str] = None):
        self.video_id = video_id
        self.analysis_id = analysis_id
        super().__init__(f"analysis already committed for video {video_id}")

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record["video_id"] = self.video_id
        record["analysis_id"] = self.analysis_id
        return record


class FatalConfigError(PipelineError):
    """Required configuration missing or invalid; the process must not start."""

    kind = ErrorKind.FATAL_CONFIG
    retriable = False
