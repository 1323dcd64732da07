"""Job-level retry/backoff policy.

Delay grows linearly with the attempt number and is capped:

    delay = min(attempt * base_delay_s, max_delay_s)

A job that has used its own ``max_attempts`` leases is dead-lettered
instead of retried, so a job whose capability always fails is attempted exactly
``max_attempts`` times.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from ..errors import PipelineError
from ..models import RetryConfig
from .models import Job

logger = logging.getLogger(__name__)


class RetryAction(Enum):
    RETRY = "retry"
    DEAD = "dead"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay_s: float = 0.0
    reason: str = ""

    @property
    def is_retry(self) -> bool:
        return self.action is RetryAction.RETRY


class RetryPolicy:
    """Decides whether a failed job is retried (with delay) or dead-lettered.

    Args:
        base_delay_s: Delay unit per attempt
        max_delay_s: Ceiling on any single delay

    The attempt budget is the job's own ``max_attempts``, stamped at enqueue.
    """

    def __init__(self, base_delay_s: float = 30.0, max_delay_s: float = 600.0):
        if base_delay_s < 0 or max_delay_s < 0:
            raise ValueError("backoff delays must be >= 0")
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            base_delay_s=config.base_delay_s,
            max_delay_s=config.max_delay_s,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the next lease of a job that failed ``attempt``."""
        return min(max(attempt, 0) * self.base_delay_s, self.max_delay_s)

    def decide(self, job: Job, error: BaseException) -> RetryDecision:
        """Classify a failure of the attempt that ``job`` currently holds.

        Tagged pipeline errors carry their own ``retriable`` flag; anything
        else is treated as transient (the capability is a black box).
        """
        retriable = error.retriable if isinstance(error, PipelineError) else True

        if not retriable:
            return RetryDecision(RetryAction.DEAD, reason=f"non-retriable: {error}")

        if job.attempts_left == 0:
            return RetryDecision(
                RetryAction.DEAD,
                reason=f"attempts exhausted ({job.attempt}/{job.max_attempts}): {error}",
            )

        delay = self.delay_for(job.attempt)
        return RetryDecision(RetryAction.RETRY, delay_s=delay, reason=str(error))
