"""Job queue, retry policy and worker pool for asynchronous video analysis."""

from .backends import QueueBackend
from .models import Job, JobEnvelope, JobResult, JobState, StateTransition
from .pool import ConnectionPool
from .retry import RetryAction, RetryDecision, RetryPolicy
from .sqlite_backend import SQLiteQueue
from .worker import Dispatcher, process_job

__all__ = [
    "QueueBackend",
    "Job",
    "JobEnvelope",
    "JobResult",
    "JobState",
    "StateTransition",
    "ConnectionPool",
    "RetryAction",
    "RetryDecision",
    "RetryPolicy",
    "SQLiteQueue",
    "Dispatcher",
    "process_job",
]
