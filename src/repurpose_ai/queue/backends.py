from __future__ import annotations

"""Abstract base class for queue backends.

The dispatcher only talks to ``QueueBackend``. The shipped implementation is
SQLite (``SQLiteQueue``); a network store can replace it as long as it keeps
the lease semantics documented here.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from .models import Job, StateTransition


class QueueBackend(ABC):
    """Durable work queue with visibility-timeout leases.

    Implementations must provide:
    - Atomic lease: two concurrent workers never receive the same job
    - Lease expiry: an unacked lease becomes leasable again after its
      visibility timeout (crash recovery)
    - Monotonic attempt counter incremented by every lease
    - Ownership checks: ack/nack/dead_letter only apply while the caller
      still holds the lease
    """

    @abstractmethod
    def enqueue(self, job: "Job") -> str:
        """Add a job and return its id.

        Implementation notes:
        - The job becomes visible immediately unless next_visible_at is set
        - Several jobs may reference the same video
        """
        pass

    @abstractmethod
    def lease(self, worker_id: str, visibility_timeout_s: float) -> Optional["Job"]:
        """Atomically claim the next visible job.

        Args:
            worker_id: Unique identifier for the claiming worker
            visibility_timeout_s: Lease duration before the job is re-leasable

        Returns:
            Leased job (state=active, attempt incremented) or None if nothing
            is visible

        Implementation notes:
        - MUST be atomic across processes and threads
        - Candidates: pending/failed jobs whose next_visible_at has passed,
          and active jobs whose lease expired
        - Expired leases that already used the last attempt go to 'dead'
          instead of being re-leased
        """
        pass

    @abstractmethod
    def ack(self, job_id: str, worker_id: str, analysis_id: Optional[str] = None) -> bool:
        """Mark a leased job completed. Returns False if the lease was lost."""
        pass

    @abstractmethod
    def nack(self, job_id: str, worker_id: str, delay_s: float, error: str) -> bool:
        """Release a leased job for retry after ``delay_s`` (state=failed).

        Returns False if the lease was lost.
        """
        pass

    @abstractmethod
    def dead_letter(self, job_id: str, worker_id: str, error: str) -> bool:
        """Move a leased job to the terminal 'dead' state for operator inspection.

        Returns False if the lease was lost.
        """
        pass

    @abstractmethod
    def extend_lease(self, job_id: str, worker_id: str, visibility_timeout_s: float) -> bool:
        """Heartbeat: push the lease deadline forward while the job runs."""
        pass

    @abstractmethod
    def requeue_expired(self) -> int:
        """Crash recovery sweep: return abandoned leases to 'pending'.

        Returns:
            Count of jobs made pending again (dead-lettered ones not counted)
        """
        pass

    @abstractmethod
    def retry_dead(self, job_id: str, budget: int = 3) -> bool:
        """Operator action: make a dead job pending with ``budget`` more attempts.

        The attempt counter is kept; ``max_attempts`` is raised to
        ``attempt + budget``.
        """
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        pass

    @abstractmethod
    def list_jobs(self, state: Optional[str] = None, limit: Optional[int] = None) -> List["Job"]:
        """Query jobs, oldest first. O(n); used by status commands."""
        pass

    @abstractmethod
    def count_by_state(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def count_visible(self) -> int:
        """Jobs a lease could claim right now, including expired leases."""
        pass

    @abstractmethod
    def transitions(self, job_id: str) -> List["StateTransition"]:
        """Audit trail for one job, oldest first."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release all connections held by the backend."""
        pass
