"""SQLite implementation of QueueBackend.

This module provides the crash-safe queue implementation using:
- sqlite-utils for schema management and reads
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic lease
- Exponential backoff retry for database lock handling
- Visibility-timeout leases for crash recovery
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlite_utils import Database

from ..errors import TransientQueueError
from .backends import QueueBackend
from .models import LEASABLE_STATES, Job, JobState, StateTransition
from .pool import ConnectionPool, connect_queue_database, sqlite_path_from_url

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    state TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    enqueued_at TEXT NOT NULL,
    updated_at TEXT,
    next_visible_at TEXT NOT NULL,
    leased_by TEXT,
    lease_expires_at TEXT,
    completed_at TEXT,
    last_error TEXT,
    analysis_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_visible ON jobs(state, next_visible_at, enqueued_at);
CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(state, lease_expires_at);
CREATE INDEX IF NOT EXISTS idx_jobs_video ON jobs(video_id);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT,
    FOREIGN KEY(job_id) REFERENCES jobs(job_id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""

ERROR_LIMIT = 500

_DATETIME_FIELDS = (
    "enqueued_at",
    "updated_at",
    "next_visible_at",
    "lease_expires_at",
    "completed_at",
)


def _ts(value: datetime) -> str:
    # Fixed width so ISO strings compare in time order inside SQL
    return value.isoformat(timespec="microseconds")


def _row_to_job(row: Dict[str, Any]) -> Job:
    data = dict(row)
    for name in _DATETIME_FIELDS:
        if data.get(name):
            data[name] = datetime.fromisoformat(data[name])
    return Job(**data)


class SQLiteQueue(QueueBackend):
    """SQLite-based queue with atomic lease operations.

    Features:
    - Atomic lease via BEGIN IMMEDIATE + UPDATE...RETURNING
    - Exponential backoff retry for database lock contention
    - Lease extension (heartbeat) for long-running jobs
    - Automatic state transition logging
    - Crash recovery through lease expiry

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      workers cannot select the same job before updating it
    - Every operation acquires and releases its own pooled connection

    Args:
        db_path: Path to the SQLite database file
        pool_min: Idle connections kept open
        pool_max: Max concurrent connections
        acquire_timeout_s: Wait for a free connection
        lock_retries: BEGIN IMMEDIATE attempts under lock contention
        clock: Returns "now"; injectable for tests
    """

    def __init__(
        self,
        db_path: str,
        pool_min: int = 1,
        pool_max: int = 4,
        acquire_timeout_s: float = 10.0,
        lock_retries: int = 3,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db_path = db_path
        self.lock_retries = lock_retries
        self.clock = clock
        self.pool = ConnectionPool(
            lambda: connect_queue_database(db_path),
            min_size=pool_min,
            max_size=pool_max,
            acquire_timeout_s=acquire_timeout_s,
        )
        self._create_schema()

    @classmethod
    def from_config(cls, queue_config, clock: Callable[[], datetime] = datetime.now) -> "SQLiteQueue":
        """Build a queue from a ``QueueConfig``."""
        return cls(
            sqlite_path_from_url(queue_config.url),
            pool_min=queue_config.pool_min,
            pool_max=queue_config.pool_max,
            acquire_timeout_s=queue_config.acquire_timeout_s,
            lock_retries=queue_config.lock_retries,
            clock=clock,
        )

    def _create_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self.pool.connection() as db:
            try:
                db.executescript(SCHEMA_SQL)
            except sqlite3.Error as e:
                raise TransientQueueError(f"cannot initialize queue schema: {e}") from e

    @contextmanager
    def _transaction(self) -> Iterator[Database]:
        """Write transaction with exponential backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms... up to ``lock_retries`` attempts,
        then TransientQueueError.
        """
        with self.pool.connection() as db:
            for attempt in range(self.lock_retries):
                try:
                    db.execute("BEGIN IMMEDIATE")
                    break
                except sqlite3.OperationalError as e:
                    if "locked" in str(e).lower() and attempt < self.lock_retries - 1:
                        time.sleep(0.1 * (2 ** attempt))
                        continue
                    raise TransientQueueError(f"queue store busy: {e}") from e

            try:
                yield db
            except sqlite3.Error as e:
                db.execute("ROLLBACK")
                raise TransientQueueError(f"queue transaction failed: {e}") from e
            except BaseException:
                db.execute("ROLLBACK")
                raise
            else:
                db.execute("COMMIT")

    @contextmanager
    def _reader(self) -> Iterator[Database]:
        with self.pool.connection() as db:
            try:
                yield db
            except sqlite3.Error as e:
                raise TransientQueueError(f"queue read failed: {e}") from e

    def enqueue(self, job: Job) -> str:
        """Insert a new pending job.

        Args:
            job: Job to insert (job_id must be new)

        Returns:
            The job id
        """
        now = self.clock()
        visible_at = job.next_visible_at or now

        with self._transaction() as db:
            db.execute(
                """
                INSERT INTO jobs (
                    job_id, video_id, user_id, state, attempt, max_attempts,
                    enqueued_at, updated_at, next_visible_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.video_id,
                    job.user_id,
                    JobState.PENDING.value,
                    job.attempt,
                    job.max_attempts,
                    _ts(now),
                    _ts(now),
                    _ts(visible_at),
                ),
            )
            self._log_transition(db, job.job_id, None, JobState.PENDING.value)

        logger.info("Enqueued job %s for video %s", job.job_id, job.video_id)
        return job.job_id

    def lease(self, worker_id: str, visibility_timeout_s: float) -> Optional[Job]:
        """Atomically claim the next visible job and mark it active.

        Ordering: earliest visibility first, then FIFO by enqueue time. Expired
        active leases count as visible at their expiry time.
        """
        now = self.clock()
        now_s = _ts(now)
        expires_s = _ts(now + timedelta(seconds=visibility_timeout_s))

        with self._transaction() as db:
            self._dead_letter_exhausted(db, now_s)

            candidate = db.execute(
                """
                SELECT job_id, state, leased_by FROM jobs
                WHERE (state IN (?, ?) AND next_visible_at <= ?)
                   OR (state = ? AND lease_expires_at <= ?)
                ORDER BY
                    CASE WHEN state = ? THEN lease_expires_at ELSE next_visible_at END ASC,
                    enqueued_at ASC
                LIMIT 1
                """,
                (
                    *LEASABLE_STATES,
                    now_s,
                    JobState.ACTIVE.value,
                    now_s,
                    JobState.ACTIVE.value,
                ),
            ).fetchall()

            if not candidate:
                return None

            job_id, from_state, previous_worker = candidate[0]
            cursor = db.execute(
                """
                UPDATE jobs
                SET state = ?,
                    attempt = attempt + 1,
                    leased_by = ?,
                    lease_expires_at = ?,
                    updated_at = ?
                WHERE job_id = ?
                RETURNING *
                """,
                (JobState.ACTIVE.value, worker_id, expires_s, now_s, job_id),
            )
            columns = [d[0] for d in cursor.description]
            row = dict(zip(columns, cursor.fetchall()[0]))

            note = None
            if from_state == JobState.ACTIVE.value:
                note = f"lease expired (previous worker {previous_worker})"
            self._log_transition(db, job_id, from_state, JobState.ACTIVE.value, worker_id, note)

        job = _row_to_job(row)
        logger.info(
            "Worker %s leased job %s (video %s, attempt %d/%d)",
            worker_id, job.job_id, job.video_id, job.attempt, job.max_attempts,
        )
        return job

    def _dead_letter_exhausted(self, db: Database, now_s: str) -> List[str]:
        """Expired leases on their last attempt go to 'dead' rather than re-lease."""
        error = "lease expired after final attempt"
        rows = db.execute(
            """
            UPDATE jobs
            SET state = ?,
                leased_by = NULL,
                lease_expires_at = NULL,
                completed_at = ?,
                updated_at = ?,
                last_error = COALESCE(last_error || ' | ', '') || ?
            WHERE state = ? AND lease_expires_at <= ? AND attempt >= max_attempts
            RETURNING job_id, video_id, attempt
            """,
            (JobState.DEAD.value, now_s, now_s, error, JobState.ACTIVE.value, now_s),
        ).fetchall()

        for job_id, video_id, attempt in rows:
            self._log_transition(db, job_id, JobState.ACTIVE.value, JobState.DEAD.value, None, error)
            logger.error(
                "Dead-lettered job %s (video %s) after %d attempts: %s",
                job_id, video_id, attempt, error,
            )
        return [r[0] for r in rows]

    def _finish_lease(
        self,
        job_id: str,
        worker_id: str,
        to_state: JobState,
        assignments: str,
        params: tuple,
        error: Optional[str] = None,
    ) -> bool:
        """Apply a state change only while ``worker_id`` holds the lease."""
        now_s = _ts(self.clock())
        with self._transaction() as db:
            cursor = db.execute(
                f"""
                UPDATE jobs
                SET state = ?, updated_at = ?, leased_by = NULL, lease_expires_at = NULL,
                    {assignments}
                WHERE job_id = ? AND state = ? AND leased_by = ?
                """,
                (to_state.value, now_s, *params, job_id, JobState.ACTIVE.value, worker_id),
            )
            if cursor.rowcount == 0:
                logger.warning(
                    "Worker %s no longer holds lease on job %s; %s ignored",
                    worker_id, job_id, to_state.value,
                )
                return False
            self._log_transition(db, job_id, JobState.ACTIVE.value, to_state.value, worker_id, error)
        return True

    def ack(self, job_id: str, worker_id: str, analysis_id: Optional[str] = None) -> bool:
        now_s = _ts(self.clock())
        acked = self._finish_lease(
            job_id,
            worker_id,
            JobState.COMPLETED,
            "completed_at = ?, analysis_id = ?, last_error = NULL",
            (now_s, analysis_id),
        )
        if acked:
            logger.info("Job %s completed (analysis %s)", job_id, analysis_id)
        return acked

    def nack(self, job_id: str, worker_id: str, delay_s: float, error: str) -> bool:
        now = self.clock()
        error_snippet = error[:ERROR_LIMIT] if error else None
        return self._finish_lease(
            job_id,
            worker_id,
            JobState.FAILED,
            "next_visible_at = ?, last_error = ?",
            (_ts(now + timedelta(seconds=delay_s)), error_snippet),
            error=error_snippet,
        )

    def dead_letter(self, job_id: str, worker_id: str, error: str) -> bool:
        error_snippet = error[:ERROR_LIMIT] if error else None
        return self._finish_lease(
            job_id,
            worker_id,
            JobState.DEAD,
            "completed_at = ?, last_error = ?",
            (_ts(self.clock()), error_snippet),
            error=error_snippet,
        )

    def extend_lease(self, job_id: str, worker_id: str, visibility_timeout_s: float) -> bool:
        """Update lease deadline for a long-running job.

        Only applies while the job is active and leased by ``worker_id``.
        """
        now = self.clock()
        with self._transaction() as db:
            cursor = db.execute(
                """
                UPDATE jobs
                SET lease_expires_at = ?, updated_at = ?
                WHERE job_id = ? AND state = ? AND leased_by = ?
                """,
                (
                    _ts(now + timedelta(seconds=visibility_timeout_s)),
                    _ts(now),
                    job_id,
                    JobState.ACTIVE.value,
                    worker_id,
                ),
            )
            return cursor.rowcount > 0

    def requeue_expired(self) -> int:
        """Crash recovery: reset abandoned leases to 'pending'.

        Logic:
        - Active job whose lease_expires_at has passed is abandoned
        - Abandoned on its last attempt: dead-lettered
        - Otherwise: pending, visible now, attempt count unchanged (the next
          lease increments it)
        """
        now_s = _ts(self.clock())
        with self._transaction() as db:
            self._dead_letter_exhausted(db, now_s)
            rows = db.execute(
                """
                UPDATE jobs
                SET state = ?, leased_by = NULL, lease_expires_at = NULL,
                    next_visible_at = ?, updated_at = ?
                WHERE state = ? AND lease_expires_at <= ?
                RETURNING job_id
                """,
                (JobState.PENDING.value, now_s, now_s, JobState.ACTIVE.value, now_s),
            ).fetchall()

            for (job_id,) in rows:
                self._log_transition(
                    db, job_id, JobState.ACTIVE.value, JobState.PENDING.value,
                    None, "Reset expired lease (crash recovery)",
                )

        if rows:
            logger.warning("Requeued %d job(s) with expired leases", len(rows))
        return len(rows)

    def retry_dead(self, job_id: str, budget: int = 3) -> bool:
        if budget < 1:
            raise ValueError("budget must be >= 1")
        now_s = _ts(self.clock())
        with self._transaction() as db:
            # attempt only ever grows; the fresh budget extends max_attempts
            cursor = db.execute(
                """
                UPDATE jobs
                SET state = ?, max_attempts = attempt + ?, next_visible_at = ?,
                    updated_at = ?, completed_at = NULL, last_error = NULL
                WHERE job_id = ? AND state = ?
                """,
                (JobState.PENDING.value, budget, now_s, now_s, job_id, JobState.DEAD.value),
            )
            if cursor.rowcount == 0:
                return False
            self._log_transition(
                db, job_id, JobState.DEAD.value, JobState.PENDING.value, None, "operator retry"
            )
        logger.info("Dead job %s requeued by operator", job_id)
        return True

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._reader() as db:
            rows = list(db["jobs"].rows_where("job_id = ?", [job_id]))
        return _row_to_job(rows[0]) if rows else None

    def list_jobs(self, state: Optional[str] = None, limit: Optional[int] = None) -> List[Job]:
        with self._reader() as db:
            if state:
                rows = db["jobs"].rows_where(
                    "state = ?", [state], order_by="enqueued_at", limit=limit
                )
            else:
                rows = db["jobs"].rows_where(order_by="enqueued_at", limit=limit)
            return [_row_to_job(row) for row in rows]

    def count_by_state(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        with self._reader() as db:
            for state, count in db.execute(
                "SELECT state, COUNT(*) FROM jobs GROUP BY state"
            ).fetchall():
                counts[state] = count
        return counts

    def count_visible(self) -> int:
        now_s = _ts(self.clock())
        with self._reader() as db:
            rows = db.execute(
                """
                SELECT COUNT(*) FROM jobs
                WHERE (state IN (?, ?) AND next_visible_at <= ?)
                   OR (state = ? AND lease_expires_at <= ?)
                """,
                (*LEASABLE_STATES, now_s, JobState.ACTIVE.value, now_s),
            ).fetchall()
        return rows[0][0]

    def transitions(self, job_id: str) -> List[StateTransition]:
        with self._reader() as db:
            rows = db["state_transitions"].rows_where(
                "job_id = ?", [job_id], order_by="id"
            )
            return [
                StateTransition(**{**row, "timestamp": datetime.fromisoformat(row["timestamp"])})
                for row in rows
            ]

    def close(self) -> None:
        self.pool.close()

    def _log_transition(
        self,
        db: Database,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log state transition to audit trail (inside the caller's transaction)."""
        db.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _ts(self.clock()), worker_id,
             error[:200] if error else None),
        )
