"""Unit tests for the queue store.

Tests cover:
- Enqueue/lease/ack/nack/dead-letter operations
- Lease ownership and visibility timeout
- Crash recovery logic
- Concurrent lease safety
- Connection pool bounds
"""

import threading
import time
import uuid
from datetime import datetime, timedelta

import pytest

from repurpose_ai.errors import TransientQueueError
from repurpose_ai.queue import ConnectionPool, Job, JobState, SQLiteQueue
from repurpose_ai.queue.pool import connect_queue_database, sqlite_path_from_url


def new_job(video_id="video-1", user_id="user-1", max_attempts=3):
    return Job(job_id=str(uuid.uuid4()), video_id=video_id, user_id=user_id, max_attempts=max_attempts)


class TestEnqueueLease:
    """Test basic queue operations."""

    def test_enqueue_creates_pending_job(self, queue):
        job_id = queue.enqueue(new_job())

        job = queue.get_job(job_id)
        assert job.state == JobState.PENDING.value
        assert job.attempt == 0
        assert job.leased_by is None

    def test_lease_marks_active_and_increments_attempt(self, queue):
        job_id = queue.enqueue(new_job())

        job = queue.lease("worker-1", visibility_timeout_s=60)

        assert job.job_id == job_id
        assert job.state == JobState.ACTIVE.value
        assert job.attempt == 1
        assert job.leased_by == "worker-1"
        assert job.lease_expires_at > datetime.now()

    def test_lease_empty_queue_returns_none(self, queue):
        assert queue.lease("worker-1", visibility_timeout_s=60) is None

    def test_leased_job_invisible_to_other_workers(self, queue):
        queue.enqueue(new_job())

        assert queue.lease("worker-1", visibility_timeout_s=60) is not None
        assert queue.lease("worker-2", visibility_timeout_s=60) is None

    def test_lease_is_fifo(self, queue):
        first = queue.enqueue(new_job("video-a"))
        second = queue.enqueue(new_job("video-b"))

        assert queue.lease("w", 60).job_id == first
        assert queue.lease("w", 60).job_id == second

    def test_envelope_uses_wire_names(self, queue):
        queue.enqueue(new_job("video-9", "user-9"))
        job = queue.lease("w", 60)

        envelope = job.to_envelope().model_dump(by_alias=True)
        assert envelope["id"] == job.job_id
        assert envelope["videoId"] == "video-9"
        assert envelope["userId"] == "user-9"
        assert envelope["attempt"] == 1
        assert "enqueuedAt" in envelope


class TestSettle:
    """Test ack/nack/dead-letter with lease ownership."""

    def test_ack_completes_job(self, queue):
        job_id = queue.enqueue(new_job())
        queue.lease("worker-1", 60)

        assert queue.ack(job_id, "worker-1", analysis_id="analysis-1")

        job = queue.get_job(job_id)
        assert job.state == JobState.COMPLETED.value
        assert job.analysis_id == "analysis-1"
        assert job.completed_at is not None
        assert queue.lease("worker-1", 60) is None

    def test_ack_by_non_owner_is_ignored(self, queue):
        job_id = queue.enqueue(new_job())
        queue.lease("worker-1", 60)

        assert not queue.ack(job_id, "worker-2")
        assert queue.get_job(job_id).state == JobState.ACTIVE.value

    def test_nack_schedules_retry_after_delay(self, clocked_queue, clock):
        job_id = clocked_queue.enqueue(new_job())
        clocked_queue.lease("worker-1", 60)

        assert clocked_queue.nack(job_id, "worker-1", delay_s=30, error="capability down")

        job = clocked_queue.get_job(job_id)
        assert job.state == JobState.FAILED.value
        assert job.last_error == "capability down"
        assert job.next_visible_at == clock.now + timedelta(seconds=30)

        # Not visible before the delay elapses
        assert clocked_queue.lease("worker-2", 60) is None
        clock.advance(30)
        retried = clocked_queue.lease("worker-2", 60)
        assert retried.job_id == job_id
        assert retried.attempt == 2

    def test_dead_letter_keeps_job_for_inspection(self, queue):
        job_id = queue.enqueue(new_job())
        queue.lease("worker-1", 60)

        assert queue.dead_letter(job_id, "worker-1", error="bad payload")

        dead = queue.list_jobs(state=JobState.DEAD.value)
        assert [j.job_id for j in dead] == [job_id]
        assert dead[0].last_error == "bad payload"
        assert queue.lease("worker-1", 60) is None

    def test_retry_dead_extends_budget_and_keeps_attempts(self, queue):
        job_id = queue.enqueue(new_job(max_attempts=1))
        queue.lease("worker-1", 60)
        queue.dead_letter(job_id, "worker-1", error="boom")

        assert queue.retry_dead(job_id, budget=2)

        job = queue.get_job(job_id)
        assert job.state == JobState.PENDING.value
        assert job.attempt == 1
        assert job.max_attempts == 3
        assert job.attempts_left == 2
        assert job.last_error is None

        # The counter keeps growing across the operator retry
        assert queue.lease("worker-2", 60).attempt == 2

    def test_retry_dead_rejects_empty_budget(self, queue):
        with pytest.raises(ValueError):
            queue.retry_dead("any", budget=0)

    def test_retry_dead_rejects_live_job(self, queue):
        job_id = queue.enqueue(new_job())
        assert not queue.retry_dead(job_id)
        assert not queue.retry_dead("missing")

    def test_transitions_are_logged(self, queue):
        job_id = queue.enqueue(new_job())
        queue.lease("worker-1", 60)
        queue.ack(job_id, "worker-1")

        transitions = queue.transitions(job_id)
        assert [(t.from_state, t.to_state) for t in transitions] == [
            (None, "pending"),
            ("pending", "active"),
            ("active", "completed"),
        ]
        assert transitions[1].worker_id == "worker-1"

    def test_count_visible_counts_due_and_expired_jobs(self, clocked_queue, clock):
        clocked_queue.enqueue(new_job("a"))
        clocked_queue.enqueue(new_job("b"))
        clocked_queue.enqueue(new_job("c"))
        assert clocked_queue.count_visible() == 3

        leased = clocked_queue.lease("w1", 60)
        clocked_queue.lease("w2", 10)
        clocked_queue.nack(leased.job_id, "w1", delay_s=30, error="boom")
        assert clocked_queue.count_visible() == 1

        clock.advance(11)
        assert clocked_queue.count_visible() == 2
        clock.advance(20)
        assert clocked_queue.count_visible() == 3

    def test_count_by_state_includes_all_states(self, queue):
        queue.enqueue(new_job("a"))
        queue.enqueue(new_job("b"))
        queue.lease("w", 60)

        counts = queue.count_by_state()
        assert counts == {"pending": 1, "active": 1, "completed": 0, "failed": 0, "dead": 0}


class TestLeaseExpiry:
    """Test crash recovery through the visibility timeout."""

    def test_expired_lease_is_released_to_next_worker(self, clocked_queue, clock):
        job_id = clocked_queue.enqueue(new_job())
        clocked_queue.lease("worker-1", visibility_timeout_s=10)

        clock.advance(5)
        assert clocked_queue.lease("worker-2", 10) is None

        clock.advance(6)
        job = clocked_queue.lease("worker-2", 10)
        assert job.job_id == job_id
        assert job.attempt == 2
        assert job.leased_by == "worker-2"

        # The crashed worker's late ack is rejected
        assert not clocked_queue.ack(job_id, "worker-1")
        assert clocked_queue.ack(job_id, "worker-2")

        notes = [t.error_snippet for t in clocked_queue.transitions(job_id)]
        assert any(n and "lease expired" in n for n in notes)

    def test_extend_lease_keeps_job_invisible(self, clocked_queue, clock):
        job_id = clocked_queue.enqueue(new_job())
        clocked_queue.lease("worker-1", visibility_timeout_s=10)

        clock.advance(8)
        assert clocked_queue.extend_lease(job_id, "worker-1", 10)
        clock.advance(8)
        assert clocked_queue.lease("worker-2", 10) is None

    def test_extend_lease_requires_ownership(self, clocked_queue):
        job_id = clocked_queue.enqueue(new_job())
        clocked_queue.lease("worker-1", 10)

        assert not clocked_queue.extend_lease(job_id, "worker-2", 10)

    def test_expired_final_attempt_goes_dead(self, clocked_queue, clock):
        job_id = clocked_queue.enqueue(new_job(max_attempts=2))

        clocked_queue.lease("worker-1", 10)
        clock.advance(11)
        assert clocked_queue.lease("worker-2", 10).attempt == 2
        clock.advance(11)

        assert clocked_queue.lease("worker-3", 10) is None
        job = clocked_queue.get_job(job_id)
        assert job.state == JobState.DEAD.value
        assert job.attempt == 2
        assert "lease expired" in job.last_error

    def test_requeue_expired_resets_abandoned_jobs(self, clocked_queue, clock):
        job_id = clocked_queue.enqueue(new_job())
        clocked_queue.lease("worker-1", 10)

        assert clocked_queue.requeue_expired() == 0
        clock.advance(11)
        assert clocked_queue.requeue_expired() == 1

        job = clocked_queue.get_job(job_id)
        assert job.state == JobState.PENDING.value
        assert job.leased_by is None
        assert job.attempt == 1

        # Next lease counts as a new attempt
        assert clocked_queue.lease("worker-2", 10).attempt == 2

    def test_jobs_survive_reopen(self, temp_db, clock):
        first = SQLiteQueue(temp_db, clock=clock)
        job_id = first.enqueue(new_job())
        first.lease("worker-1", 10)
        first.close()

        clock.advance(11)
        second = SQLiteQueue(temp_db, clock=clock)
        try:
            assert second.lease("worker-2", 10).job_id == job_id
        finally:
            second.close()


class TestConcurrentLease:
    """Test that concurrent workers never lease the same job."""

    def test_each_job_leased_once(self, queue):
        job_ids = {queue.enqueue(new_job(f"video-{i}")) for i in range(20)}
        leased = []
        lock = threading.Lock()

        def worker(worker_id):
            while True:
                job = queue.lease(worker_id, 60)
                if job is None:
                    return
                with lock:
                    leased.append(job.job_id)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(leased) == len(job_ids)
        assert set(leased) == job_ids


class TestConnectionPool:
    """Test pool watermarks and acquire timeout."""

    def test_pool_reuses_idle_connection(self, temp_db):
        pool = ConnectionPool(lambda: connect_queue_database(temp_db), min_size=1, max_size=2)

        with pool.connection() as first:
            pass
        with pool.connection() as second:
            assert second.conn is first.conn
        assert pool.open_connections == 1
        pool.close()
        assert pool.open_connections == 0

    def test_pool_exhaustion_raises_transient_error(self, temp_db):
        pool = ConnectionPool(
            lambda: connect_queue_database(temp_db), min_size=0, max_size=1, acquire_timeout_s=0.05
        )

        with pool.connection():
            start = time.time()
            with pytest.raises(TransientQueueError):
                with pool.connection():
                    pass
            assert time.time() - start < 2
        pool.close()

    def test_closed_pool_rejects_acquire(self, temp_db):
        pool = ConnectionPool(lambda: connect_queue_database(temp_db))
        pool.close()
        with pytest.raises(TransientQueueError):
            with pool.connection():
                pass

    def test_invalid_bounds(self, temp_db):
        with pytest.raises(ValueError):
            ConnectionPool(lambda: connect_queue_database(temp_db), min_size=3, max_size=2)


class TestQueueUrl:
    def test_sqlite_url(self):
        assert sqlite_path_from_url("sqlite:///data/queue.db") == "data/queue.db"
        assert sqlite_path_from_url("sqlite:////tmp/queue.db") == "/tmp/queue.db"
        assert sqlite_path_from_url("queue.db") == "queue.db"

    def test_unsupported_scheme(self):
        with pytest.raises(ValueError):
            sqlite_path_from_url("redis://localhost:6379")
