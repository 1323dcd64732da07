"""Worker pool that turns queued jobs into committed analyses.

This module provides bounded, crash-safe job processing with:
- A fixed number of worker threads (the pool is the concurrency bound)
- Jittered polling when the queue is empty
- Capped exponential backoff when the queue store is unreachable
- Heartbeat threads that extend leases of long-running jobs
- Retry/dead-letter routing through RetryPolicy
- Graceful shutdown on SIGINT/SIGTERM
"""

import logging
import random
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, List, Optional

from tqdm import tqdm

from ..analysis.capability import AnalysisCapability, invoke_with_timeout
from ..analysis.store import AnalysisStore
from ..analysis.validation import validate_analysis
from ..errors import PipelineError, TransientQueueError
from ..models import PipelineConfig, WorkerConfig
from .backends import QueueBackend
from .models import Job, JobResult, JobState
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

QUEUE_BACKOFF_MAX_S = 30.0


def _error_record(error: BaseException) -> dict:
    if isinstance(error, PipelineError):
        return error.to_record()
    return {"kind": "unexpected", "retriable": True, "message": f"{type(error).__name__}: {error}"}


def process_job(
    job: Job,
    worker_id: str,
    queue: QueueBackend,
    store: AnalysisStore,
    capability: AnalysisCapability,
    policy: RetryPolicy,
    capability_timeout_s: float,
) -> JobResult:
    """Run one leased job: analyze → validate → commit → ack, or route the failure.

    Error handling:
    - Capability, validation and store errors: retried with backoff until
      the attempt budget is spent, then dead-lettered
    - Commit conflict: absorbed by the store, job acked as completed
    - Queue errors while acking/nacking propagate; the lease then expires
      and the job is re-leased
    """
    start_time = time.time()

    try:
        payload = invoke_with_timeout(capability, job.video_id, capability_timeout_s)
        validated = validate_analysis(payload)
        commit = store.commit(job.video_id, job.user_id, validated)
    except Exception as e:
        record = _error_record(e)
        decision = policy.decide(job, e)
        duration = time.time() - start_time

        if decision.is_retry:
            logger.warning(
                "Job %s attempt %d/%d failed, retrying in %.1fs: %s",
                job.job_id, job.attempt, job.max_attempts, decision.delay_s, e,
            )
            queue.nack(job.job_id, worker_id, decision.delay_s, str(e))
            return JobResult(
                job_id=job.job_id,
                video_id=job.video_id,
                state=JobState.FAILED,
                attempt=job.attempt,
                retry_delay_s=decision.delay_s,
                error=record,
                duration_s=duration,
            )

        logger.error(
            "Dead-lettered job %s (video %s) after attempt %d: %s",
            job.job_id, job.video_id, job.attempt, decision.reason,
            extra={"dead_letter": {"job": job.to_envelope().model_dump(by_alias=True, mode="json"),
                                   "error": record}},
        )
        queue.dead_letter(job.job_id, worker_id, str(e))
        return JobResult(
            job_id=job.job_id,
            video_id=job.video_id,
            state=JobState.DEAD,
            attempt=job.attempt,
            error=record,
            duration_s=duration,
        )

    queue.ack(job.job_id, worker_id, commit.analysis_id)
    return JobResult(
        job_id=job.job_id,
        video_id=job.video_id,
        state=JobState.COMPLETED,
        attempt=job.attempt,
        analysis_id=commit.analysis_id,
        already_committed=commit.already_committed,
        duration_s=time.time() - start_time,
    )


def _start_heartbeat(
    queue: QueueBackend,
    job_id: str,
    worker_id: str,
    interval_s: float,
    visibility_timeout_s: float,
):
    """Start background thread extending the lease every ``interval_s``.

    Returns:
        Tuple of (thread, stop_event) for cleanup
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        while not stop_event.wait(interval_s):
            try:
                if not queue.extend_lease(job_id, worker_id, visibility_timeout_s):
                    logger.warning("Lease on job %s lost; heartbeat stopped", job_id)
                    return
            except TransientQueueError as e:
                logger.warning("Heartbeat failed for %s: %s", job_id, e)

    thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{job_id[:8]}", daemon=True)
    thread.start()
    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data) -> None:
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)


class Dispatcher:
    """Fixed-size pool of workers leasing jobs from a queue backend.

    All collaborators are explicit handles; the dispatcher closes them on
    ``shutdown()``. Each worker thread loops: lease → process_job → repeat,
    and keeps no state shared with other workers.

    Args:
        queue: Queue backend to lease from
        store: Analysis store to commit into
        capability: Black-box analysis capability
        policy: Retry/backoff policy
        worker_config: Concurrency, polling and heartbeat settings
        visibility_timeout_s: Lease duration
        capability_timeout_s: Max wait for one capability call
        rng: Random source for poll jitter
    """

    def __init__(
        self,
        queue: QueueBackend,
        store: AnalysisStore,
        capability: AnalysisCapability,
        policy: RetryPolicy,
        worker_config: Optional[WorkerConfig] = None,
        visibility_timeout_s: float = 900.0,
        capability_timeout_s: float = 600.0,
        rng: Optional[random.Random] = None,
    ):
        self.queue = queue
        self.store = store
        self.capability = capability
        self.policy = policy
        self.worker_config = worker_config or WorkerConfig()
        self.visibility_timeout_s = visibility_timeout_s
        self.capability_timeout_s = capability_timeout_s
        self.concurrency = self.worker_config.concurrency
        self._rng = rng or random.Random()
        self._stop = threading.Event()
        self._workers: Optional[ThreadPoolExecutor] = None
        self._futures = []
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        queue: QueueBackend,
        store: AnalysisStore,
        capability: AnalysisCapability,
    ) -> "Dispatcher":
        return cls(
            queue=queue,
            store=store,
            capability=capability,
            policy=RetryPolicy.from_config(config.retry),
            worker_config=config.worker,
            visibility_timeout_s=config.queue.visibility_timeout_s,
            capability_timeout_s=config.capability.timeout_s,
        )

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.shutdown()

    @property
    def running(self) -> bool:
        return bool(self._futures) and not self._stop.is_set()

    def poll_delay(self, empty_polls: int) -> float:
        """Jittered idle delay, growing with consecutive empty polls up to poll_max_s."""
        cfg = self.worker_config
        ceiling = min(cfg.poll_min_s * (2 ** max(empty_polls - 1, 0)), cfg.poll_max_s)
        return self._rng.uniform(cfg.poll_min_s, ceiling)

    def _queue_backoff(self, failures: int) -> float:
        return min(self.worker_config.poll_min_s * (2 ** failures), QUEUE_BACKOFF_MAX_S)

    def _ensure_workers(self) -> None:
        if self._closed:
            raise RuntimeError("Dispatcher already shut down")
        if self._workers is None:
            self._workers = ThreadPoolExecutor(
                max_workers=self.concurrency, thread_name_prefix="worker"
            )

    def process_one(self, worker_id: str) -> Optional[JobResult]:
        """Lease and process a single job. Returns None if nothing was visible."""
        self._ensure_workers()
        job = self.queue.lease(worker_id, self.visibility_timeout_s)
        if job is None:
            return None
        return self._run_job(worker_id, job)

    def _run_job(self, worker_id: str, job: Job) -> Optional[JobResult]:
        heartbeat = _start_heartbeat(
            self.queue,
            job.job_id,
            worker_id,
            self.worker_config.heartbeat_interval_s,
            self.visibility_timeout_s,
        )
        try:
            return process_job(
                job,
                worker_id,
                self.queue,
                self.store,
                self.capability,
                self.policy,
                self.capability_timeout_s,
            )
        except TransientQueueError as e:
            # Lease expiry hands the job to another worker
            logger.warning("Could not settle job %s: %s", job.job_id, e)
            return None
        finally:
            _stop_heartbeat(heartbeat)

    def _worker_loop(
        self,
        worker_id: str,
        drain: bool = False,
        tickets: Optional[threading.Semaphore] = None,
        on_result: Optional[Callable[[JobResult], None]] = None,
    ) -> List[JobResult]:
        results: List[JobResult] = []
        empty_polls = 0
        queue_failures = 0
        logger.info("Worker %s started", worker_id)

        while not self._stop.is_set():
            if tickets is not None and not tickets.acquire(blocking=False):
                break

            try:
                job = self.queue.lease(worker_id, self.visibility_timeout_s)
                queue_failures = 0
            except TransientQueueError as e:
                if tickets is not None:
                    tickets.release()
                queue_failures += 1
                delay = self._queue_backoff(queue_failures)
                logger.warning("Worker %s: queue unavailable (%s); retrying in %.1fs", worker_id, e, delay)
                self._stop.wait(delay)
                continue

            if job is None:
                if tickets is not None:
                    tickets.release()
                if drain:
                    break
                empty_polls += 1
                self._stop.wait(self.poll_delay(empty_polls))
                continue

            empty_polls = 0
            result = self._run_job(worker_id, job)
            if result is not None:
                results.append(result)
                if on_result is not None:
                    on_result(result)

        logger.info("Worker %s stopped", worker_id)
        return results

    def start(self) -> None:
        """Recover abandoned leases, then launch ``concurrency`` worker loops."""
        self._ensure_workers()
        if self._futures:
            return
        recovered = self.queue.requeue_expired()
        if recovered:
            logger.info("Recovered %d abandoned job(s) on startup", recovered)

        self._stop.clear()
        self._futures = [
            self._workers.submit(self._worker_loop, f"worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Dispatcher started with %d workers", self.concurrency)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop leasing and wait for in-flight jobs.

        Jobs still running after ``timeout`` are left to the visibility
        timeout and will be re-leased by a later worker.
        """
        self._stop.set()
        if not self._futures:
            return
        timeout = self.worker_config.shutdown_timeout_s if timeout is None else timeout
        done, not_done = wait(self._futures, timeout=timeout)
        for future in done:
            if future.exception() is not None:
                logger.error("Worker crashed: %s", future.exception())
        if not_done:
            logger.warning(
                "%d worker(s) still busy after %.0fs; their jobs return via lease expiry",
                len(not_done), timeout,
            )
        self._futures = []

    def drain(self, max_jobs: Optional[int] = None, progress: bool = True) -> List[JobResult]:
        """Process visible jobs until none remain (or ``max_jobs`` were leased).

        Jobs scheduled for a later retry are not waited for.
        """
        self._ensure_workers()
        self.queue.requeue_expired()
        self._stop.clear()

        tickets = threading.Semaphore(max_jobs) if max_jobs is not None else None
        total = self.queue.count_visible()
        if max_jobs is not None:
            total = min(total, max_jobs)

        with tqdm(total=total, desc="Analyzing videos", unit="job", disable=not progress) as bar:
            bar_lock = threading.Lock()

            def advance(_result: JobResult) -> None:
                # Retries that become visible mid-drain add to the total
                with bar_lock:
                    if bar.n >= bar.total:
                        bar.total = bar.n + 1
                    bar.update(1)

            futures = [
                self._workers.submit(self._worker_loop, f"drain-{i}", True, tickets, advance)
                for i in range(self.concurrency)
            ]
            results: List[JobResult] = []
            for future in futures:
                results.extend(future.result())

        return results

    def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM, then shut down gracefully."""
        def _handle_shutdown(signum, frame):
            logger.info("Received signal %s; finishing in-flight jobs", signum)
            self._stop.set()

        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, _handle_shutdown)
            signal.signal(signal.SIGINT, _handle_shutdown)

        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.shutdown()

    def shutdown(self, close_handles: bool = True) -> None:
        """Stop workers and release their threads.

        Queue and store connections are closed too unless the caller owns them
        (``close_handles=False``).
        """
        if self._closed:
            return
        self.stop()
        if self._workers is not None:
            self._workers.shutdown(wait=False)
        if close_handles:
            self.queue.close()
            self.store.close()
        self._closed = True
        logger.info("Dispatcher shut down")
