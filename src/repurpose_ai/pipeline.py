"""Producer and operator helpers on top of the job queue.

This module is the entry point used by the CLI and the HTTP API. It builds
explicit queue/store/capability handles from a resolved config and exposes
the producer operation plus the operator actions (stats, dead-letter
inspection, requeue, crash recovery).

Usage:
    config = resolve_config()
    with open_handles(config) as handles:
        job_id = submit_analysis_job(handles.queue, "video-123", "user-1")
        stats = process_queue(config, handles)
        print(get_queue_stats(handles.queue))
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from .analysis.capability import AnalysisCapability, load_capability
from .analysis.store import AnalysisStore
from .errors import FatalConfigError
from .models import PipelineConfig
from .queue import Dispatcher, Job, JobState, QueueBackend, SQLiteQueue

logger = logging.getLogger(__name__)


@dataclass
class PipelineHandles:
    """Explicitly owned connections for one process."""

    queue: QueueBackend
    store: AnalysisStore
    capability: AnalysisCapability

    def close(self) -> None:
        self.queue.close()
        self.store.close()


def build_handles(config: PipelineConfig) -> PipelineHandles:
    """Open queue and store pools and load the capability.

    Raises:
        FatalConfigError: Unsupported queue URL or unloadable capability
        TransientQueueError: Queue store unreachable at startup
    """
    capability = load_capability(config.capability.target)

    try:
        queue = SQLiteQueue.from_config(config.queue)
    except ValueError as e:
        raise FatalConfigError(str(e)) from e

    store = AnalysisStore.from_config(config.storage)
    logger.info(
        "Pipeline handles ready (queue=%s, storage=%s, capability=%s)",
        config.queue.url, config.storage.url, config.capability.target,
    )
    return PipelineHandles(queue=queue, store=store, capability=capability)


@contextmanager
def open_handles(config: PipelineConfig) -> Iterator[PipelineHandles]:
    handles = build_handles(config)
    try:
        yield handles
    finally:
        handles.close()


def submit_analysis_job(
    queue: QueueBackend,
    video_id: str,
    user_id: str,
    max_attempts: int = 3,
) -> str:
    """Enqueue one analysis job.

    Always enqueues, even when the video already has an analysis: the commit
    layer absorbs the duplicate, so resubmission is harmless.

    Returns:
        The new job id
    """
    if not video_id or not user_id:
        raise ValueError("video_id and user_id are required")

    job = Job(
        job_id=str(uuid.uuid4()),
        video_id=video_id,
        user_id=user_id,
        max_attempts=max_attempts,
    )
    return queue.enqueue(job)


def process_queue(
    config: PipelineConfig,
    handles: PipelineHandles,
    max_jobs: Optional[int] = None,
    progress: bool = True,
) -> Dict[str, Any]:
    """Drain currently visible jobs with a worker pool.

    Returns:
        Dictionary with processing statistics:
            - completed: Jobs acked (including absorbed duplicates)
            - already_committed: Completed jobs whose commit was absorbed
            - retried: Attempts that failed and were scheduled for retry
            - dead: Jobs dead-lettered
            - total_duration: Sum of per-job processing time in seconds
    """
    dispatcher = Dispatcher.from_config(config, handles.queue, handles.store, handles.capability)
    start = time.time()
    try:
        results = dispatcher.drain(max_jobs=max_jobs, progress=progress)
    finally:
        dispatcher.shutdown(close_handles=False)

    stats = {
        "completed": 0,
        "already_committed": 0,
        "retried": 0,
        "dead": 0,
        "total_duration": 0.0,
        "wall_time": 0.0,
    }
    for result in results:
        if result.state == JobState.COMPLETED.value:
            stats["completed"] += 1
            if result.already_committed:
                stats["already_committed"] += 1
        elif result.state == JobState.FAILED.value:
            stats["retried"] += 1
        elif result.state == JobState.DEAD.value:
            stats["dead"] += 1
        stats["total_duration"] += result.duration_s

    stats["wall_time"] = time.time() - start
    return stats


def get_queue_stats(queue: QueueBackend) -> Dict[str, int]:
    """Job counts per state, plus ``total``."""
    stats = queue.count_by_state()
    stats["total"] = sum(stats.values())
    return stats


def list_dead_jobs(queue: QueueBackend, limit: Optional[int] = None) -> List[Job]:
    return queue.list_jobs(state=JobState.DEAD.value, limit=limit)


def retry_dead_job(queue: QueueBackend, job_id: str, budget: int = 3) -> bool:
    """Operator action: move a dead job back to pending with ``budget`` more attempts."""
    return queue.retry_dead(job_id, budget)


def recover_abandoned(queue: QueueBackend) -> int:
    """Reset expired leases left behind by crashed workers."""
    return queue.requeue_expired()
