from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from repurpose_ai.config import configure_logging, resolve_config
from repurpose_ai.models import PipelineConfig
from repurpose_ai.pipeline import (
    PipelineHandles,
    build_handles,
    get_queue_stats,
    retry_dead_job,
    submit_analysis_job,
)
from repurpose_ai.queue import Job, JobState

logger = logging.getLogger(__name__)


# --- Pydantic Models for Requests/Responses ---
class AnalysisRequest(BaseModel):
    userId: str = Field(..., min_length=1)  # noqa: N815


class JobAccepted(BaseModel):
    jobId: str  # noqa: N815
    status: str


def _job_to_response(job: Job) -> dict:
    return {
        "id": job.job_id,
        "videoId": job.video_id,
        "userId": job.user_id,
        "state": job.state,
        "attempt": job.attempt,
        "maxAttempts": job.max_attempts,
        "enqueuedAt": job.enqueued_at.isoformat(),
        "updatedAt": job.updated_at.isoformat() if job.updated_at else None,
        "nextVisibleAt": job.next_visible_at.isoformat() if job.next_visible_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        "lastError": job.last_error,
        "analysisId": job.analysis_id,
    }


def _handles(request: Request) -> PipelineHandles:
    return request.app.state.handles


def create_app(
    config: Optional[PipelineConfig] = None,
    handles: Optional[PipelineHandles] = None,
) -> FastAPI:
    """Build the producer/polling API.

    When ``handles`` is given the caller owns them; otherwise they are opened
    in the lifespan and closed on shutdown.
    """
    config = config or resolve_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "handles", None) is None:
            owned = build_handles(config)
            app.state.handles = owned
        yield
        if owned is not None:
            owned.close()
            app.state.handles = None

    app = FastAPI(title="repurpose-ai", lifespan=lifespan)
    app.state.config = config
    app.state.handles = handles

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check(request: Request):
        stats = await asyncio.to_thread(get_queue_stats, _handles(request).queue)
        return {"status": "ok", "queue": stats}

    @app.post("/videos/{video_id}/analysis", status_code=202)
    async def request_analysis(video_id: str, data: AnalysisRequest, request: Request):
        """Enqueue analysis of a video. 409 if an analysis is already committed.

        The check is best-effort: a job racing past it is absorbed by the
        commit layer.
        """
        handles = _handles(request)
        existing = await asyncio.to_thread(handles.store.get_by_video, video_id)
        if existing is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "code": "ANALYSIS_EXISTS",
                    "message": "Analysis already exists for this video",
                    "videoId": video_id,
                    "analysisId": existing.analysis_id,
                },
            )

        job_id = await asyncio.to_thread(
            submit_analysis_job,
            handles.queue,
            video_id,
            data.userId,
            config.retry.max_attempts,
        )
        return JobAccepted(jobId=job_id, status=JobState.PENDING.value)

    @app.get("/jobs")
    async def list_jobs(
        request: Request,
        state: Optional[JobState] = None,
        limit: int = Query(default=100, ge=1, le=1000),
    ):
        """List jobs in enqueue order, optionally filtered by state."""
        jobs = await asyncio.to_thread(
            _handles(request).queue.list_jobs, state.value if state else None, limit
        )
        return [_job_to_response(job) for job in jobs]

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request):
        job = await asyncio.to_thread(_handles(request).queue.get_job, job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return _job_to_response(job)

    @app.post("/jobs/{job_id}/retry")
    async def retry_job(job_id: str, request: Request):
        """Operator requeue of a dead-lettered job."""
        queue = _handles(request).queue
        job = await asyncio.to_thread(queue.get_job, job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")

        requeued = await asyncio.to_thread(
            retry_dead_job, queue, job_id, config.retry.max_attempts
        )
        if not requeued:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "code": "JOB_NOT_DEAD",
                    "message": "Only dead jobs can be retried",
                    "state": job.state,
                },
            )
        return {"jobId": job_id, "status": JobState.PENDING.value}

    @app.get("/videos/{video_id}/analysis")
    async def get_analysis(video_id: str, request: Request):
        analysis = await asyncio.to_thread(_handles(request).store.get_by_video, video_id)
        if not analysis:
            raise HTTPException(status_code=404, detail="Analysis not found")
        return analysis.model_dump(by_alias=True, mode="json")

    @app.get("/users/{user_id}/analyses")
    async def list_user_analyses(
        user_id: str,
        request: Request,
        limit: int = Query(default=10, ge=1, le=100),
    ):
        """Most recent analyses for a user."""
        analyses = await asyncio.to_thread(
            _handles(request).store.recent_for_user, user_id, limit
        )
        return [a.model_dump(by_alias=True, mode="json") for a in analyses]

    return app


if __name__ == "__main__":
    import uvicorn

    app_config = resolve_config()
    configure_logging(app_config)
    uvicorn.run(create_app(app_config), host="0.0.0.0", port=8000)
