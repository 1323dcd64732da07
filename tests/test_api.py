"""Tests for the producer/polling API and its 409 Conflict handling."""

import pytest
from httpx import AsyncClient

from repurpose_ai.analysis import validate_analysis


@pytest.mark.asyncio(loop_scope="function")
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["queue"]["total"] == 0


@pytest.mark.asyncio(loop_scope="function")
async def test_request_analysis_enqueues_job(client: AsyncClient):
    """Requesting an analysis returns 202 with a pollable job id."""
    response = await client.post("/videos/video-1/analysis", json={"userId": "user-1"})
    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "pending"

    job = (await client.get(f"/jobs/{data['jobId']}")).json()
    assert job["videoId"] == "video-1"
    assert job["userId"] == "user-1"
    assert job["state"] == "pending"
    assert job["attempt"] == 0
    assert job["maxAttempts"] == 3


@pytest.mark.asyncio(loop_scope="function")
async def test_request_analysis_requires_user(client: AsyncClient):
    response = await client.post("/videos/video-1/analysis", json={})
    assert response.status_code == 422


@pytest.mark.asyncio(loop_scope="function")
async def test_existing_analysis_returns_409(client: AsyncClient, handles, tutorial_payload):
    """A video that already has an analysis is rejected with 409 Conflict."""
    committed = handles.store.commit("video-1", "user-1", validate_analysis(tutorial_payload))

    response = await client.post("/videos/video-1/analysis", json={"userId": "user-1"})
    assert response.status_code == 409
    data = response.json()
    assert data["detail"]["code"] == "ANALYSIS_EXISTS"
    assert data["detail"]["analysisId"] == committed.analysis_id


@pytest.mark.asyncio(loop_scope="function")
async def test_get_unknown_job_returns_404(client: AsyncClient):
    response = await client.get("/jobs/missing")
    assert response.status_code == 404


@pytest.mark.asyncio(loop_scope="function")
async def test_list_jobs_by_state(client: AsyncClient, handles):
    await client.post("/videos/video-1/analysis", json={"userId": "user-1"})
    await client.post("/videos/video-2/analysis", json={"userId": "user-1"})
    handles.queue.lease("worker-1", 60)

    pending = (await client.get("/jobs", params={"state": "pending"})).json()
    active = (await client.get("/jobs", params={"state": "active"})).json()
    everything = (await client.get("/jobs")).json()

    assert [j["videoId"] for j in pending] == ["video-2"]
    assert [j["videoId"] for j in active] == ["video-1"]
    assert len(everything) == 2

    response = await client.get("/jobs", params={"state": "bogus"})
    assert response.status_code == 422


@pytest.mark.asyncio(loop_scope="function")
async def test_get_analysis(client: AsyncClient, handles, tutorial_payload):
    response = await client.get("/videos/video-1/analysis")
    assert response.status_code == 404

    handles.store.commit("video-1", "user-1", validate_analysis(tutorial_payload))

    data = (await client.get("/videos/video-1/analysis")).json()
    assert data["videoId"] == "video-1"
    assert len(data["keyMoments"]) == 4
    assert data["keyMoments"][2]["viralScore"] == 9


@pytest.mark.asyncio(loop_scope="function")
async def test_user_analyses_most_recent_first(client: AsyncClient, handles, tutorial_payload):
    validated = validate_analysis(tutorial_payload)
    for i in range(3):
        handles.store.commit(f"video-{i}", "user-1", validated)

    data = (await client.get("/users/user-1/analyses", params={"limit": 2})).json()
    assert len(data) == 2
    assert data[0]["createdAt"] >= data[1]["createdAt"]

    assert (await client.get("/users/nobody/analyses")).json() == []


@pytest.mark.asyncio(loop_scope="function")
async def test_retry_dead_job(client: AsyncClient, handles):
    job_id = (await client.post("/videos/video-1/analysis", json={"userId": "user-1"})).json()["jobId"]

    # Live job cannot be retried
    response = await client.post(f"/jobs/{job_id}/retry")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "JOB_NOT_DEAD"

    handles.queue.lease("worker-1", 60)
    handles.queue.dead_letter(job_id, "worker-1", "capability failed")

    response = await client.post(f"/jobs/{job_id}/retry")
    assert response.status_code == 200
    assert response.json() == {"jobId": job_id, "status": "pending"}
    job = (await client.get(f"/jobs/{job_id}")).json()
    assert job["state"] == "pending"
    assert job["attempt"] == 1
    assert job["maxAttempts"] == 4


@pytest.mark.asyncio(loop_scope="function")
async def test_retry_unknown_job_returns_404(client: AsyncClient):
    response = await client.post("/jobs/missing/retry")
    assert response.status_code == 404
