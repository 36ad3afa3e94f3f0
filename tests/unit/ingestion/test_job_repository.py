from uuid import UUID

import pytest

from omnisync.features.ingestion.repository import job_repository
from omnisync.features.ingestion.repository.job_repository import JobRepository

JOB_ID = UUID("6f1c1f7e-8a51-4f57-9d3e-2f1b6a0c9d11")


@pytest.mark.asyncio
async def test_enqueue_inserts_queued_job(monkeypatch):
    captured = {}

    async def fake_fetch_one(query, params=None):
        captured["query"] = query
        captured["params"] = params
        return {"id": JOB_ID}

    monkeypatch.setattr(job_repository, "fetch_one", fake_fetch_one)

    job_id = await JobRepository.enqueue(
        "user-123", "normalize_google_email", {"batchId": "b1", "provider": "gmail"}, "b1"
    )

    assert job_id == str(JOB_ID)
    params = captured["params"]
    assert params[0:2] == ("user-123", "normalize_google_email")
    assert params[2].obj == {"batchId": "b1", "provider": "gmail"}
    assert params[3:] == ("queued", "b1")
    assert "RETURNING id" in captured["query"]


@pytest.mark.asyncio
async def test_get_status_of_missing_job(monkeypatch):
    async def fake_fetch_one(query, params=None):
        return None

    monkeypatch.setattr(job_repository, "fetch_one", fake_fetch_one)

    assert await JobRepository.get_status("missing") is None


@pytest.mark.asyncio
async def test_get_maps_row(monkeypatch):
    async def fake_fetch_one(query, params=None):
        return {
            "id": JOB_ID,
            "user_id": "user-123",
            "kind": "normalize_google_calendar",
            "status": "processing",
            "batch_id": "b2",
            "attempts": 1,
            "last_error": None,
            "created_at": None,
            "updated_at": None,
        }

    monkeypatch.setattr(job_repository, "fetch_one", fake_fetch_one)

    job = await JobRepository.get(str(JOB_ID))

    assert job.status == "processing"
    assert job.attempts == 1
    assert await JobRepository.get_status(str(JOB_ID)) == "processing"
