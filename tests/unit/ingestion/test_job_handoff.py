from unittest.mock import AsyncMock

import pytest

from omnisync.features.ingestion.job_handoff import JobHandoff


@pytest.mark.asyncio
async def test_nothing_written_enqueues_nothing():
    jobs = AsyncMock()

    job_id = await JobHandoff(jobs).enqueue_if_needed(
        "user-123", "batch-1", 0, kind="normalize_google_email", provider="gmail"
    )

    assert job_id is None
    jobs.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_enqueues_normalization_job(make_jobs):
    jobs = make_jobs()

    job_id = await JobHandoff(jobs).enqueue_if_needed(
        "user-123", "batch-1", 12, kind="normalize_google_calendar", provider="calendar"
    )

    assert job_id == "job-1"
    assert jobs.jobs[job_id]["kind"] == "normalize_google_calendar"
    assert jobs.jobs[job_id]["payload"] == {"batchId": "batch-1", "provider": "calendar"}
    assert jobs.jobs[job_id]["status"] == "queued"


@pytest.mark.asyncio
async def test_enqueue_failure_is_logged_not_raised():
    jobs = AsyncMock()
    jobs.enqueue.side_effect = RuntimeError("jobs table locked")

    job_id = await JobHandoff(jobs).enqueue_if_needed(
        "user-123", "batch-1", 3, kind="normalize_google_email", provider="gmail"
    )

    assert job_id is None
    jobs.enqueue.assert_awaited_once()
