from datetime import UTC, datetime, timedelta, timezone

import pytest

from omnisync.features.ingestion.window_planner import (
    SyncWindowPlanner,
    format_after_query,
    format_newer_than_query,
)


class WatermarkStore:
    def __init__(self, latest):
        self.latest = latest

    async def latest_created_at(self, user_id, provider):
        return self.latest


def test_after_query_uses_utc_day():
    boundary = datetime(2024, 3, 10, 1, 30, tzinfo=timezone(timedelta(hours=5)))
    assert format_after_query(boundary) == "after:2024/03/09"


def test_newer_than_query():
    assert format_newer_than_query(365) == "newer_than:365d"


@pytest.mark.asyncio
async def test_first_sync_falls_back_to_relative_window():
    planner = SyncWindowPlanner(WatermarkStore(None))

    query = await planner.plan_query("user-123", "gmail", incremental=True, fallback_days_back=90)

    assert query == "newer_than:90d"


@pytest.mark.asyncio
async def test_incremental_sync_starts_at_watermark():
    planner = SyncWindowPlanner(WatermarkStore(datetime(2024, 3, 10, 15, 0, tzinfo=UTC)))

    query = await planner.plan_query("user-123", "gmail", incremental=True)

    assert query == "after:2024/03/10"


@pytest.mark.asyncio
async def test_overlap_crosses_day_boundary():
    planner = SyncWindowPlanner(WatermarkStore(datetime(2024, 3, 10, 2, 0, tzinfo=UTC)))

    query = await planner.plan_query("user-123", "gmail", incremental=True, overlap_hours=3)

    assert query == "after:2024/03/09"


@pytest.mark.asyncio
async def test_full_sync_ignores_watermark():
    planner = SyncWindowPlanner(WatermarkStore(datetime(2024, 3, 10, tzinfo=UTC)))

    query = await planner.plan_query("user-123", "gmail", incremental=False)

    assert query == "newer_than:365d"
