import asyncio
from collections import Counter
from datetime import UTC, datetime, timedelta

import pytest

from omnisync.features.ingestion.batch_fetcher import BatchFetcher, plan_waves
from omnisync.features.ingestion.domain import SyncContext
from omnisync.services.token_service import TokenLifecycleManager

QUERY = "newer_than:365d"


@pytest.fixture
def build_fetcher(fake_clock, make_credential, make_credentials, make_oauth, make_store):
    def _build(source, store=None, batch_size=20, parallel_batches=5, credentials=None):
        token_manager = TokenLifecycleManager(
            repository=credentials or make_credentials([make_credential()]),
            oauth_service=make_oauth(),
            threshold_minutes=5,
        )
        fetcher = BatchFetcher(
            source,
            token_manager,
            store=store or make_store(),
            batch_size=batch_size,
            parallel_batches=parallel_batches,
            wave_delay_seconds=0.2,
            sleep=fake_clock.sleep,
        )
        context = SyncContext(
            user_id="user-123", batch_id="batch-1", credential=make_credential()
        )
        return fetcher, context, token_manager

    return _build


def test_plan_waves_groups_and_waves(make_ids):
    waves = plan_waves(make_ids(250), batch_size=20, parallel_batches=5)

    assert len(waves) == 3
    assert [len(group) for group in waves[0]] == [20, 20, 20, 20, 20]
    assert [len(group) for group in waves[2]] == [20, 20, 10]
    flattened = [item for wave in waves for group in wave for item in group]
    assert flattened == make_ids(250)


def test_plan_waves_empty():
    assert plan_waves([], batch_size=20, parallel_batches=5) == []


@pytest.mark.asyncio
async def test_single_wave_covers_all_ids(
    build_fetcher, fake_clock, make_ids, make_source, make_store
):
    ids = make_ids(47)
    store = make_store()
    fetcher, context, _ = build_fetcher(make_source(ids), store=store)

    stats = await fetcher.fetch_and_store(context, ids, QUERY)

    assert stats.processed == 47
    assert stats.inserted == 47
    assert stats.errors == 0
    assert store.bulk_calls == 1
    assert len(store.rows) == 47
    # No pause after the last wave
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_waves_pause_between_and_report_running_totals(
    build_fetcher, fake_clock, make_ids, make_source, make_store
):
    ids = make_ids(250)
    store = make_store()
    fetcher, context, _ = build_fetcher(make_source(ids), store=store)
    seen = []

    stats = await fetcher.fetch_and_store(
        context, ids, QUERY, on_wave=lambda wave_stats: seen.append(wave_stats.processed)
    )

    assert seen == [100, 200, 250]
    assert fake_clock.sleeps == [0.2, 0.2]
    assert store.bulk_calls == 3
    assert stats.processed == stats.inserted + stats.errors == 250


@pytest.mark.asyncio
async def test_groups_run_concurrently_and_items_sequentially(
    build_fetcher, make_ids, make_source, make_store
):
    ids = make_ids(30)
    batch_size = 5
    source = make_source(ids)
    store = make_store()
    fetcher, context, _ = build_fetcher(
        source, store=store, batch_size=batch_size, parallel_batches=3
    )

    in_flight = Counter()
    peak = {"total": 0, "group": 0}
    started: list[str] = []
    finished: list[str] = []
    original_get_item = source.get_item

    async def tracking_get_item(credential, source_id):
        group = ids.index(source_id) // batch_size
        started.append(source_id)
        in_flight[group] += 1
        peak["total"] = max(peak["total"], sum(in_flight.values()))
        peak["group"] = max(peak["group"], in_flight[group])
        try:
            await asyncio.sleep(0)
            return await original_get_item(credential, source_id)
        finally:
            in_flight[group] -= 1
            finished.append(source_id)

    upsert_snapshots = []
    original_upsert_many = store.upsert_many

    async def recording_upsert_many(rows):
        upsert_snapshots.append((len(started), len(finished), sum(in_flight.values())))
        return await original_upsert_many(rows)

    source.get_item = tracking_get_item
    store.upsert_many = recording_upsert_many

    stats = await fetcher.fetch_and_store(context, ids, QUERY)

    assert stats.inserted == 30
    # Three groups per wave in flight at once, one item per group
    assert peak["total"] == 3
    assert peak["group"] == 1
    # Each wave is written once all of its items settled, before the next wave starts
    assert upsert_snapshots == [(15, 15, 0), (30, 30, 0)]
    for start in range(0, 30, batch_size):
        group = ids[start : start + batch_size]
        assert [item for item in started if item in group] == group


@pytest.mark.asyncio
async def test_item_failures_are_counted_not_raised(
    build_fetcher, make_ids, make_source, make_store
):
    ids = make_ids(10)
    source = make_source(ids, fail_ids={"m3", "m7"})
    store = make_store()
    fetcher, context, _ = build_fetcher(source, store=store)

    stats = await fetcher.fetch_and_store(context, ids, QUERY)

    assert stats.processed == 10
    assert stats.inserted == 8
    assert stats.errors == 2
    assert ("user-123", "gmail", "m3") not in store.rows
    assert len(source.get_calls) == 10


@pytest.mark.asyncio
async def test_bulk_failure_falls_back_to_single_rows(
    build_fetcher, make_ids, make_source, make_store
):
    ids = make_ids(10)
    store = make_store(fail_bulk=True, fail_ids={"m2"})
    fetcher, context, _ = build_fetcher(make_source(ids), store=store)

    stats = await fetcher.fetch_and_store(context, ids, QUERY)

    assert store.single_calls == 10
    assert stats.inserted == 9
    assert stats.errors == 1
    assert stats.processed == 10
    assert len(store.rows) == 9


@pytest.mark.asyncio
async def test_unmappable_rows_are_skipped_but_conserved(
    build_fetcher, make_ids, make_source, make_store
):
    ids = make_ids(10)
    source = make_source(ids)
    original_to_record = source.to_record

    def to_record_without_time(user_id, source_id, payload, batch_id, query):
        record = original_to_record(user_id, source_id, payload, batch_id, query)
        if source_id == "m4":
            record.occurred_at = None
        return record

    source.to_record = to_record_without_time
    store = make_store()
    fetcher, context, _ = build_fetcher(source, store=store)

    stats = await fetcher.fetch_and_store(context, ids, QUERY)

    assert stats.skipped == 1
    assert stats.inserted == 10
    assert stats.errors == 0
    assert stats.processed == stats.inserted + stats.errors
    assert len(store.rows) == 9
    assert ("user-123", "gmail", "m4") not in store.rows


@pytest.mark.asyncio
async def test_message_without_internal_date_is_stored(
    build_fetcher, make_ids, make_source, make_store
):
    ids = make_ids(2)
    source = make_source(ids)
    original_get_item = source.get_item

    async def get_item_without_date(credential, source_id):
        payload, rotated = await original_get_item(credential, source_id)
        payload.pop("internalDate")
        return payload, rotated

    source.get_item = get_item_without_date
    store = make_store()
    fetcher, context, _ = build_fetcher(source, store=store)

    stats = await fetcher.fetch_and_store(context, ids, QUERY)

    assert stats.inserted == 2
    assert stats.skipped == 0
    row = store.rows[("user-123", "gmail", "m1")]
    assert datetime.now(UTC) - row.occurred_at < timedelta(minutes=1)


@pytest.mark.asyncio
async def test_rotated_credential_used_for_remaining_items(
    build_fetcher, make_credential, make_credentials, make_ids, make_source
):
    ids = make_ids(3)
    rotated = make_credential(access_token="rotated-token")
    source = make_source(ids, rotate_on={"m1": rotated})
    credentials = make_credentials([make_credential()])
    fetcher, context, token_manager = build_fetcher(
        source, batch_size=10, parallel_batches=1, credentials=credentials
    )

    await fetcher.fetch_and_store(context, ids, QUERY)
    await token_manager.drain()

    assert source.get_calls == [
        ("token-1", "m1"),
        ("rotated-token", "m2"),
        ("rotated-token", "m3"),
    ]
    assert context.credential.access_token == "rotated-token"
    assert credentials.saved[-1].access_token == "rotated-token"


@pytest.mark.asyncio
async def test_records_carry_query_and_batch(build_fetcher, make_ids, make_source, make_store):
    ids = make_ids(2)
    store = make_store()
    fetcher, context, _ = build_fetcher(make_source(ids), store=store)

    await fetcher.fetch_and_store(context, ids, QUERY)

    row = store.rows[("user-123", "gmail", "m1")]
    assert row.batch_id == "batch-1"
    assert row.source_meta["matchedQuery"] == QUERY
    assert row.source_meta["syncType"] == "service_sync"
    assert row.occurred_at.year == 2024
