"""
Bounded-concurrency fetch of full item bodies.

IDs are cut into groups of batch_size, and groups into waves of
parallel_batches. Groups in a wave run concurrently, items inside a group
run one after another, and waves run strictly in sequence with a fixed
pause between them. Each wave is committed with one bulk upsert once all
of its groups have settled.
"""

import asyncio
from collections.abc import Callable

from omnisync.config import settings
from omnisync.features.ingestion.domain import FetchStats, RawEventRecord, SyncContext
from omnisync.features.ingestion.errors import BulkUpsertError, PerItemFetchError
from omnisync.features.ingestion.repository.raw_event_repository import RawEventRepository
from omnisync.features.ingestion.resilience import bulk_with_fallback
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def plan_waves(ids: list[str], batch_size: int, parallel_batches: int) -> list[list[list[str]]]:
    groups = [ids[i : i + batch_size] for i in range(0, len(ids), batch_size)]
    return [groups[i : i + parallel_batches] for i in range(0, len(groups), parallel_batches)]


class BatchFetcher:
    def __init__(
        self,
        source,
        token_manager,
        store=RawEventRepository,
        batch_size: int | None = None,
        parallel_batches: int | None = None,
        wave_delay_seconds: float | None = None,
        sleep=asyncio.sleep,
    ):
        config = settings.get_batch_config(source.provider)
        self._source = source
        self._token_manager = token_manager
        self._store = store
        self.batch_size = batch_size or config["batch_size"]
        self.parallel_batches = parallel_batches or config["parallel_batches"]
        self.wave_delay_seconds = (
            wave_delay_seconds if wave_delay_seconds is not None else config["wave_delay_seconds"]
        )
        self._sleep = sleep

    async def fetch_and_store(
        self,
        context: SyncContext,
        ids: list[str],
        query: str,
        on_wave: Callable[[FetchStats], None] | None = None,
    ) -> FetchStats:
        """
        Fetch, map and upsert every ID.

        Per-item failures are counted, never raised. After every wave
        processed == inserted + errors.

        Args:
            context: Run state holding the current credential
            ids: Candidate IDs from the lister
            query: Planner query, recorded in source_meta
            on_wave: Called with the running totals after each wave
        """
        stats = FetchStats()
        waves = plan_waves(ids, self.batch_size, self.parallel_batches)

        for index, wave in enumerate(waves):
            results = await asyncio.gather(
                *(self._fetch_group(context, group, query) for group in wave)
            )

            rows: list[RawEventRecord] = []
            fetch_failures = 0
            for group_rows, group_failures in results:
                rows.extend(group_rows)
                fetch_failures += group_failures

            outcome = await bulk_with_fallback(rows, self._bulk_upsert, self._store.upsert_one)

            stats.processed += len(rows) + fetch_failures
            stats.inserted += outcome.accepted
            stats.skipped += outcome.declined
            stats.errors += fetch_failures + len(outcome.failed)

            logger.info(
                "Sync wave committed",
                user_id=context.user_id,
                batch_id=context.batch_id,
                provider=self._source.provider,
                wave=index + 1,
                waves=len(waves),
                fell_back=outcome.fell_back,
                **stats.to_dict(),
            )

            if on_wave:
                on_wave(stats)

            if index < len(waves) - 1 and self.wave_delay_seconds > 0:
                await self._sleep(self.wave_delay_seconds)

        return stats

    async def _bulk_upsert(self, rows: list[RawEventRecord]) -> int:
        try:
            return await self._store.upsert_many(rows)
        except Exception as e:
            raise BulkUpsertError(f"{type(e).__name__}: {e}") from e

    async def _fetch_group(
        self, context: SyncContext, group: list[str], query: str
    ) -> tuple[list[RawEventRecord], int]:
        rows: list[RawEventRecord] = []
        failures = 0

        for source_id in group:
            try:
                rows.append(await self._fetch_item(context, source_id, query))
            except PerItemFetchError as e:
                failures += 1
                logger.warning(
                    "Item fetch failed",
                    user_id=context.user_id,
                    provider=self._source.provider,
                    source_id=e.source_id,
                    error=e.message,
                )

        return rows, failures

    async def _fetch_item(self, context: SyncContext, source_id: str, query: str) -> RawEventRecord:
        try:
            payload, rotated = await self._source.get_item(context.credential, source_id)
            if context.adopt(rotated):
                self._token_manager.record_rotation(rotated)

            return self._source.to_record(
                context.user_id, source_id, payload, context.batch_id, query
            )
        except Exception as e:
            raise PerItemFetchError(
                f"{type(e).__name__}: {e}", source_id=source_id, user_id=context.user_id
            ) from e
