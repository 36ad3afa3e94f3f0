"""
Dedup upsert store for raw_events.

Rows are keyed by (user_id, provider, source_id). Re-syncing an item
overwrites payload, occurred_at, source_meta and batch_id in place and
keeps created_at, which the window planner uses as the first-seen
watermark.
"""

from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from omnisync.db.helpers import execute_query, fetch_one, fetch_val, with_db_retry
from omnisync.features.ingestion.domain import RawEventRecord
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_ROW_PLACEHOLDER = "(%s, %s, %s, %s, %s, %s, %s)"

_UPSERT_PREFIX = """
    INSERT INTO raw_events (
        user_id, provider, source_id, payload, occurred_at, source_meta, batch_id
    )
    VALUES
"""

_UPSERT_SUFFIX = """
    ON CONFLICT (user_id, provider, source_id)
    DO UPDATE SET
        payload = EXCLUDED.payload,
        occurred_at = EXCLUDED.occurred_at,
        source_meta = EXCLUDED.source_meta,
        batch_id = EXCLUDED.batch_id
"""


def is_ingestible(row: RawEventRecord) -> bool:
    """Rows without a stable key or a point in time are not stored yet."""
    if not row.source_id or row.occurred_at is None:
        return False
    if row.provider == "calendar":
        return bool(row.payload.get("start")) and bool(row.payload.get("end"))
    return True


def build_upsert_query(row_count: int) -> str:
    values = ",\n        ".join([_ROW_PLACEHOLDER] * row_count)
    return f"{_UPSERT_PREFIX}        {values}{_UPSERT_SUFFIX}"


def _row_params(row: RawEventRecord) -> tuple:
    return (
        row.user_id,
        row.provider,
        row.source_id,
        Jsonb(row.payload),
        row.occurred_at,
        Jsonb(row.source_meta),
        row.batch_id,
    )


class RawEventRepository:
    """Persistence helpers for raw provider events."""

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def upsert_many(cls, rows: list[RawEventRecord]) -> int:
        """
        Upsert a wave of rows in one statement.

        Rows that are not ingestible are skipped. Rows sharing a key are
        collapsed to the last one (Postgres cannot update the same row
        twice in one statement) but still count as written.

        Returns:
            Number of input rows accepted into raw_events

        Raises:
            DatabaseError: If the statement fails
        """
        accepted = [row for row in rows if is_ingestible(row)]
        if not accepted:
            return 0

        deduped = list({row.dedup_key: row for row in accepted}.values())

        params: list[Any] = []
        for row in deduped:
            params.extend(_row_params(row))

        await execute_query(build_upsert_query(len(deduped)), tuple(params))

        logger.debug(
            "Raw events upserted",
            row_count=len(accepted),
            distinct_keys=len(deduped),
        )
        return len(accepted)

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def upsert_one(cls, row: RawEventRecord) -> bool:
        """Upsert a single row. Returns False when the row was skipped."""
        if not is_ingestible(row):
            return False

        await execute_query(build_upsert_query(1), _row_params(row))
        return True

    @classmethod
    async def latest_created_at(cls, user_id: str, provider: str) -> datetime | None:
        query = """
            SELECT MAX(created_at) AS latest
            FROM raw_events
            WHERE user_id = %s
              AND provider = %s
        """
        return await fetch_val(query, (user_id, provider))

    @classmethod
    async def get_ingestion_stats(cls, user_id: str, provider: str) -> dict[str, Any]:
        """Totals shown on the integration settings page."""
        query = """
            SELECT
                COUNT(*) AS total_events,
                COUNT(*) FILTER (
                    WHERE occurred_at >= NOW() - INTERVAL '24 hours'
                ) AS recent_events,
                MAX(created_at) AS last_ingestion_at
            FROM raw_events
            WHERE user_id = %s
              AND provider = %s
        """
        row = await fetch_one(query, (user_id, provider)) or {}
        last_ingestion_at = row.get("last_ingestion_at")
        return {
            "total_events": row.get("total_events") or 0,
            "recent_events": row.get("recent_events") or 0,
            "last_ingestion_at": last_ingestion_at.isoformat() if last_ingestion_at else None,
        }
