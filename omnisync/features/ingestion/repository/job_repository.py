"""
Write side of the downstream jobs table.

The ingestion pipeline only creates normalization jobs and reads their
status back; claiming and running them belongs to the job runner.
"""

from typing import Any

from psycopg.types.json import Jsonb

from omnisync.db.helpers import fetch_one, with_db_retry
from omnisync.features.ingestion.domain import JobRecord, JobStatus
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class JobRepository:
    """Persistence helpers for jobs rows."""

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.1)
    async def enqueue(
        cls, user_id: str, kind: str, payload: dict[str, Any], batch_id: str | None = None
    ) -> str:
        query = """
            INSERT INTO jobs (user_id, kind, payload, status, attempts, batch_id)
            VALUES (%s, %s, %s, %s, 0, %s)
            RETURNING id
        """
        row = await fetch_one(
            query, (user_id, kind, Jsonb(payload), JobStatus.QUEUED.value, batch_id)
        )
        return str(row["id"])

    @classmethod
    async def get(cls, job_id: str) -> JobRecord | None:
        query = """
            SELECT id, user_id, kind, status, batch_id, attempts, last_error, created_at, updated_at
            FROM jobs
            WHERE id = %s
        """
        row = await fetch_one(query, (job_id,))
        if not row:
            return None

        return JobRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=row["kind"],
            status=row["status"],
            batch_id=row.get("batch_id"),
            attempts=row.get("attempts") or 0,
            last_error=row.get("last_error"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @classmethod
    async def get_status(cls, job_id: str) -> str | None:
        job = await cls.get(job_id)
        return job.status if job else None
