"""
Sync window planning.

Incremental runs start from the newest raw_events.created_at we already
hold for the user and provider, pulled back by the overlap and rounded
down to a UTC day (`after:YYYY/MM/DD`). Everything else falls back to a
relative window (`newer_than:Nd`).
"""

from datetime import UTC, datetime, timedelta

from omnisync.config import settings
from omnisync.features.ingestion.repository.raw_event_repository import RawEventRepository
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def format_after_query(boundary: datetime) -> str:
    boundary = boundary.astimezone(UTC) if boundary.tzinfo else boundary.replace(tzinfo=UTC)
    return f"after:{boundary:%Y/%m/%d}"


def format_newer_than_query(days_back: int) -> str:
    return f"newer_than:{days_back}d"


class SyncWindowPlanner:
    def __init__(self, store=RawEventRepository):
        self._store = store

    async def plan_query(
        self,
        user_id: str,
        provider: str,
        incremental: bool,
        overlap_hours: int = 0,
        fallback_days_back: int | None = None,
    ) -> str:
        """
        Build the provider query for one run.

        Args:
            user_id: Owner of the raw events
            provider: "gmail" or "calendar"
            incremental: Start from the newest event already ingested
            overlap_hours: Hours to pull the boundary back by
            fallback_days_back: Relative window when there is no prior event

        Returns:
            `after:YYYY/MM/DD` or `newer_than:Nd`
        """
        days_back = fallback_days_back or settings.SYNC_DEFAULT_DAYS_BACK

        if incremental:
            latest = await self._store.latest_created_at(user_id, provider)
            if latest is not None:
                query = format_after_query(latest - timedelta(hours=overlap_hours))
                logger.info(
                    "Planned incremental sync window",
                    user_id=user_id,
                    provider=provider,
                    latest_created_at=latest.isoformat(),
                    overlap_hours=overlap_hours,
                    query=query,
                )
                return query

        query = format_newer_than_query(days_back)
        logger.info(
            "Planned full sync window",
            user_id=user_id,
            provider=provider,
            incremental=incremental,
            query=query,
        )
        return query
