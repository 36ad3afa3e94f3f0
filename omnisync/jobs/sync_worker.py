"""
Sync worker runner.

Runs one provider sync per user, one user after another. The provider and
user ids come from CLI args (`sync_worker gmail user-1 user-2`) or from the
SYNC_PROVIDER and SYNC_USER_IDS environment variables. SYNC_CALENDAR_IDS
pins the calendars a calendar run syncs.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from omnisync.config import settings
from omnisync.db.pool import db_pool
from omnisync.features.ingestion import (
    AuthError,
    SyncError,
    SyncOptions,
    SyncResult,
    close_sync_orchestrators,
    sync_calendar,
    sync_gmail,
)
from omnisync.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

SyncCoroutine = Callable[[str, SyncOptions], Awaitable[SyncResult]]

SYNC_REGISTRY: dict[str, SyncCoroutine] = {
    "gmail": sync_gmail,
    "calendar": sync_calendar,
}


def _split_env(name: str) -> list[str]:
    return [value.strip() for value in os.getenv(name, "").split(",") if value.strip()]


def _resolve_args(argv: list[str]) -> tuple[str, list[str]]:
    """Pick provider and user ids from CLI args or the environment."""
    if argv:
        return argv[0].strip().lower(), [user_id.strip() for user_id in argv[1:]]

    provider = os.getenv("SYNC_PROVIDER", "gmail").strip().lower()
    return provider, _split_env("SYNC_USER_IDS")


async def run_worker(
    provider: str,
    user_ids: list[str],
    full: bool = False,
    calendar_ids: list[str] | None = None,
) -> dict[str, int]:
    """Sync every user for one provider. A failed user does not stop the rest."""
    if provider not in SYNC_REGISTRY:
        raise ValueError(
            f"Unknown sync provider '{provider}'. "
            f"Available providers: {', '.join(sorted(SYNC_REGISTRY.keys()))}"
        )

    logger.info("Starting sync worker", provider=provider, users=len(user_ids), full=full)
    summary = {"completed": 0, "failed": 0, "inserted": 0}

    sync = SYNC_REGISTRY[provider]
    for user_id in user_ids:
        try:
            result = await sync(
                user_id, SyncOptions(incremental=not full, calendar_ids=calendar_ids)
            )
        except (AuthError, SyncError) as e:
            summary["failed"] += 1
            logger.warning(
                "Sync failed for user",
                user_id=user_id,
                provider=provider,
                error=e.message,
                error_type=type(e).__name__,
            )
            continue

        summary["completed"] += 1
        summary["inserted"] += result.stats.inserted

    logger.info("Sync worker finished", provider=provider, **summary)
    return summary


async def _main(argv: list[str]) -> None:
    setup_logging(settings.LOG_LEVEL, json_logs=settings.environment != "development")
    await db_pool.initialize()
    try:
        provider, user_ids = _resolve_args(argv)
        await run_worker(
            provider,
            user_ids,
            full=os.getenv("SYNC_FULL", "").lower() == "true",
            calendar_ids=_split_env("SYNC_CALENDAR_IDS") or None,
        )
    finally:
        await close_sync_orchestrators()
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    asyncio.run(_main(sys.argv[1:]))


if __name__ == "__main__":
    main()
