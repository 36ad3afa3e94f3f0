"""
PostgreSQL connection pool for the sync worker.

The pool opens lazily on first use, so library callers (sync_gmail and
friends) work without an explicit startup hook; the worker still opens
and closes it around a run.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from omnisync.config import settings
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

STATEMENT_TIMEOUT = "60s"
CLOSE_TIMEOUT_SECONDS = 30.0


class DatabasePoolManager:
    """Owns the AsyncConnectionPool behind raw_events, jobs and user_integrations."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._open_lock = asyncio.Lock()
        self._closed = False

    async def initialize(self) -> None:
        """Open the pool. Safe to call more than once."""
        async with self._open_lock:
            if self.pool is not None:
                return
            if self._closed:
                raise RuntimeError("Database pool is closed")
            if not settings.DATABASE_URL:
                raise RuntimeError("DATABASE_URL not configured")

            pool_config = settings.get_db_pool_config()
            pool = AsyncConnectionPool(
                conninfo=settings.DATABASE_URL,
                open=False,
                check=AsyncConnectionPool.check_connection,
                configure=self._configure_connection,
                **pool_config,
            )

            try:
                await pool.open(wait=True)
            except Exception as e:
                logger.error("Failed to open database pool", error=str(e))
                await pool.close()
                raise RuntimeError(f"Database pool initialization failed: {e}") from e

            self.pool = pool
            logger.info(
                "Database pool opened",
                min_size=pool_config["min_size"],
                max_size=pool_config["max_size"],
            )

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row

        # Every helper runs one statement; no implicit transactions left open
        await conn.set_autocommit(True)

        app_name = f"omnisync-ingestion-{settings.environment}"
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        # created_at watermarks are compared as UTC days
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(sql.Literal(STATEMENT_TIMEOUT))
        )

    async def close(self) -> None:
        """Close the pool, waiting up to CLOSE_TIMEOUT_SECONDS for checked-out connections."""
        if self.pool is None or self._closed:
            return

        self._closed = True
        try:
            await asyncio.wait_for(self.pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection, opening the pool on first use.

        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if self.pool is None:
            await self.initialize()
        if self._closed:
            raise RuntimeError("Database pool is closed")

        async with self.pool.connection() as conn:
            yield conn


# Global pool instance
db_pool = DatabasePoolManager()


async def get_db_connection():
    """Get database connection from pool."""
    return db_pool.connection()
