"""
Sync orchestration: one run from credential check to normalization handoff.

States:
    idle -> planning -> listing -> fetching -> handoff_enqueue -> completed
    planning | listing -> failed
    handoff_enqueue -> waiting -> completed   (blocking variant)

Variants:
    sync()              direct run, returns SyncResult
    start_background()  fire-and-forget, returns the batch id
    sync_blocking()     direct run, then waits for the normalization job
    stream()            async iterator of progress events
"""

import asyncio
import time
from collections.abc import AsyncIterator
from enum import Enum

import structlog

from omnisync.config import settings
from omnisync.features.ingestion.batch_fetcher import BatchFetcher
from omnisync.features.ingestion.domain import (
    TERMINAL_JOB_STATUSES,
    FetchStats,
    JobStatus,
    SyncContext,
    SyncOptions,
    SyncProgressEvent,
    SyncResult,
    SyncStats,
)
from omnisync.features.ingestion.errors import (
    AuthError,
    InvalidStateTransition,
    ListingError,
    SyncError,
    WaitTimeoutError,
)
from omnisync.features.ingestion.job_handoff import JobHandoff
from omnisync.features.ingestion.progress import ProgressReporter
from omnisync.features.ingestion.remote_lister import RemoteLister
from omnisync.features.ingestion.repository.job_repository import JobRepository
from omnisync.features.ingestion.repository.raw_event_repository import RawEventRepository
from omnisync.features.ingestion.sources import build_source
from omnisync.features.ingestion.window_planner import SyncWindowPlanner
from omnisync.infrastructure.observability.logging import get_logger
from omnisync.services.google.api_client import GoogleApiClient
from omnisync.services.token_service import TokenLifecycleManager

logger = get_logger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    LISTING = "listing"
    FETCHING = "fetching"
    HANDOFF_ENQUEUE = "handoff_enqueue"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.PLANNING}),
    SyncState.PLANNING: frozenset({SyncState.LISTING, SyncState.FAILED}),
    SyncState.LISTING: frozenset({SyncState.FETCHING, SyncState.FAILED}),
    SyncState.FETCHING: frozenset({SyncState.HANDOFF_ENQUEUE}),
    SyncState.HANDOFF_ENQUEUE: frozenset({SyncState.WAITING, SyncState.COMPLETED}),
    SyncState.WAITING: frozenset({SyncState.COMPLETED}),
    SyncState.COMPLETED: frozenset(),
    SyncState.FAILED: frozenset(),
}


class SyncStateMachine:
    def __init__(self):
        self.state = SyncState.IDLE
        self.history: list[SyncState] = [SyncState.IDLE]

    def transition_to(self, target: SyncState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state.value, target.value)
        self.state = target
        self.history.append(target)


class SyncOrchestrator:
    """
    Composes token lifecycle, window planning, listing, fetching and
    handoff for one provider. Every collaborator is injected.
    """

    def __init__(
        self,
        source,
        token_manager,
        planner: SyncWindowPlanner,
        lister: RemoteLister,
        fetcher: BatchFetcher,
        handoff: JobHandoff,
        jobs=JobRepository,
        clock=time.monotonic,
        sleep=asyncio.sleep,
        log=None,
        wait_timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ):
        self._source = source
        self._token_manager = token_manager
        self._planner = planner
        self._lister = lister
        self._fetcher = fetcher
        self._handoff = handoff
        self._jobs = jobs
        self._clock = clock
        self._sleep = sleep
        self._log = log or logger
        self.wait_timeout_seconds = wait_timeout_seconds or settings.SYNC_WAIT_TIMEOUT_SECONDS
        self.poll_interval_seconds = poll_interval_seconds or settings.SYNC_WAIT_POLL_SECONDS
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def provider(self) -> str:
        return self._source.provider

    # =================================================================
    # VARIANTS
    # =================================================================

    async def sync(
        self,
        user_id: str,
        options: SyncOptions | None = None,
        reporter: ProgressReporter | None = None,
    ) -> SyncResult:
        """
        Run one sync and return its result.

        Raises:
            AuthError: no usable credential (planning)
            ListingError: candidate listing failed
        """
        options = options or SyncOptions()
        reporter = reporter or ProgressReporter(options.batch_id)
        return await self._run(user_id, options, reporter, wait=False)

    async def sync_blocking(
        self,
        user_id: str,
        options: SyncOptions | None = None,
        timeout_seconds: float | None = None,
        reporter: ProgressReporter | None = None,
    ) -> SyncResult:
        """
        Run one sync, then wait for the normalization job to finish.

        Raises:
            WaitTimeoutError: the job is still running after the timeout.
                The job itself is left alone.
        """
        options = options or SyncOptions()
        reporter = reporter or ProgressReporter(options.batch_id)
        return await self._run(
            user_id, options, reporter, wait=True, timeout_seconds=timeout_seconds
        )

    def start_background(self, user_id: str, options: SyncOptions | None = None) -> str:
        """Start a sync without waiting for it. Returns the batch id."""
        options = options or SyncOptions()
        reporter = ProgressReporter(options.batch_id)
        self._track(asyncio.create_task(self._run_reported(user_id, options, reporter)))

        self._log.info(
            "Background sync started",
            user_id=user_id,
            batch_id=options.batch_id,
            provider=self.provider,
        )
        return options.batch_id

    async def stream(
        self, user_id: str, options: SyncOptions | None = None
    ) -> AsyncIterator[SyncProgressEvent]:
        """Run a sync and yield its progress events until the terminal one."""
        options = options or SyncOptions()
        reporter = ProgressReporter(options.batch_id)
        events = reporter.subscribe()
        task = self._track(asyncio.create_task(self._run_reported(user_id, options, reporter)))

        async for event in events:
            yield event

        await task

    async def wait_for_background(self) -> None:
        """Wait for every background run started by this orchestrator."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks))

    async def close(self) -> None:
        """Finish background runs and pending credential writes, then release the source."""
        await self.wait_for_background()
        await self._token_manager.drain()
        await self._source.close()

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _run_reported(
        self, user_id: str, options: SyncOptions, reporter: ProgressReporter
    ) -> None:
        """Run for callers that only see progress events; errors end as an error event."""
        try:
            await self._run(user_id, options, reporter, wait=False)
        except (SyncError, AuthError) as e:
            self._log.warning(
                "Sync run ended with error",
                user_id=user_id,
                batch_id=options.batch_id,
                provider=self.provider,
                error=e.message,
                error_type=type(e).__name__,
            )
        except Exception:
            self._log.exception(
                "Background sync crashed",
                user_id=user_id,
                batch_id=options.batch_id,
                provider=self.provider,
            )

    # =================================================================
    # RUN
    # =================================================================

    async def _run(
        self,
        user_id: str,
        options: SyncOptions,
        reporter: ProgressReporter,
        wait: bool,
        timeout_seconds: float | None = None,
    ) -> SyncResult:
        machine = SyncStateMachine()
        batch_id = options.batch_id

        with structlog.contextvars.bound_contextvars(
            user_id=user_id, batch_id=batch_id, provider=self.provider
        ):
            try:
                return await self._execute(
                    machine, user_id, options, reporter, wait, timeout_seconds
                )
            except Exception as e:
                if not reporter.finished:
                    reporter.error(str(e))
                if machine.state not in (SyncState.FAILED, SyncState.WAITING):
                    self._log.error(
                        "Sync run crashed",
                        user_id=user_id,
                        batch_id=batch_id,
                        state=machine.state.value,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                raise

    async def _execute(
        self,
        machine: SyncStateMachine,
        user_id: str,
        options: SyncOptions,
        reporter: ProgressReporter,
        wait: bool,
        timeout_seconds: float | None,
    ) -> SyncResult:
        batch_id = options.batch_id
        started_at = self._clock()

        self._log.info(
            "Sync started",
            user_id=user_id,
            batch_id=batch_id,
            provider=self.provider,
            incremental=options.incremental,
            overlap_hours=options.overlap_hours,
            days_back=options.days_back,
        )

        machine.transition_to(SyncState.PLANNING)
        try:
            credential = await self._token_manager.get_valid_credential(
                user_id, self._source.service
            )
            query = await self._planner.plan_query(
                user_id,
                self.provider,
                options.incremental,
                overlap_hours=options.overlap_hours,
                fallback_days_back=options.days_back,
            )
        except Exception as e:
            self._fail(machine, user_id, batch_id, e)
            raise

        context = SyncContext(user_id=user_id, batch_id=batch_id, credential=credential)

        machine.transition_to(SyncState.LISTING)
        try:
            listing = await self._lister.list_ids(
                context, query, preferred_partitions=options.calendar_ids
            )
        except (AuthError, ListingError) as e:
            self._fail(machine, user_id, batch_id, e)
            raise

        reporter.start(len(listing.ids))

        machine.transition_to(SyncState.FETCHING)
        if listing.ids:
            stats = await self._fetcher.fetch_and_store(
                context,
                listing.ids,
                query,
                on_wave=lambda wave_stats: reporter.batch_complete(wave_stats.processed),
            )
        else:
            stats = FetchStats()

        machine.transition_to(SyncState.HANDOFF_ENQUEUE)
        job_id = await self._handoff.enqueue_if_needed(
            user_id,
            batch_id,
            stats.inserted - stats.skipped,
            kind=self._source.job_kind,
            provider=self.provider,
        )
        job_status = JobStatus.QUEUED.value if job_id else None

        await self._token_manager.drain()

        if wait and job_id:
            machine.transition_to(SyncState.WAITING)
            job_status = await self._wait_for_job(
                user_id, job_id, timeout_seconds or self.wait_timeout_seconds
            )

        sync_stats = SyncStats(
            total_found=len(listing.ids),
            processed=stats.processed,
            inserted=stats.inserted,
            errors=stats.errors,
            skipped=stats.skipped,
            pages=listing.pages,
            failed_calendars=listing.failed_partitions,
            batch_id=batch_id,
        )
        message = self._completion_message(sync_stats)

        machine.transition_to(SyncState.COMPLETED)
        reporter.complete(sync_stats, message)

        self._log.info(
            "Sync completed",
            user_id=user_id,
            batch_id=batch_id,
            provider=self.provider,
            job_id=job_id,
            duration_seconds=round(self._clock() - started_at, 3),
            **sync_stats.model_dump(exclude={"batch_id"}),
        )

        return SyncResult(
            message=message,
            stats=sync_stats,
            state=machine.state.value,
            job_id=job_id,
            job_status=job_status,
        )

    def _fail(
        self, machine: SyncStateMachine, user_id: str, batch_id: str, error: Exception
    ) -> None:
        machine.transition_to(SyncState.FAILED)
        self._log.error(
            "Sync failed",
            user_id=user_id,
            batch_id=batch_id,
            provider=self.provider,
            error=str(error),
            error_type=type(error).__name__,
            permanent=getattr(error, "permanent", None),
        )

    def _completion_message(self, stats: SyncStats) -> str:
        label = self._source.item_label
        if stats.total_found == 0:
            return f"Sync complete: no new {label} found"
        return f"Successfully synced {stats.inserted} {label}"

    async def _wait_for_job(self, user_id: str, job_id: str, timeout_seconds: float) -> str | None:
        """Poll the job row until it reaches a terminal status."""
        deadline = self._clock() + timeout_seconds

        while True:
            status = await self._jobs.get_status(job_id)

            if status is None:
                self._log.warning("Normalization job disappeared while waiting", job_id=job_id)
                return None

            if status in TERMINAL_JOB_STATUSES:
                return status

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise WaitTimeoutError(
                    f"Normalization job {job_id} still {status} after {timeout_seconds:.0f}s",
                    job_id=job_id,
                    timeout_seconds=timeout_seconds,
                    user_id=user_id,
                )

            await self._sleep(min(self.poll_interval_seconds, remaining))


# =================================================================
# WIRING
# =================================================================


def build_sync_orchestrator(
    provider: str,
    token_manager: TokenLifecycleManager | None = None,
    api_client: GoogleApiClient | None = None,
) -> SyncOrchestrator:
    """Wire an orchestrator for "gmail" or "calendar" with production collaborators."""
    token_manager = token_manager or TokenLifecycleManager()
    api_client = api_client or GoogleApiClient(token_manager)
    source = build_source(provider, api_client)

    return SyncOrchestrator(
        source=source,
        token_manager=token_manager,
        planner=SyncWindowPlanner(RawEventRepository),
        lister=RemoteLister(source, token_manager),
        fetcher=BatchFetcher(source, token_manager, store=RawEventRepository),
        handoff=JobHandoff(JobRepository),
    )


_orchestrators: dict[str, SyncOrchestrator] = {}


def get_sync_orchestrator(provider: str) -> SyncOrchestrator:
    orchestrator = _orchestrators.get(provider)
    if orchestrator is None:
        orchestrator = build_sync_orchestrator(provider)
        _orchestrators[provider] = orchestrator
    return orchestrator


async def close_sync_orchestrators() -> None:
    """Close every cached orchestrator. Call before closing the database pool."""
    while _orchestrators:
        _, orchestrator = _orchestrators.popitem()
        await orchestrator.close()


# Convenience functions for easy imports
async def sync_gmail(user_id: str, options: SyncOptions | None = None) -> SyncResult:
    return await get_sync_orchestrator("gmail").sync(user_id, options)


async def sync_calendar(user_id: str, options: SyncOptions | None = None) -> SyncResult:
    return await get_sync_orchestrator("calendar").sync(user_id, options)


async def get_ingestion_stats(user_id: str, provider: str) -> dict:
    return await RawEventRepository.get_ingestion_stats(user_id, provider)
