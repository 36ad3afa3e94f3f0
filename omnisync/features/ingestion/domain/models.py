"""
Domain models for the ingestion feature.

Rows written to raw_events and jobs are plain dataclasses. Values that
cross the service boundary (sync options, progress events, results) are
pydantic models so callers get validation and serialization for free.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from omnisync.models.domain.credential_domain import IntegrationCredential


@dataclass(slots=True)
class RawEventRecord:
    """One provider item ready to be upserted into raw_events."""

    user_id: str
    provider: str  # "gmail" or "calendar"
    source_id: str | None
    payload: dict[str, Any]
    occurred_at: datetime | None
    batch_id: str
    source_meta: dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> tuple[str, str, str | None]:
        return (self.user_id, self.provider, self.source_id)


@dataclass(slots=True)
class JobRecord:
    """Represents a jobs row handed to the downstream normalizer."""

    id: str
    user_id: str
    kind: str
    status: str
    batch_id: str | None
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class SyncContext:
    """Per-run state shared by the lister and the fetcher."""

    user_id: str
    batch_id: str
    credential: IntegrationCredential

    def adopt(self, rotated: IntegrationCredential | None) -> bool:
        """Switch to a rotated credential. Last rotation wins."""
        if rotated is None:
            return False
        self.credential = rotated
        return True


@dataclass(slots=True)
class ListingResult:
    ids: list[str] = field(default_factory=list)
    pages: int = 0
    failed_partitions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FetchStats:
    """Running counters for one fetch run. processed == inserted + errors."""

    processed: int = 0
    inserted: int = 0
    errors: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "inserted": self.inserted,
            "errors": self.errors,
            "skipped": self.skipped,
        }


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.DONE.value, JobStatus.FAILED.value, "completed"})


class SyncOptions(BaseModel):
    """Caller-supplied knobs for a single sync run."""

    incremental: bool = True
    overlap_hours: int = Field(default=0, ge=0, le=72)
    days_back: int = Field(default=365, ge=1, le=730)
    batch_id: str = Field(default_factory=lambda: str(uuid4()))
    # Calendar only; None syncs every calendar on the user's calendar list
    calendar_ids: list[str] | None = None


class SyncStats(BaseModel):
    total_found: int = 0
    processed: int = 0
    inserted: int = 0
    errors: int = 0
    skipped: int = 0
    pages: int = 0
    failed_calendars: list[str] = Field(default_factory=list)
    batch_id: str


class SyncProgressEvent(BaseModel):
    """One event in a run's progress stream."""

    type: Literal["start", "batch_complete", "complete", "error"]
    batch_id: str
    processed: int = 0
    total: int = 0
    message: str | None = None
    stats: SyncStats | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in ("complete", "error")


class SyncResult(BaseModel):
    message: str
    stats: SyncStats
    state: str
    job_id: str | None = None
    job_status: str | None = None
