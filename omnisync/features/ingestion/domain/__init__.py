"""
Domain subpackage for the ingestion feature.
"""

from .models import (
    TERMINAL_JOB_STATUSES,
    FetchStats,
    JobRecord,
    JobStatus,
    ListingResult,
    RawEventRecord,
    SyncContext,
    SyncOptions,
    SyncProgressEvent,
    SyncResult,
    SyncStats,
)

__all__ = [
    "TERMINAL_JOB_STATUSES",
    "FetchStats",
    "JobRecord",
    "JobStatus",
    "ListingResult",
    "RawEventRecord",
    "SyncContext",
    "SyncOptions",
    "SyncProgressEvent",
    "SyncResult",
    "SyncStats",
]
