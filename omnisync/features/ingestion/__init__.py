"""
Google ingestion feature package.

Pulls Gmail messages and Calendar events into raw_events in deduplicated
waves and hands each finished batch to the normalization queue. Domain
models, repositories and the pipeline stages live side by side here.
"""

# Re-export the primary building blocks for easy access.
from .domain import SyncOptions, SyncProgressEvent, SyncResult, SyncStats  # noqa: F401
from .errors import AuthError, ListingError, SyncError, WaitTimeoutError  # noqa: F401
from .orchestrator import (  # noqa: F401
    SyncOrchestrator,
    SyncState,
    build_sync_orchestrator,
    close_sync_orchestrators,
    get_ingestion_stats,
    sync_calendar,
    sync_gmail,
)
