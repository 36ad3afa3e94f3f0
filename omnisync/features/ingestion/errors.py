"""
Error taxonomy for sync runs.

Only AuthError and ListingError end a run. Per-item and bulk-write
failures are absorbed and counted, handoff failures are logged, and a
wait timeout is reported to the blocking caller only.
"""

from omnisync.services.token_service import AuthError


class SyncError(Exception):
    """Base exception for the ingestion pipeline."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.recoverable = recoverable


class ListingError(SyncError):
    """The provider list endpoint could not be paginated to the end."""

    def __init__(self, message: str, user_id: str | None = None, pages_fetched: int = 0):
        super().__init__(message, user_id=user_id)
        self.pages_fetched = pages_fetched


class PerItemFetchError(SyncError):
    """A single item could not be fetched or mapped."""

    def __init__(self, message: str, source_id: str, user_id: str | None = None):
        super().__init__(message, user_id=user_id)
        self.source_id = source_id


class BulkUpsertError(SyncError):
    """The multi-row upsert for a wave failed; rows are retried one by one."""


class HandoffEnqueueError(SyncError):
    """The normalization job could not be enqueued."""


class WaitTimeoutError(SyncError):
    """The downstream job did not reach a terminal status in time."""

    def __init__(
        self, message: str, job_id: str, timeout_seconds: float, user_id: str | None = None
    ):
        super().__init__(message, user_id=user_id)
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds


class InvalidStateTransition(SyncError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal sync state transition {current} -> {target}", recoverable=False)
        self.current = current
        self.target = target


__all__ = [
    "AuthError",
    "BulkUpsertError",
    "HandoffEnqueueError",
    "InvalidStateTransition",
    "ListingError",
    "PerItemFetchError",
    "SyncError",
    "WaitTimeoutError",
]
