"""
Best-effort handoff of a finished batch to the normalization queue.
"""

from omnisync.features.ingestion.errors import HandoffEnqueueError
from omnisync.features.ingestion.repository.job_repository import JobRepository
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class JobHandoff:
    def __init__(self, jobs=JobRepository):
        self._jobs = jobs

    async def enqueue_if_needed(
        self, user_id: str, batch_id: str, inserted: int, kind: str, provider: str
    ) -> str | None:
        """
        Enqueue one normalization job for the batch when it wrote anything.

        Never raises: the raw rows are already committed and a later run
        or sweeper can still pick the batch up.

        Returns:
            The job id, or None when nothing was enqueued
        """
        if inserted <= 0:
            return None

        try:
            job_id = await self._enqueue(user_id, batch_id, kind, provider)
        except HandoffEnqueueError as e:
            logger.warning(
                "Failed to enqueue normalization job",
                user_id=user_id,
                batch_id=batch_id,
                kind=kind,
                error=e.message,
            )
            return None

        logger.info(
            "Normalization job enqueued",
            user_id=user_id,
            batch_id=batch_id,
            kind=kind,
            job_id=job_id,
            inserted=inserted,
        )
        return job_id

    async def _enqueue(self, user_id: str, batch_id: str, kind: str, provider: str) -> str:
        try:
            return await self._jobs.enqueue(
                user_id,
                kind,
                {"batchId": batch_id, "provider": provider},
                batch_id=batch_id,
            )
        except Exception as e:
            raise HandoffEnqueueError(
                f"{type(e).__name__}: {e}", user_id=user_id
            ) from e
