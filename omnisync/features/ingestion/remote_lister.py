"""
Paginated listing of candidate item IDs.

Page requests are the only provider calls in a run that retry; a page
that still fails ends the run, since a partial candidate set would make
the window look complete when it is not. Sources with several partitions
(one per calendar) are the exception: a failed calendar is logged and
skipped, and the run only fails when every calendar does.
"""

from omnisync.config import settings
from omnisync.features.ingestion.domain import ListingResult, SyncContext
from omnisync.features.ingestion.errors import AuthError, ListingError
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RemoteLister:
    def __init__(self, source, token_manager, max_retries: int | None = None):
        self._source = source
        self._token_manager = token_manager
        self._max_retries = (
            max_retries if max_retries is not None else settings.GOOGLE_LIST_MAX_RETRIES
        )

    async def list_ids(
        self,
        context: SyncContext,
        query: str,
        preferred_partitions: list[str] | None = None,
    ) -> ListingResult:
        """
        Collect every candidate ID for the query, following nextPageToken.

        Args:
            context: Run state holding the current credential
            query: Planner query
            preferred_partitions: Calendars to list instead of discovering them

        Raises:
            AuthError: the credential could not be refreshed mid-listing
            ListingError: a page failed after retries (every partition, when
                there is more than one)
        """
        result = ListingResult()
        partitions = await self._partitions(context, preferred_partitions)
        seen: set[str] = set()
        last_error: Exception | None = None

        for partition in partitions:
            try:
                await self._list_partition(context, query, partition, result, seen)
            except AuthError:
                raise
            except Exception as e:
                last_error = e
                logger.error(
                    "Listing failed",
                    user_id=context.user_id,
                    provider=self._source.provider,
                    partition=partition,
                    pages_fetched=result.pages,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if len(partitions) == 1:
                    raise ListingError(
                        f"Failed to list {self._source.item_label}: {e}",
                        user_id=context.user_id,
                        pages_fetched=result.pages,
                    ) from e
                result.failed_partitions.append(partition)

        if partitions and len(result.failed_partitions) == len(partitions):
            raise ListingError(
                f"Failed to list {self._source.item_label} from all {len(partitions)} calendars",
                user_id=context.user_id,
                pages_fetched=result.pages,
            ) from last_error

        logger.info(
            "Listing complete",
            user_id=context.user_id,
            provider=self._source.provider,
            total_found=len(result.ids),
            pages=result.pages,
            partitions=len(partitions),
            failed_partitions=result.failed_partitions,
        )
        return result

    async def _partitions(
        self, context: SyncContext, preferred: list[str] | None
    ) -> list[str | None]:
        try:
            partitions, rotated = await self._source.list_partitions(
                context.credential, preferred, max_retries=self._max_retries
            )
        except AuthError:
            raise
        except Exception as e:
            logger.error(
                "Partition discovery failed",
                user_id=context.user_id,
                provider=self._source.provider,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ListingError(
                f"Failed to discover {self._source.item_label} sources: {e}",
                user_id=context.user_id,
            ) from e

        if context.adopt(rotated):
            self._token_manager.record_rotation(rotated)
        return partitions

    async def _list_partition(
        self,
        context: SyncContext,
        query: str,
        partition: str | None,
        result: ListingResult,
        seen: set[str],
    ) -> None:
        page_token: str | None = None

        while True:
            page_ids, page_token, rotated = await self._source.list_page(
                context.credential,
                query,
                page_token,
                partition=partition,
                max_retries=self._max_retries,
            )

            result.pages += 1
            if context.adopt(rotated):
                self._token_manager.record_rotation(rotated)

            for item_id in page_ids:
                if item_id not in seen:
                    seen.add(item_id)
                    result.ids.append(item_id)

            if not page_token:
                return
