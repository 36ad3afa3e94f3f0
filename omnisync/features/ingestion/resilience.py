"""
Bulk write with per-item fallback.

One failed multi-row statement must not cost every row in it: when the
bulk writer raises, each item is written on its own so a single bad row
is the only one counted as failed.
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class FallbackOutcome:
    written: int = 0
    declined: int = 0  # accepted by the writer but intentionally not stored
    failed: list[tuple[Any, Exception]] = field(default_factory=list)
    fell_back: bool = False

    @property
    def accepted(self) -> int:
        return self.written + self.declined


async def bulk_with_fallback(
    items: Sequence[Any],
    bulk_writer: Callable[[list[Any]], Awaitable[int]],
    single_writer: Callable[[Any], Awaitable[bool]],
) -> FallbackOutcome:
    """
    Write items in one call, degrading to one call per item on failure.

    Args:
        items: Items to write
        bulk_writer: Writes all items, returns how many were stored
        single_writer: Writes one item, returns False if it was declined

    Returns:
        FallbackOutcome with accepted + failed == len(items)
    """
    outcome = FallbackOutcome()
    if not items:
        return outcome

    batch = list(items)
    try:
        written = await bulk_writer(batch)
        outcome.written = written
        outcome.declined = len(batch) - written
        return outcome
    except Exception as e:
        logger.warning(
            "Bulk write failed, falling back to per-item writes",
            item_count=len(batch),
            error=str(e),
            error_type=type(e).__name__,
        )

    outcome.fell_back = True
    for item in batch:
        try:
            if await single_writer(item):
                outcome.written += 1
            else:
                outcome.declined += 1
        except Exception as e:
            outcome.failed.append((item, e))

    if outcome.failed:
        logger.warning(
            "Per-item fallback finished with failures",
            item_count=len(batch),
            failed=len(outcome.failed),
            first_error=str(outcome.failed[0][1]),
        )

    return outcome
