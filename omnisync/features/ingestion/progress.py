"""
Progress events for live sync consumers (SSE bridge, CLI progress bar).

Sequence per run: start -> batch_complete* -> exactly one of complete or
error. Every subscriber gets the whole sequence, including events emitted
before it subscribed.
"""

import asyncio
from collections.abc import AsyncIterator

from omnisync.features.ingestion.domain import SyncProgressEvent, SyncStats
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ProgressReporter:
    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        self.total = 0
        self._events: list[SyncProgressEvent] = []
        self._queues: list[asyncio.Queue] = []
        self._finished = False

    @property
    def events(self) -> list[SyncProgressEvent]:
        return list(self._events)

    @property
    def started(self) -> bool:
        return bool(self._events)

    @property
    def finished(self) -> bool:
        return self._finished

    def subscribe(self) -> AsyncIterator[SyncProgressEvent]:
        """Register a consumer. Iteration ends after the terminal event."""
        queue: asyncio.Queue = asyncio.Queue()
        for event in self._events:
            queue.put_nowait(event)
        self._queues.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue) -> AsyncIterator[SyncProgressEvent]:
        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def emit(self, event: SyncProgressEvent) -> None:
        if self._finished:
            logger.debug("Progress event after terminal event ignored", event_type=event.type)
            return

        self._events.append(event)
        for queue in self._queues:
            queue.put_nowait(event)

        if event.is_terminal:
            self._finished = True

    def start(self, total: int) -> None:
        self.total = total
        self.emit(SyncProgressEvent(type="start", batch_id=self.batch_id, total=total))

    def batch_complete(self, processed: int) -> None:
        self.emit(
            SyncProgressEvent(
                type="batch_complete",
                batch_id=self.batch_id,
                processed=processed,
                total=self.total,
            )
        )

    def complete(self, stats: SyncStats, message: str) -> None:
        self.emit(
            SyncProgressEvent(
                type="complete",
                batch_id=self.batch_id,
                processed=stats.processed,
                total=self.total,
                message=message,
                stats=stats,
            )
        )

    def error(self, message: str) -> None:
        """Terminal failure. A run that never started reports start(total=0) first."""
        if not self.started:
            self.start(0)
        self.emit(
            SyncProgressEvent(
                type="error",
                batch_id=self.batch_id,
                total=self.total,
                message=message,
                error=message,
            )
        )
