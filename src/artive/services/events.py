"""Single-subscriber event channel between a running task and its client."""

import asyncio
from typing import AsyncIterator, Optional

from artive.models.events import RewriteEvent
from artive.utils.logging import get_logger


logger = get_logger(__name__)


class EventChannel:
    """
    Ordered, unbounded queue of rewrite events for one subscriber.

    The producer never waits on the subscriber: ``emit`` only enqueues.
    ``detach()`` marks the subscriber as gone, after which events are
    dropped while the producing run carries on. ``close()`` ends
    iteration once the queued events are drained.

    Example:
        >>> channel = EventChannel(task_id)
        >>> async for event in channel:
        ...     print(event.type)
    """

    _CLOSED = object()

    def __init__(self, task_id: Optional[str] = None):
        self.task_id = task_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._detached = False
        self.emitted: list[RewriteEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    def emit(self, event: RewriteEvent) -> None:
        """Queue an event (no-op after close; dropped after detach)."""
        if self._closed:
            logger.warning("event_after_close", task_id=self.task_id, event_type=event.type)
            return

        self.emitted.append(event)
        logger.debug("event_emitted", task_id=self.task_id, event_type=event.type)

        if self._detached:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    def detach(self) -> None:
        """Stop delivering events; the subscriber went away."""
        if not self._detached:
            logger.info("event_subscriber_detached", task_id=self.task_id)
        self._detached = True

    async def __aiter__(self) -> AsyncIterator[RewriteEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
