"""Live output channel of a turn."""

import asyncio
from typing import AsyncIterator, Optional

import structlog

from . import events
from .events import StreamEvent

logger = structlog.get_logger()

_CLOSED = object()


class OutputChannel:
    """Single-consumer event queue written by the orchestrator and its tools.

    The channel emits at most one ``error`` event and always ends with a
    close, after which writes are dropped.
    """

    def __init__(self, stream_id: Optional[str] = None) -> None:
        self.stream_id = stream_id
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False
        self._errored = False
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        """True once the consumer went away."""
        return self._cancelled

    def write(self, event: StreamEvent) -> None:
        if self._closed:
            logger.debug("channel_write_after_close", stream_id=self.stream_id, event_type=event.get("type"))
            return
        self._queue.put_nowait(event)

    def write_data(self, payload: dict) -> None:
        self.write(events.data(payload))

    def error(self, message: str) -> None:
        """Emit the terminal error event; later calls are ignored."""
        if self._errored:
            return
        self._errored = True
        self.write(events.error(message))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def cancel(self) -> None:
        """Mark the consumer as gone; the producer stops at its next checkpoint."""
        if not self._cancelled:
            self._cancelled = True
            logger.info("channel_cancelled", stream_id=self.stream_id)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]
