"""Client-facing event stream for one bridge session."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 256


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: str

    def encode(self) -> str:
        """Format as a server-sent event frame."""
        # Multi-line data needs one data field per line
        data_lines = "\n".join(f"data: {line}" for line in self.data.split("\n"))
        return f"event: {self.event}\n{data_lines}\n\n"


_CLOSE = StreamEvent(event="__close__", data="")


class EventStream:
    """Manages a single event stream with proper lifecycle.

    Events are queued in order and drained by ``event_generator``. The
    queue is bounded, so a slow client suspends the producer instead of
    growing memory without limit.
    """

    def __init__(self, stream_id: str, max_pending: int = DEFAULT_MAX_PENDING):
        self.stream_id = stream_id
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=max_pending)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: str, data: str) -> bool:
        """Queue an event, waiting while the client is behind.

        Returns:
            False if the stream was already closed and the event was dropped
        """
        if self._closed:
            logger.debug(f"Dropping {event} event for closed stream {self.stream_id}")
            return False
        await self._queue.put(StreamEvent(event=event, data=data))
        return True

    def close(self) -> None:
        """Close the stream once everything already queued is delivered.

        Synchronous and idempotent so teardown never blocks on a full queue.
        """
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            # The generator stops by itself once it drains the queue
            pass
        logger.debug(f"Closed stream {self.stream_id}")

    async def event_generator(self) -> AsyncIterator[str]:
        """Generate event frames for this stream until it is closed.

        Yields:
            str: Encoded event frame
        """
        try:
            while True:
                if self._closed and self._queue.empty():
                    break

                event = await self._queue.get()
                if event is _CLOSE:
                    logger.debug(f"Stream {self.stream_id} closed via sentinel")
                    break

                yield event.encode()
        finally:
            self._closed = True
            logger.debug(f"Stream {self.stream_id} generator finished")
