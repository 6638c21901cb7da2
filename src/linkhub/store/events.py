"""
In-process fan-out of link change events to subscription resolvers.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from linkhub.core.logging import get_logger

logger = get_logger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class LinkEvent:
    """A change to one link record."""
    kind: str
    link: Dict[str, Any]
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_record(self) -> Dict[str, Any]:
        return {"kind": self.kind, "link": self.link, "at": self.at}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "LinkEvent":
        kwargs = {"kind": record["kind"], "link": record["link"]}
        if record.get("at"):
            kwargs["at"] = record["at"]
        return cls(**kwargs)


class EventStream:
    """
    One subscriber's view of the bus.

    Iterates events in publication order and stops once the bus closes or
    the stream itself is closed.
    """

    def __init__(self, bus: "LinkEventBus", max_queue_size: int):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._finished = False

    def _offer(self, event: LinkEvent) -> None:
        if self._finished:
            return
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.warning("Event stream overflow, dropping oldest event", kind=dropped.kind)
        self._queue.put_nowait(event)

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> LinkEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any later __anext__ call
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        self._bus._discard(self)
        self._finish()

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class LinkEventBus:
    """Publishes link events to every open stream."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._streams: Set[EventStream] = set()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._streams)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def subscribe(self) -> EventStream:
        stream = EventStream(self, self.max_queue_size)
        if self._closed:
            stream._finish()
        else:
            self._streams.add(stream)
        return stream

    def publish(self, event: LinkEvent) -> int:
        """Queue ``event`` on every open stream and return how many received it."""
        if self._closed:
            logger.debug("Dropping event published after close", kind=event.kind)
            return 0
        for stream in list(self._streams):
            stream._offer(event)
        return len(self._streams)

    def close(self, reason: Optional[str] = None) -> None:
        """Complete every open stream. Later subscribers complete immediately."""
        if self._closed:
            return
        self._closed = True
        streams, self._streams = self._streams, set()
        for stream in streams:
            stream._finish()
        logger.info("Link event bus closed", streams=len(streams), reason=reason)

    def _discard(self, stream: EventStream) -> None:
        self._streams.discard(stream)
