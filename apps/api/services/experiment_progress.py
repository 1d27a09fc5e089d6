"""
Experiment progress transport.

One ProgressChannel per run or batch: a single producer (the background task)
publishes events, any number of SSE subscribers read them. Each subscriber
gets its own unbounded asyncio.Queue, pre-filled with everything published so
far, so a late subscriber still sees the run from the beginning. Closing the
channel pushes an end-of-stream marker to every subscriber.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)


# Event types
PROGRESS = "progress"
POSITION = "position"
CLAIM = "claim"
COMPRESSION = "compression"
COMPLETE = "complete"
ERROR = "error"
BATCH_STARTED = "batch_started"
BATCH_COMPLETE = "batch_complete"
BATCH_ERROR = "batch_error"
PROVIDER_STARTED = "provider_started"
PROVIDER_COMPLETE = "provider_complete"
PROVIDER_ERROR = "provider_error"


@dataclass
class ProgressEvent:
    type: str
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: Optional[int] = None
    batch_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }
        for key in ("run_id", "batch_id", "provider", "model"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


class ProgressChannel:
    """Unbounded single-producer / multi-consumer event channel."""

    def __init__(self, key: str):
        self.key = key
        self._history: List[ProgressEvent] = []
        self._subscribers: List["asyncio.Queue[Optional[ProgressEvent]]"] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> List[ProgressEvent]:
        return list(self._history)

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            logger.debug(f"Dropping {event.type} event on closed channel {self.key}")
            return
        self._history.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)

    def subscribe(self) -> "asyncio.Queue[Optional[ProgressEvent]]":
        queue: "asyncio.Queue[Optional[ProgressEvent]]" = asyncio.Queue()
        for event in self._history:
            queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def stream(self, heartbeat_s: Optional[float] = None) -> AsyncIterator[Optional[ProgressEvent]]:
        """
        Yield events until the channel closes.

        With heartbeat_s set, yields None whenever that many seconds pass
        without an event. Consume it inside contextlib.aclosing() so leaving the
        loop early unsubscribes straight away.
        """
        queue = self.subscribe()
        try:
            while True:
                try:
                    if heartbeat_s:
                        event = await asyncio.wait_for(queue.get(), timeout=heartbeat_s)
                    else:
                        event = await queue.get()
                except asyncio.TimeoutError:
                    yield None
                    continue
                if event is None:
                    return
                yield event
        finally:
            self.unsubscribe(queue)


K = TypeVar("K")


class ChannelRegistry(Generic[K]):
    """In-flight channels by run id or batch id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._channels: Dict[K, ProgressChannel] = {}

    def open(self, key: K) -> ProgressChannel:
        with self._lock:
            channel = ProgressChannel(str(key))
            self._channels[key] = channel
            return channel

    def get(self, key: K) -> Optional[ProgressChannel]:
        with self._lock:
            return self._channels.get(key)

    def close_and_remove(self, key: K) -> None:
        with self._lock:
            channel = self._channels.pop(key, None)
        if channel is not None:
            channel.close()
