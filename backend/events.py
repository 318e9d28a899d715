"""
Per-job event bus.

Every job gets a broadcast channel that fans log/progress/done/error events
out to any number of live subscribers (SSE connections, tests). Events are
never stored: a subscriber only sees what is published after it subscribed.

Publishing never blocks. Each subscriber owns a bounded queue; one that
falls too far behind is dropped instead of stalling the others.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Set, Union

import config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LogEvent:
    message: str

    kind = "log"

    @property
    def data(self) -> str:
        return self.message


@dataclass(frozen=True)
class ProgressEvent:
    step: str  # "segment" | "concat"
    index: Optional[int] = None
    total: Optional[int] = None

    kind = "progress"

    @classmethod
    def segment(cls, index: int, total: int) -> "ProgressEvent":
        return cls(step="segment", index=index, total=total)

    @classmethod
    def concat(cls) -> "ProgressEvent":
        return cls(step="concat")

    @property
    def data(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"step": self.step}
        if self.index is not None:
            payload["index"] = self.index
        if self.total is not None:
            payload["total"] = self.total
        return payload


@dataclass(frozen=True)
class DoneEvent:
    download_url: str

    kind = "done"

    @property
    def data(self) -> Dict[str, Any]:
        return {"downloadUrl": self.download_url}


@dataclass(frozen=True)
class ErrorEvent:
    message: str

    kind = "error"

    @property
    def data(self) -> str:
        return self.message


Event = Union[LogEvent, ProgressEvent, DoneEvent, ErrorEvent]

_CLOSED = object()


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

class Subscription:
    """
    One listener on one job. Iterate it with ``async for``; iteration ends
    when the job's channel is torn down, the subscriber is dropped, or
    close() is called. Not restartable.
    """

    def __init__(self, bus: "EventBus", job_id: str, maxsize: int):
        self.job_id = job_id
        self._bus = bus
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: Event) -> None:
        # Raises asyncio.QueueFull for a subscriber that is not keeping up
        self._queue.put_nowait(event)

    def _end(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # Backlog of a dropped subscriber is discarded to make room
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    def close(self) -> None:
        """Unsubscribe. Safe to call more than once."""
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any further readers
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

class EventBus:

    def __init__(self, queue_size: Optional[int] = None):
        self._queue_size = queue_size if queue_size is not None else config.EVENT_QUEUE_SIZE
        self._channels: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str) -> Subscription:
        """Attach a new listener, creating the job's channel on first use."""
        subscription = Subscription(self, job_id, self._queue_size)
        with self._lock:
            self._channels.setdefault(job_id, set()).add(subscription)
        logger.debug(f"[Bus] New subscriber for job {job_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._channels.get(subscription.job_id)
            if subscribers is not None:
                subscribers.discard(subscription)
        subscription._end()

    def publish(self, job_id: str, event: Event) -> None:
        """Fan *event* out to every current subscriber. No-op if nobody listens."""
        with self._lock:
            subscribers = list(self._channels.get(job_id, ()))

        for subscription in subscribers:
            if subscription.closed:
                continue
            try:
                subscription._deliver(event)
            except asyncio.QueueFull:
                logger.warning(f"[Bus] Dropping slow subscriber for job {job_id}")
                self.unsubscribe(subscription)

    def teardown(self, job_id: str) -> None:
        """End every subscription for *job_id* and forget the channel. Idempotent."""
        with self._lock:
            subscribers = self._channels.pop(job_id, set())
        for subscription in subscribers:
            subscription._end()
        if subscribers:
            logger.info(f"[Bus] Closed {len(subscribers)} subscriber(s) for job {job_id}")

    def has_channel(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._channels

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._channels.get(job_id, ()))
