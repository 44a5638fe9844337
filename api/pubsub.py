"""
In-process Pub/Sub for real-time processing updates.

The segmentation pipeline only knows the EventSink interface; it publishes
through a Publisher that fans every message out to the registered sinks.
The built-in EventBroker is one such sink: it hands each message to every
interested Subscriber queue, which the SSE endpoint drains.

Message types (the "type" field):
- progress  - overall percent while a job runs, repeated and non-decreasing
- completed - final segment list, once per successful job
- failed    - error detail, once per failed job
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from api.enums import EventType
from config import EVENT_QUEUE_SIZE

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Anything that accepts published event messages."""

    async def publish(self, message: Dict[str, Any]) -> None:
        ...


class Subscriber:
    """A single consumer's view of the broker, optionally filtered by video id."""

    def __init__(self, broker: "EventBroker", video_ids: Optional[Iterable[str]], max_size: int) -> None:
        self._broker = broker
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self.video_ids: Optional[Set[str]] = set(video_ids) if video_ids else None
        self._closed = False

    def wants(self, message: Dict[str, Any]) -> bool:
        return self.video_ids is None or message.get("video_id") in self.video_ids

    def deliver(self, message: Dict[str, Any]) -> None:
        """Queue a message without blocking; the oldest message is dropped when full."""
        if self._closed:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            logger.debug("Subscriber queue full, dropped oldest event")
        self._queue.put_nowait(message)

    async def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next message, or None if nothing arrived within timeout."""
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._broker.unsubscribe(self)

    @property
    def is_active(self) -> bool:
        return not self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class EventBroker:
    """Fan-out of published messages to in-process subscribers."""

    def __init__(self, max_queue_size: int = EVENT_QUEUE_SIZE) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: List[Subscriber] = []

    def subscribe(self, video_ids: Optional[Iterable[str]] = None) -> Subscriber:
        subscriber = Subscriber(self, video_ids, self._max_queue_size)
        self._subscribers.append(subscriber)
        logger.debug(f"Subscriber added (filter={subscriber.video_ids}), total={len(self._subscribers)}")
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
            logger.debug(f"Subscriber removed, total={len(self._subscribers)}")

    async def publish(self, message: Dict[str, Any]) -> None:
        for subscriber in list(self._subscribers):
            if subscriber.wants(message):
                subscriber.deliver(message)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class Publisher:
    """Format processing events and publish them to every registered sink."""

    def __init__(self, sinks: Optional[List[EventSink]] = None) -> None:
        self._sinks: List[EventSink] = list(sinks or [])

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    async def _publish(self, message: Dict[str, Any]) -> bool:
        """Deliver to all sinks. A failing sink never affects the others or the job."""
        ok = True
        for sink in list(self._sinks):
            try:
                await sink.publish(message)
            except Exception as e:
                ok = False
                logger.warning(f"Failed to publish {message.get('type')} event to {type(sink).__name__}: {e}")
        return ok

    async def publish_progress(
        self,
        video_id: str,
        current_segment: int,
        total_segments: int,
        percent: int,
        segment_progress: Optional[int] = None,
    ) -> bool:
        """
        Publish overall job progress.

        Args:
            video_id: Video being segmented
            current_segment: 1-based index of the segment in flight (or completed count)
            total_segments: Number of planned segments
            percent: Overall job progress 0-100
            segment_progress: Progress of the current segment alone, if known
        """
        message = {
            "type": EventType.PROGRESS.value,
            "video_id": video_id,
            "current_segment": current_segment,
            "total_segments": total_segments,
            "percent": percent,
            "timestamp": _timestamp(),
        }
        if segment_progress is not None:
            message["segment_progress"] = segment_progress
        return await self._publish(message)

    async def publish_completed(self, video_id: str, segments: List[Dict[str, Any]]) -> bool:
        message = {
            "type": EventType.COMPLETED.value,
            "video_id": video_id,
            "segments": segments,
            "timestamp": _timestamp(),
        }
        return await self._publish(message)

    async def publish_failed(self, video_id: str, error: str) -> bool:
        message = {
            "type": EventType.FAILED.value,
            "video_id": video_id,
            "error": error,
            "timestamp": _timestamp(),
        }
        return await self._publish(message)


_default_broker = EventBroker()
_default_publisher = Publisher([_default_broker])


def get_broker() -> EventBroker:
    return _default_broker


def get_publisher() -> Publisher:
    return _default_publisher
