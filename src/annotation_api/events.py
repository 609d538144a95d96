"""
Progress fan-out for annotation processing.

A ProgressBroadcaster is constructed once by the application and handed to
the AnnotationManager; it is never a module-level singleton. Subscribers live
on an event loop and get a bounded asyncio queue per topic (annotation id).
Events are published from worker threads and handed to the subscriber's loop
with call_soon_threadsafe, so publishing never blocks and waiting for events
never occupies a worker thread. A subscriber whose queue is full misses the
event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional

from .models import ProgressEvent

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


def format_sse(event: ProgressEvent) -> str:
    """Render an event as one Server-Sent Events message."""
    return f"event: progress\ndata: {event.model_dump_json()}\n\n"


@dataclass(eq=False)
class Subscription:
    """One listener on a topic, bound to the loop it subscribed from."""

    topic: str
    queue: "asyncio.Queue[ProgressEvent]"
    loop: asyncio.AbstractEventLoop

    async def next_event(self, timeout: float) -> Optional[ProgressEvent]:
        """Wait for the next event; None when nothing arrives within timeout."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class ProgressBroadcaster:
    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._lock = Lock()

    def subscribe(self, topic: str) -> Subscription:
        """Register a listener. Must be called from a running event loop."""
        subscription = Subscription(
            topic=topic,
            queue=asyncio.Queue(maxsize=self._max_queue_size),
            loop=asyncio.get_running_loop(),
        )
        with self._lock:
            self._subscribers.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic)
            if not subscribers:
                return
            try:
                subscribers.remove(subscription)
            except ValueError:
                return
            if not subscribers:
                del self._subscribers[subscription.topic]

    def publish(self, topic: str, event: ProgressEvent) -> int:
        """
        Hand an event to every subscriber of a topic.

        Safe to call from any thread. Delivery happens on each subscriber's
        event loop.

        Returns:
            Number of subscribers the event was dispatched to
        """
        with self._lock:
            subscribers = list(self._subscribers.get(topic, ()))

        dispatched = 0
        for subscription in subscribers:
            try:
                subscription.loop.call_soon_threadsafe(_deliver, subscription, event)
            except RuntimeError:
                # loop already closed
                logger.debug(f"Skipping progress event for {topic}: subscriber loop closed")
                continue
            dispatched += 1
        return dispatched

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))


def _deliver(subscription: Subscription, event: ProgressEvent) -> None:
    try:
        subscription.queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.warning(f"Dropping progress event for {subscription.topic}: subscriber queue full")
