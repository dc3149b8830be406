"""
In-process event bus for live observers.

Publishers (the orchestrator, the canary controller, the command executor and
the log buffer) push AgentEvents; each subscriber (one per WebSocket viewer)
owns a bounded queue. Publishing never blocks and never fails: a subscriber
whose queue is full simply misses the event.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional

from pull_agent.models.notification import AgentEvent

logger = logging.getLogger(__name__)


class Subscription:
    """A single observer's view of the bus."""

    def __init__(self, bus: "EventBus", maxsize: int):
        self._bus = bus
        self.queue: "asyncio.Queue[AgentEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def get(self) -> AgentEvent:
        return await self.queue.get()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class EventBus:
    """
    Bounded, non-blocking pub-sub for AgentEvents.

    ``publish`` may be called from the event loop or from worker threads
    (log records emitted inside ``asyncio.to_thread``); cross-thread
    publishes are marshalled onto the loop the bus was bound to.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Remember the loop that owns subscriber queues."""
        self._loop = loop or asyncio.get_running_loop()

    def subscribe(self) -> Subscription:
        """Register a new subscriber; must be called from the event loop."""
        if self._loop is None:
            self.bind_loop()
        subscription = Subscription(self, self.queue_size)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Publish an event to every subscriber without blocking."""
        event = AgentEvent(type=event_type, data=data or {})  # type: ignore[arg-type]
        self.publish_event(event)

    def publish_event(self, event: AgentEvent) -> None:
        with self._lock:
            if not self._subscribers:
                return
            snapshot = list(self._subscribers)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None or self._loop is None:
            self._deliver(snapshot, event)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._deliver, snapshot, event)

    @staticmethod
    def _deliver(subscribers: List[Subscription], event: AgentEvent) -> None:
        for subscription in subscribers:
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                subscription.dropped += 1
