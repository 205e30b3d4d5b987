"""
Crawl progress statistics.

A single asyncio task owns every counter. Other components only send
events through ``emit``; snapshots are published on a fixed interval.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, List, Optional


class CrawlEvent(Enum):
    """Progress events produced by the scheduler."""
    DISCOVERED = "discovered"
    CRAWLED = "crawled"
    FAILED = "failed"


@dataclass(frozen=True)
class StatsSnapshot:
    """Read-only view of the counters at one instant."""
    pages_crawled: int = 0
    pages_failed: int = 0
    links_found: int = 0
    queue_size: int = 0
    active_workers: int = 0
    dropped_events: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    def format(self) -> str:
        return (
            f"Stats - Crawled: {self.pages_crawled}, "
            f"Failed: {self.pages_failed}, "
            f"Links Found: {self.links_found}, "
            f"Queue Size: {self.queue_size}, "
            f"Active Workers: {self.active_workers}"
        )


SnapshotListener = Callable[[StatsSnapshot], None]


class StatsAggregator:
    """
    Counts progress events and reports them periodically.

    ``emit`` never blocks: when the channel is full the event is dropped and
    the drop is counted. ``run`` must be running for events to be applied.
    """

    def __init__(self, interval: float = 1.0, channel_capacity: int = 10000,
                 active_workers: Optional[Callable[[], int]] = None,
                 subscriber_capacity: int = 100):
        self.interval = interval
        self.channel_capacity = channel_capacity
        self.subscriber_capacity = subscriber_capacity
        self.logger = logging.getLogger(__name__)

        self._events: asyncio.Queue = asyncio.Queue(maxsize=channel_capacity)
        self._active_workers = active_workers
        self._subscribers: List[asyncio.Queue] = []
        self._listeners: List[SnapshotListener] = []

        self._pages_crawled = 0
        self._pages_failed = 0
        self._links_found = 0
        self._queue_size = 0
        self._dropped_events = 0

    def emit(self, event: CrawlEvent):
        """Send an event to the aggregator without waiting."""
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped_events += 1
            if self._dropped_events == 1 or self._dropped_events % 1000 == 0:
                self.logger.warning(f"Stats channel full, {self._dropped_events} events dropped so far")

    def bind_active_workers(self, probe: Callable[[], int]):
        """Sample ``probe`` for the active worker count on every snapshot."""
        self._active_workers = probe

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        """Return a queue receiving every published snapshot."""
        subscriber = asyncio.Queue(maxsize=maxsize or self.subscriber_capacity)
        self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: asyncio.Queue):
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def add_listener(self, listener: SnapshotListener):
        """Call ``listener`` with every published snapshot."""
        self._listeners.append(listener)

    def _apply(self, event: CrawlEvent):
        if event is CrawlEvent.CRAWLED:
            self._pages_crawled += 1
            self._queue_size -= 1
        elif event is CrawlEvent.FAILED:
            self._pages_failed += 1
            self._queue_size -= 1
        elif event is CrawlEvent.DISCOVERED:
            self._links_found += 1
            self._queue_size += 1
        else:
            self.logger.warning(f"Ignoring unknown stats event: {event!r}")

    def snapshot(self) -> StatsSnapshot:
        active_workers = 0
        if self._active_workers is not None:
            active_workers = self._active_workers()
        return StatsSnapshot(
            pages_crawled=self._pages_crawled,
            pages_failed=self._pages_failed,
            links_found=self._links_found,
            queue_size=self._queue_size,
            active_workers=active_workers,
            dropped_events=self._dropped_events
        )

    def _drain(self):
        while True:
            try:
                event = self._events.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._apply(event)

    def _publish(self) -> StatsSnapshot:
        snapshot = self.snapshot()
        self.logger.info(snapshot.format())

        for subscriber in self._subscribers:
            if subscriber.full():
                # Slow consumers only ever see the most recent snapshots
                subscriber.get_nowait()
            subscriber.put_nowait(snapshot)

        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as e:
                self.logger.error(f"Error in stats listener: {e}")

        return snapshot

    async def run(self):
        """Apply events as they arrive and publish on every tick."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval

        try:
            while True:
                timeout = next_tick - loop.time()
                if timeout <= 0:
                    self._publish()
                    next_tick += self.interval
                    continue

                try:
                    event = await asyncio.wait_for(self._events.get(), timeout)
                except asyncio.TimeoutError:
                    continue
                self._apply(event)
        except asyncio.CancelledError:
            self._drain()
            self._publish()
            raise
