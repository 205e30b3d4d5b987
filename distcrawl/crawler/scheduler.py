"""
Crawler scheduler: bounded-concurrency dispatch of URL tasks.
"""

import asyncio
import logging
from typing import List, Optional, Set

from .exceptions import BrokerUnavailable, CrawlerError, FetchFailed, ParseFailed, QueueClosed
from .link_validator import resolve_link
from .stats import CrawlEvent, StatsAggregator
from .work_queue import URLTask, WorkQueue
from ..storage.frontier_policy import AllowAll, FrontierPolicy


class CrawlScheduler:
    """
    Leases tasks from the work queue and crawls them, at most
    ``concurrency`` at a time.

    Each task is fetched, its links validated and enqueued, and then acked.
    A fetch or parse failure naks the task; redelivery is the broker's
    business, nothing is retried here.
    """

    def __init__(self, queue: WorkQueue, fetcher, parser, stats: StatsAggregator,
                 concurrency: int = 100, frontier_policy: Optional[FrontierPolicy] = None,
                 health_check_interval: float = 5.0):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.queue = queue
        self.fetcher = fetcher
        self.parser = parser
        self.stats = stats
        self.concurrency = concurrency
        self.frontier_policy = frontier_policy or AllowAll()
        self.health_check_interval = health_check_interval
        self.logger = logging.getLogger(__name__)

        self._slots = asyncio.Semaphore(concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._stop = asyncio.Event()
        self.is_running = False

    @property
    def in_flight(self) -> int:
        """Tasks currently dispatched."""
        return len(self._tasks)

    async def run(self, stop: Optional[asyncio.Event] = None):
        """
        Dispatch tasks until ``stop`` is set or the queue is closed.

        In-flight tasks are always allowed to finish before this returns.
        """
        if self.is_running:
            self.logger.warning("Scheduler is already running")
            return

        self._stop = stop or asyncio.Event()
        self.is_running = True
        self.logger.info(f"Scheduler started with concurrency {self.concurrency}")

        try:
            while not self._stop.is_set():
                await self._slots.acquire()
                try:
                    task = await self.queue.dequeue(cancel=self._stop)
                except QueueClosed:
                    self._slots.release()
                    break
                except BrokerUnavailable as e:
                    self._slots.release()
                    self.logger.error(f"Dequeue failed: {e}")
                    await self._wait_until_healthy()
                    continue
                except Exception as e:
                    self._slots.release()
                    self.logger.error(f"Unexpected dequeue error: {e}", exc_info=True)
                    await self._sleep_unless_stopped(self.health_check_interval)
                    continue

                self._dispatch(task)
        finally:
            await self.drain()
            self.is_running = False
            self.logger.info("Scheduler stopped")

    def stop(self):
        """Stop issuing dequeues; in-flight tasks still complete."""
        self._stop.set()

    async def drain(self):
        """Wait for every dispatched task to finish."""
        if self._tasks:
            self.logger.info(f"Waiting for {len(self._tasks)} in-flight tasks")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _dispatch(self, task: URLTask):
        worker = asyncio.create_task(self._process(task))
        self._tasks.add(worker)
        worker.add_done_callback(self._tasks.discard)

    async def _sleep_unless_stopped(self, delay: float):
        try:
            await asyncio.wait_for(self._stop.wait(), delay)
        except asyncio.TimeoutError:
            pass

    async def _wait_until_healthy(self):
        """Hold the loop until the broker answers the health probe again."""
        self.logger.warning("Crawling paused until the broker is reachable")
        while not self._stop.is_set() and not self.queue.closed:
            await self._sleep_unless_stopped(self.health_check_interval)
            if await self.queue.healthy():
                self.logger.info("Broker reachable again, resuming")
                return

    async def _process(self, task: URLTask):
        try:
            await self._crawl(task)
        except Exception as e:
            self.logger.error(f"Unexpected error processing {task.url}: {e}", exc_info=True)
            await self._fail(task)
        finally:
            self._slots.release()

    async def _crawl(self, task: URLTask):
        try:
            body = await self.fetcher.fetch(task.url)
            hrefs = self.parser.extract_links(body, task.url)
        except (FetchFailed, ParseFailed) as e:
            self.logger.warning(f"{e} (delivery {task.delivery_count})")
            await self._fail(task)
            return

        queued = await self._enqueue_links(hrefs, task.url)

        self.stats.emit(CrawlEvent.CRAWLED)
        await self._settle(self.queue.ack, task)
        self.logger.debug(f"Crawled {task.url}: {len(hrefs)} links found, {queued} queued")

    async def _enqueue_links(self, hrefs: List[str], base_url: str) -> int:
        queued = 0
        for href in hrefs:
            link = resolve_link(href, base_url)
            if link is None:
                continue
            if not await self.frontier_policy.admit(link):
                continue

            try:
                await self.queue.enqueue(link)
            except CrawlerError as e:
                self.logger.warning(f"Failed to enqueue {link}: {e}")
                await self.frontier_policy.forget(link)
                continue

            queued += 1
            self.stats.emit(CrawlEvent.DISCOVERED)
        return queued

    async def _fail(self, task: URLTask):
        self.stats.emit(CrawlEvent.FAILED)
        await self._settle(self.queue.nak, task)

    async def _settle(self, settle, task: URLTask):
        try:
            await settle(task)
        except CrawlerError as e:
            # The lease expires and the broker redelivers
            self.logger.warning(f"Could not settle {task.url}: {e}")
