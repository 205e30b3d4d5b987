"""
Crawl orchestrator: wires the engine together and controls its lifecycle.
"""

import asyncio
import logging
from enum import Enum
from typing import Iterable, Optional

from .exceptions import BrokerUnavailable, EnqueueBatchError
from .fetcher import WebFetcher
from .parser import LinkExtractor
from .scheduler import CrawlScheduler
from .stats import CrawlEvent, StatsAggregator
from .work_queue import WorkQueue
from ..storage.frontier_policy import AllowAll, FrontierPolicy, RedisSeenFilter
from ..utils.config import Config
from ..utils.monitoring import MetricsExporter


class CrawlState(Enum):
    """Lifecycle states of a crawl."""
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class CrawlOrchestrator:
    """
    Owns the work queue, collaborators, stats and scheduler of one crawler
    process.

    ``start`` seeds the frontier and begins dispatching, ``pause`` and
    ``resume`` stop and restart dispatching while keeping the queue open,
    ``restart`` starts over with zeroed counters on the same queue, and
    ``stop`` shuts everything down in order: no new work, in-flight work
    drained, stats flushed, queue closed. Starting, resuming and restarting
    require the broker to pass its health probe.
    """

    def __init__(self, config: Config, queue: Optional[WorkQueue] = None,
                 fetcher=None, parser=None,
                 frontier_policy: Optional[FrontierPolicy] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.queue = queue
        self.fetcher = fetcher
        self.parser = parser
        self.frontier_policy = frontier_policy
        self.stats: Optional[StatsAggregator] = None
        self.scheduler: Optional[CrawlScheduler] = None
        self.metrics: Optional[MetricsExporter] = None

        self.state = CrawlState.STOPPED
        self._initialized = False
        self._owns_fetcher = fetcher is None
        self._stats_task: Optional[asyncio.Task] = None
        self._scheduler_task: Optional[asyncio.Task] = None
        self._scheduler_stop: Optional[asyncio.Event] = None
        self._finished = asyncio.Event()

    async def initialize(self):
        """Connect to the broker and build every component."""
        if self._initialized:
            return

        try:
            if self.queue is None:
                self.queue = WorkQueue.from_config(self.config.broker)

            if not await self.queue.healthy():
                raise BrokerUnavailable(
                    f"cannot reach Redis at {self.config.broker.host}:{self.config.broker.port}"
                )
            await self.queue.initialize()

            if self.fetcher is None:
                self.fetcher = WebFetcher(
                    user_agent=self.config.crawler.user_agent,
                    request_timeout=self.config.crawler.request_timeout,
                    max_connections=self.config.crawler.concurrency,
                    max_body_size=self.config.crawler.max_body_size
                )
                await self.fetcher.start()

            if self.parser is None:
                self.parser = LinkExtractor()

            if self.frontier_policy is None:
                self.frontier_policy = self._build_frontier_policy()

            if self.config.monitoring.metrics_enabled and self.metrics is None:
                self.metrics = MetricsExporter(self.config.monitoring.prometheus_port)
                self.metrics.start_server()

            self._build_engine()

        except Exception as e:
            self.logger.error(f"Failed to initialize crawl orchestrator: {e}")
            await self._release()
            raise

        self._initialized = True
        self.logger.info("Crawl orchestrator initialized successfully")

    def _build_engine(self):
        """Fresh stats and scheduler; counters start from zero."""
        self.stats = StatsAggregator(
            interval=self.config.stats.interval,
            channel_capacity=self.config.stats.channel_capacity
        )
        self.scheduler = CrawlScheduler(
            self.queue,
            self.fetcher,
            self.parser,
            self.stats,
            concurrency=self.config.crawler.concurrency,
            frontier_policy=self.frontier_policy,
            health_check_interval=self.config.crawler.health_check_interval
        )
        self.stats.bind_active_workers(lambda: self.scheduler.in_flight)
        if self.metrics is not None:
            self.stats.add_listener(self.metrics.update)

    def _build_frontier_policy(self) -> FrontierPolicy:
        if self.config.frontier.dedup == 'redis':
            self.logger.info(f"Frontier deduplication enabled ({self.config.frontier.seen_key})")
            return RedisSeenFilter(self.queue.redis_client, self.config.frontier.seen_key)
        return AllowAll()

    async def seed(self, urls: Iterable[str]) -> int:
        """
        Enqueue seed URLs as one batch.

        Malformed seeds are logged and skipped. Each accepted seed counts as
        a discovered link.
        """
        urls = list(urls)
        if not urls:
            return 0

        try:
            added = await self.queue.enqueue_batch(urls)
        except EnqueueBatchError as e:
            for url, error in e.failures:
                self.logger.error(f"Rejected seed {url!r}: {error}")
            added = e.enqueued

        for _ in range(added):
            self.stats.emit(CrawlEvent.DISCOVERED)

        self.logger.info(f"Added {added} of {len(urls)} seed URLs to the frontier")
        return added

    async def start(self, seeds: Optional[Iterable[str]] = None):
        """Seed the frontier and start dispatching."""
        if self.state is not CrawlState.STOPPED:
            self.logger.warning(f"Cannot start a crawl that is {self.state.value}")
            return

        await self.initialize()
        if not await self.queue.healthy():
            await self._release()
            self._initialized = False
            raise BrokerUnavailable("broker failed the health probe, not starting")

        self._finished.clear()
        self._stats_task = asyncio.create_task(self.stats.run())

        seeds = self.config.crawler.seed_urls if seeds is None else seeds
        await self.seed(seeds)

        self._start_scheduler()
        self.logger.info("=== CRAWL STARTED ===")

    def _start_scheduler(self):
        self._scheduler_stop = asyncio.Event()
        self._scheduler_task = asyncio.create_task(self.scheduler.run(self._scheduler_stop))
        self._scheduler_task.add_done_callback(self._scheduler_done)
        self.state = CrawlState.RUNNING

    def _scheduler_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Scheduler terminated: {error}")
        # Only a closed queue or a crash ends a run that was not paused
        if self.state is CrawlState.RUNNING and not self._scheduler_stop.is_set():
            self._finished.set()

    async def _stop_scheduler(self):
        if self._scheduler_task is None:
            return
        self._scheduler_stop.set()
        try:
            await self._scheduler_task
        except Exception as e:
            self.logger.error(f"Scheduler ended with an error: {e}")
        self._scheduler_task = None

    async def pause(self):
        """Stop dispatching and let in-flight tasks finish."""
        if self.state is not CrawlState.RUNNING:
            return
        self.logger.info("Pausing crawl...")
        await self._stop_scheduler()
        self.state = CrawlState.PAUSED
        self.logger.info("Crawl paused")

    async def resume(self) -> bool:
        """Restart dispatching if the broker is healthy."""
        if self.state is not CrawlState.PAUSED:
            return False
        if not await self.queue.healthy():
            self.logger.warning("Broker failed the health probe, staying paused")
            return False
        self._start_scheduler()
        self.logger.info("Crawl resumed")
        return True

    async def toggle_pause(self):
        if self.state is CrawlState.RUNNING:
            await self.pause()
        elif self.state is CrawlState.PAUSED:
            await self.resume()

    async def _stop_stats(self):
        if self._stats_task is None:
            return
        self._stats_task.cancel()
        try:
            await self._stats_task
        except asyncio.CancelledError:
            pass
        self._stats_task = None

    async def restart(self, seeds: Optional[Iterable[str]] = None) -> bool:
        """
        Stop dispatching, reset every counter and start crawling again.

        The queue backlog is kept; ``seeds`` are enqueued on top of it. When
        the broker fails the health probe the crawl is stopped instead.
        """
        if not self._initialized:
            await self.start(seeds)
            return True

        self.logger.info("Restarting crawl...")
        await self._stop_scheduler()
        await self._stop_stats()

        if not await self.queue.healthy():
            self.logger.error("Broker failed the health probe, stopping instead of restarting")
            await self.stop()
            return False

        self._build_engine()
        self.state = CrawlState.STOPPED
        await self.start([] if seeds is None else seeds)
        return True

    async def stop(self):
        """Shut down: drain in-flight work, flush stats, close the queue."""
        if self.state is CrawlState.STOPPED and not self._initialized:
            return

        self.logger.info("Stopping crawl...")
        await self._stop_scheduler()
        await self._stop_stats()

        await self._log_final_stats()
        await self._release()

        self.state = CrawlState.STOPPED
        self._initialized = False
        self._finished.set()
        self.logger.info("=== CRAWL STOPPED ===")

    async def _log_final_stats(self):
        if self.stats is None:
            return
        snapshot = self.stats.snapshot()
        self.logger.info("=== CRAWL SUMMARY ===")
        self.logger.info(f"Pages crawled: {snapshot.pages_crawled}")
        self.logger.info(f"Pages failed: {snapshot.pages_failed}")
        self.logger.info(f"Links found: {snapshot.links_found}")
        self.logger.info(f"Dropped stats events: {snapshot.dropped_events}")
        if self.queue is not None and not self.queue.closed:
            try:
                self.logger.info(f"Tasks remaining in queue: {await self.queue.size()}")
            except BrokerUnavailable as e:
                self.logger.warning(f"Could not read queue size: {e}")
        if isinstance(self.fetcher, WebFetcher):
            self.logger.info(f"Fetcher stats: {self.fetcher.get_stats()}")
        if self.frontier_policy is not None and self.frontier_policy.get_stats():
            self.logger.info(f"Frontier policy stats: {self.frontier_policy.get_stats()}")

    async def _release(self):
        if self.queue is not None:
            await self.queue.close()
        if self._owns_fetcher and isinstance(self.fetcher, WebFetcher):
            await self.fetcher.close()

    async def run(self, seeds: Optional[Iterable[str]] = None,
                  shutdown: Optional[asyncio.Event] = None,
                  max_duration: Optional[float] = None):
        """Start, run until ``shutdown`` is set or ``max_duration`` passes, stop."""
        shutdown = shutdown or asyncio.Event()
        await self.start(seeds)
        try:
            waiters = [
                asyncio.create_task(shutdown.wait()),
                asyncio.create_task(self._finished.wait()),
            ]
            done, pending = await asyncio.wait(
                waiters, timeout=max_duration, return_when=asyncio.FIRST_COMPLETED
            )
            for waiter in pending:
                waiter.cancel()
            if not done:
                self.logger.info(f"Reached max duration: {max_duration} seconds")
        finally:
            await self.stop()
