#!/usr/bin/env python3
"""
Command line entry point for the distributed crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from . import __version__
from .crawler.exceptions import CrawlerError
from .crawler.fetcher import WebFetcher
from .crawler.orchestrator import CrawlOrchestrator
from .crawler.work_queue import WorkQueue
from .utils.config import Config, load_config
from .utils.logger import log_system_info, setup_logging


class CrawlerApp:
    """Main application class for the crawler."""

    def __init__(self):
        self.orchestrator: Optional[CrawlOrchestrator] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event: Optional[asyncio.Event] = None

    def setup_signal_handlers(self):
        """SIGINT/SIGTERM stop the crawl, SIGUSR1 toggles pause, SIGUSR2 restarts."""
        loop = asyncio.get_running_loop()

        def request_shutdown(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            self._shutdown_event.set()

        def toggle_pause():
            if self.orchestrator is not None:
                asyncio.create_task(self.orchestrator.toggle_pause())

        def restart():
            if self.orchestrator is not None:
                asyncio.create_task(self.orchestrator.restart())

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, request_shutdown, signum)
        if hasattr(signal, 'SIGUSR1'):
            loop.add_signal_handler(signal.SIGUSR1, toggle_pause)
        if hasattr(signal, 'SIGUSR2'):
            loop.add_signal_handler(signal.SIGUSR2, restart)

    async def run(self, config: Config, max_duration: Optional[float] = None,
                  dry_run: bool = False) -> int:
        """Run the crawler."""
        self._shutdown_event = asyncio.Event()
        try:
            self.setup_signal_handlers()

            self.logger.info("=== CRAWLER STARTING ===")
            self.logger.info(f"Seed URLs: {config.crawler.seed_urls}")
            self.logger.info(f"Concurrency: {config.crawler.concurrency}")
            self.logger.info(f"Broker: redis://{config.broker.host}:{config.broker.port}/{config.broker.db}")
            self.logger.info(f"Frontier deduplication: {config.frontier.dedup}")

            if dry_run:
                self.logger.info("DRY RUN MODE: No actual crawling will be performed")
                return await self._dry_run(config)

            self.orchestrator = CrawlOrchestrator(config)
            await self.orchestrator.run(
                shutdown=self._shutdown_event,
                max_duration=max_duration
            )

        except CrawlerError as e:
            self.logger.error(f"Crawler failed: {e}")
            return 1
        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1
        finally:
            self.logger.info("=== CRAWLER FINISHED ===")

        return 0

    async def _dry_run(self, config: Config) -> int:
        """Check broker connectivity and a test fetch without crawling."""
        status = 0

        self.logger.info("Testing Redis connection...")
        queue = WorkQueue.from_config(config.broker)
        try:
            if await queue.healthy():
                self.logger.info("✓ Redis connection successful")
                self.logger.info(f"Tasks pending in {config.broker.stream}: {await queue.size()}")
            else:
                self.logger.error("✗ Redis connection failed")
                status = 1
        except CrawlerError as e:
            self.logger.error(f"✗ Redis check failed: {e}")
            status = 1
        finally:
            await queue.close()

        if config.crawler.seed_urls:
            self.logger.info("Testing fetcher configuration...")
            async with WebFetcher(
                user_agent=config.crawler.user_agent,
                request_timeout=config.crawler.request_timeout,
                max_connections=1
            ) as fetcher:
                test_url = config.crawler.seed_urls[0]
                try:
                    body = await fetcher.fetch(test_url)
                    self.logger.info(f"✓ Test fetch successful: {len(body)} bytes")
                except CrawlerError as e:
                    self.logger.warning(f"Test fetch failed: {e}")

        self.logger.info("Dry run completed")
        return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='distcrawl',
        description="Distributed web crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  distcrawl                                   # Run with default config.yaml
  distcrawl --config my_config.yaml           # Run with custom config
  distcrawl --seed https://example.com        # Override seed URLs
  distcrawl --concurrency 200                 # Override worker concurrency
  distcrawl --max-duration 3600               # Run for 1 hour max
  distcrawl --dry-run                         # Test configuration only
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--seed',
        action='append',
        dest='seeds',
        metavar='URL',
        help='Seed URL, may be repeated (replaces seed_urls from the config)'
    )

    parser.add_argument(
        '--concurrency',
        type=int,
        help='Maximum number of pages crawled concurrently'
    )

    parser.add_argument(
        '--max-duration',
        type=float,
        help='Maximum crawl duration in seconds'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Test configuration without actually crawling'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'distcrawl {__version__}'
    )

    return parser


def apply_overrides(config: Config, seeds: Optional[List[str]] = None,
                    concurrency: Optional[int] = None) -> Config:
    """Apply command line overrides to a loaded config."""
    if seeds:
        config.crawler.seed_urls = list(seeds)
    if concurrency is not None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        config.crawler.concurrency = concurrency
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    try:
        config = apply_overrides(load_config(args.config), args.seeds, args.concurrency)
    except (ValueError, TypeError, yaml.YAMLError) as e:
        print(f"Error: Invalid configuration: {e}")
        return 1

    setup_logging(config.logging)
    log_system_info()

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(
            config,
            max_duration=args.max_duration,
            dry_run=args.dry_run
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
