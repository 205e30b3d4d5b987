"""
Crawl engine components.
"""

from .exceptions import (
    CrawlerError, QueueClosed, InvalidTarget, BrokerUnavailable,
    EnqueueBatchError, FetchFailed, ParseFailed
)
from .link_validator import is_valid_url, resolve_link, is_crawlable
from .partitioner import get_domain, partition_subject
from .work_queue import WorkQueue, URLTask
from .stats import StatsAggregator, StatsSnapshot, CrawlEvent
from .fetcher import WebFetcher
from .parser import LinkExtractor
from .scheduler import CrawlScheduler
from .orchestrator import CrawlOrchestrator, CrawlState

__all__ = [
    'CrawlerError', 'QueueClosed', 'InvalidTarget', 'BrokerUnavailable',
    'EnqueueBatchError', 'FetchFailed', 'ParseFailed',
    'is_valid_url', 'resolve_link', 'is_crawlable',
    'get_domain', 'partition_subject',
    'WorkQueue', 'URLTask',
    'StatsAggregator', 'StatsSnapshot', 'CrawlEvent',
    'WebFetcher', 'LinkExtractor',
    'CrawlScheduler', 'CrawlOrchestrator', 'CrawlState'
]
