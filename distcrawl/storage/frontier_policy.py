"""
Frontier admission policies.

A policy is consulted for every valid discovered link before it is
enqueued. The default admits everything, so link cycles are re-enqueued and
left for the queue backlog to absorb; ``RedisSeenFilter`` opts into
deduplication across all crawler processes sharing the frontier.
"""

import hashlib
import logging
from typing import Dict

import redis.asyncio as redis
from redis.exceptions import RedisError


class FrontierPolicy:
    """Base class for admission policies."""

    async def admit(self, url: str) -> bool:
        """Return True if ``url`` may be enqueued."""
        raise NotImplementedError

    async def forget(self, url: str):
        """Undo an admission whose enqueue failed."""

    def get_stats(self) -> Dict[str, int]:
        return {}


class AllowAll(FrontierPolicy):
    """Admits every link."""

    async def admit(self, url: str) -> bool:
        return True


class RedisSeenFilter(FrontierPolicy):
    """
    Admits each URL once, tracked in a Redis set of URL hashes.

    The set is shared, so a URL admitted by one process is rejected by the
    others. When Redis cannot be reached the link is admitted: a duplicate
    crawl is cheaper than a lost link.
    """

    def __init__(self, redis_client: redis.Redis, key: str = "crawler:frontier:seen"):
        self.redis_client = redis_client
        self.key = key
        self.logger = logging.getLogger(__name__)

        # Statistics
        self.stats = {
            'total_checks': 0,
            'admitted': 0,
            'duplicates': 0,
            'forgotten': 0,
            'errors': 0
        }

    @staticmethod
    def _url_hash(url: str) -> str:
        return hashlib.sha256(url.encode('utf-8', errors='replace')).hexdigest()

    async def admit(self, url: str) -> bool:
        self.stats['total_checks'] += 1
        try:
            added = await self.redis_client.sadd(self.key, self._url_hash(url))
        except RedisError as e:
            self.stats['errors'] += 1
            self.logger.warning(f"Seen filter unavailable, admitting {url}: {e}")
            return True

        if added:
            self.stats['admitted'] += 1
            return True

        self.stats['duplicates'] += 1
        self.logger.debug(f"Skipping already seen URL: {url}")
        return False

    async def forget(self, url: str):
        """Drop ``url`` from the seen set so a later discovery admits it again."""
        try:
            removed = await self.redis_client.srem(self.key, self._url_hash(url))
        except RedisError as e:
            self.stats['errors'] += 1
            self.logger.warning(f"Could not forget {url}, it will not be admitted again: {e}")
            return
        if removed:
            self.stats['forgotten'] += 1

    async def clear(self):
        """Forget every seen URL."""
        await self.redis_client.delete(self.key)
        self.logger.info(f"Cleared seen filter {self.key}")

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()
