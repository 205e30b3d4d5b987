"""
Web page fetcher: the transport collaborator of the scheduler.
"""

import asyncio
import logging
import time
from typing import Dict, Optional

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout

from .exceptions import FetchFailed


class WebFetcher:
    """
    Fetches page bodies over HTTP.

    ``fetch`` returns the raw body of a successful response and raises
    FetchFailed for everything else. Status codes are not interpreted beyond
    success (< 400) or failure.
    """

    def __init__(self, user_agent: str, request_timeout: float = 30,
                 max_connections: int = 100, max_body_size: int = 10 * 1024 * 1024):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_connections = max_connections
        self.max_body_size = max_body_size

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None

        # Statistics
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            timeout = ClientTimeout(total=self.request_timeout)
            headers = {'User-Agent': self.user_agent}

            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers=headers,
                connector=aiohttp.TCPConnector(
                    limit=self.max_connections,
                    limit_per_host=10,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def fetch(self, url: str) -> bytes:
        """
        Fetch a single URL.

        Args:
            url: The URL to fetch

        Returns:
            The response body

        Raises:
            FetchFailed: on timeouts, transport errors, error statuses and
                bodies larger than ``max_body_size``
        """
        if self.session is None:
            raise FetchFailed(url, "fetcher session not started")

        start_time = time.time()
        self.stats['total_requests'] += 1

        try:
            async with self.session.get(url) as response:
                if response.status >= 400:
                    raise FetchFailed(url, f"HTTP {response.status}")
                body = await self._read_body(url, response)

        except FetchFailed:
            self.stats['failed_requests'] += 1
            raise
        except asyncio.TimeoutError as e:
            self.stats['failed_requests'] += 1
            self.logger.warning(f"Timeout fetching {url}")
            raise FetchFailed(url, "request timeout") from e
        except ClientError as e:
            self.stats['failed_requests'] += 1
            self.logger.warning(f"Client error fetching {url}: {e}")
            raise FetchFailed(url, f"client error: {e}") from e

        self.stats['successful_requests'] += 1
        self.stats['total_bytes_downloaded'] += len(body)
        self.logger.debug(f"Fetched {url}: {len(body)} bytes in {time.time() - start_time:.2f}s")
        return body

    async def _read_body(self, url: str, response) -> bytes:
        """Read the body in chunks, refusing anything over the size limit."""
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_body_size:
            raise FetchFailed(url, f"content too large ({content_length} bytes)")

        body = bytearray()
        async for chunk in response.content.iter_chunked(8192):
            body.extend(chunk)
            if len(body) > self.max_body_size:
                raise FetchFailed(url, "content exceeded size limit during reading")
        return bytes(body)

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
