"""
Exceptions raised by the crawl engine.
"""

from typing import List, Tuple


class CrawlerError(Exception):
    """Base class for crawl engine errors."""


class QueueClosed(CrawlerError):
    """The work queue was closed or the consumer was cancelled."""

    def __init__(self, message: str = "queue is closed"):
        super().__init__(message)


class InvalidTarget(CrawlerError, ValueError):
    """A URL is unparseable or has no domain to partition on."""

    def __init__(self, url, reason: str = "cannot derive domain"):
        self.url = url
        self.reason = reason
        super().__init__(f"invalid target {url!r}: {reason}")


class BrokerUnavailable(CrawlerError):
    """Connectivity to the broker was lost or an operation failed on it."""


class EnqueueBatchError(CrawlerError):
    """One or more URLs of a batch could not be enqueued."""

    def __init__(self, failures: List[Tuple[str, Exception]], enqueued: int = 0):
        self.failures = failures
        self.enqueued = enqueued
        details = "; ".join(f"{url!r}: {error}" for url, error in failures)
        super().__init__(
            f"failed to enqueue {len(failures)} URL(s) "
            f"({enqueued} enqueued): {details}"
        )

    @property
    def failed_urls(self) -> List[str]:
        return [url for url, _ in self.failures]


class FetchFailed(CrawlerError):
    """The page could not be retrieved."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"failed to fetch {url}: {reason}")


class ParseFailed(CrawlerError):
    """The fetched document could not be parsed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"failed to parse {url}: {reason}")
