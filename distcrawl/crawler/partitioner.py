"""
Domain partitioning for the work queue.
"""

from urllib.parse import urlsplit

from .exceptions import InvalidTarget

SUBJECT_PREFIX = "url."


def get_domain(url: str) -> str:
    """Return the lowercase host of ``url``, the routing key of its partition."""
    if not isinstance(url, str):
        raise InvalidTarget(url, "not a string")
    try:
        host = urlsplit(url.strip()).hostname
    except ValueError as e:
        raise InvalidTarget(url, str(e)) from e

    if not host:
        raise InvalidTarget(url, "missing host")
    return host.lower()


def partition_subject(url: str) -> str:
    """Subject under which ``url`` is published."""
    return SUBJECT_PREFIX + get_domain(url)
