"""
Link validation: decides whether a discovered href may enter the frontier.

Every function here is total. Any input, including non-strings, yields a
boolean or ``None``; nothing raises.
"""

import re
from typing import Optional
from urllib.parse import urljoin, urlsplit

ALLOWED_SCHEMES = ('http', 'https')

# Non-HTML resources that are never worth fetching
SKIP_EXTENSIONS = (
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp', '.ico',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.zip', '.rar', '.7z', '.tar', '.gz',
    '.mp3', '.wav', '.mp4', '.avi', '.mkv', '.mov',
)

_whitespace_or_control = re.compile(r'[\x00-\x20\x7f]')


def is_file_link(path: str) -> bool:
    """Check if a URL path points at a denylisted file type."""
    return path.lower().endswith(SKIP_EXTENSIONS)


def is_valid_url(url) -> bool:
    """Check if an absolute URL is valid for crawling."""
    if not isinstance(url, str) or not url:
        return False
    if _whitespace_or_control.search(url):
        return False

    try:
        parsed = urlsplit(url)
        # Raises ValueError on an out of range or non-numeric port
        parsed.port
    except ValueError:
        return False

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return False
    if not parsed.hostname:
        return False
    if is_file_link(parsed.path):
        return False

    return True


def resolve_link(href, base_url) -> Optional[str]:
    """
    Resolve ``href`` against ``base_url`` and validate the result.

    Returns the absolute URL to enqueue, or None when the link must be
    dropped.
    """
    if not isinstance(href, str):
        return None
    href = href.strip()
    if not href:
        return None

    if is_valid_url(href):
        return href

    if not isinstance(base_url, str):
        return None
    try:
        absolute_url = urljoin(base_url, href)
    except ValueError:
        return None

    if is_valid_url(absolute_url):
        return absolute_url
    return None


def is_crawlable(href, base_url) -> bool:
    """Predicate form of :func:`resolve_link`."""
    return resolve_link(href, base_url) is not None
