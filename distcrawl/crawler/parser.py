"""
HTML link extraction: the parse collaborator of the scheduler.
"""

import logging
from typing import List

from bs4 import BeautifulSoup

from .exceptions import ParseFailed


class LinkExtractor:
    """
    Finds candidate links in an HTML document.

    Hrefs are returned raw and in document order; resolving and validating
    them is left to the link validator.
    """

    def __init__(self, features: str = 'lxml'):
        self.features = features
        self.logger = logging.getLogger(__name__)

    def extract_links(self, body: bytes, url: str) -> List[str]:
        """
        Return the href of every anchor in ``body``.

        Args:
            body: Raw document bytes as fetched
            url: The URL the document was fetched from

        Raises:
            ParseFailed: if the document cannot be parsed
        """
        try:
            soup = BeautifulSoup(body, self.features)
            links = [anchor['href'] for anchor in soup.find_all('a', href=True)]
        except Exception as e:
            raise ParseFailed(url, str(e)) from e

        self.logger.debug(f"Extracted {len(links)} candidate links from {url}")
        return links
