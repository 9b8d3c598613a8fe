"""HTTP page fetching for event sources."""
import logging
import time
from dataclasses import dataclass
from typing import List

import requests
from bs4 import BeautifulSoup

from scraper.structured_data import extract_structured_blocks

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36'
)


@dataclass
class Page:
    """A fetched page."""
    url: str
    html: str

    def structured_blocks(self) -> List[str]:
        """Return the text of every JSON-LD block on the page."""
        return extract_structured_blocks(self.html)

    def soup(self) -> BeautifulSoup:
        """Parse the page for element queries."""
        return BeautifulSoup(self.html, 'html.parser')


class HttpPageFetcher:
    """Fetches source pages over HTTP with retries."""

    def __init__(
        self,
        timeout: int = 60,
        max_retries: int = 3,
        user_agent: str = DEFAULT_USER_AGENT,
        base_delay: float = 1
    ):
        """
        Initialize the page fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 60)
            max_retries: Attempts per page before giving up (default: 3)
            user_agent: User-Agent header sent with every request
            base_delay: Initial backoff delay in seconds
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.session = requests.Session()
        self.session.headers.update({'User-Agent': user_agent})

    def fetch(self, url: str) -> Page:
        """
        Fetch a page with exponential backoff between attempts.

        Args:
            url: Page URL

        Returns:
            Page with the final URL and response body

        Raises:
            requests.RequestException: If all retry attempts fail
        """
        for attempt in range(self.max_retries):
            try:
                logger.info(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries})")
                response = self.session.get(url, timeout=self.timeout)
                response.raise_for_status()
                return Page(url=response.url or url, html=response.text)

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed for {url}. "
                        f"Last error: {e}"
                    )
                    raise
