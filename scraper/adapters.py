"""Fallback extraction adapters for sources without structured data."""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from urllib.parse import urljoin

from scraper.page_fetcher import Page
from processor.models import RawRecord

logger = logging.getLogger(__name__)

URL_FIELDS = ('sourceUrl', 'imageUrl')


class SourceAdapter(ABC):
    """Source-specific extraction strategy."""

    @abstractmethod
    def extract(self, page: Page) -> List[RawRecord]:
        """
        Extract raw records from a fetched page.

        Args:
            page: Fetched page

        Returns:
            Zero or more raw records
        """


class SelectorAdapter(SourceAdapter):
    """
    Adapter driven by CSS selectors.

    Each card matched by ``card_selector`` becomes one record. Field
    selectors are relative to the card; ``"a@href"`` reads an attribute,
    ``"@href"`` reads it from the card itself, anything else reads the
    element's text.
    """

    def __init__(
        self,
        card_selector: str,
        field_selectors: Dict[str, str],
        limit: Optional[int] = None
    ):
        self.card_selector = card_selector
        self.field_selectors = field_selectors
        self.limit = limit

    def extract(self, page: Page) -> List[RawRecord]:
        cards = page.soup().select(self.card_selector)
        if self.limit is not None:
            cards = cards[:self.limit]

        records = []
        for card in cards:
            try:
                record = self._parse_card(card, page.url)
            except Exception as e:
                logger.warning(f"Failed to parse card on {page.url}: {e}")
                continue
            if record.get('title'):
                records.append(record)

        logger.info(f"Adapter extracted {len(records)} events from {page.url}")
        return records

    def _parse_card(self, card, base_url: str) -> RawRecord:
        record = {}
        for name, selector in self.field_selectors.items():
            value = self._select_value(card, selector)
            if value and name in URL_FIELDS:
                value = urljoin(base_url, value)
            record[name] = value
        return record

    def _select_value(self, card, selector: str) -> Optional[str]:
        css, _, attribute = selector.partition('@')
        element = card.select_one(css) if css else card
        if element is None:
            return None
        if attribute:
            value = element.get(attribute)
        else:
            value = element.get_text(strip=True)
        return value or None
