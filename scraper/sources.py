"""Configured event sources."""
import json
import logging
from dataclasses import dataclass
from typing import List, Optional

from scraper.adapters import SelectorAdapter, SourceAdapter

logger = logging.getLogger(__name__)


@dataclass
class Source:
    """A listing page to ingest and its optional fallback adapter."""
    name: str
    url: str
    adapter: Optional[SourceAdapter] = None


DEFAULT_SOURCES = [
    Source(
        name='Eventbrite',
        url='https://www.eventbrite.com.au/d/australia--sydney/events/'
    ),
    Source(
        name='Meetup',
        url='https://www.meetup.com/find/?location=au--sydney&source=EVENTS'
    ),
    Source(
        name='TimeOut',
        url='https://www.timeout.com/sydney/things-to-do'
    ),
]


def load_sources(path: str) -> List[Source]:
    """
    Load the source list from a JSON file.

    The file holds a list of objects with ``name``, ``url`` and an optional
    ``adapter`` object (``card``, ``fields``, ``limit``) configuring a
    SelectorAdapter.

    Args:
        path: Path to the JSON file

    Returns:
        Sources in file order

    Raises:
        ValueError: If an entry lacks a name or url
    """
    with open(path, encoding='utf-8') as f:
        entries = json.load(f)

    sources = []
    for index, entry in enumerate(entries):
        if not entry.get('name') or not entry.get('url'):
            raise ValueError(f"Source entry {index} requires 'name' and 'url'")

        adapter = None
        adapter_config = entry.get('adapter')
        if adapter_config:
            adapter = SelectorAdapter(
                card_selector=adapter_config['card'],
                field_selectors=adapter_config.get('fields', {}),
                limit=adapter_config.get('limit')
            )

        sources.append(Source(name=entry['name'], url=entry['url'], adapter=adapter))

    logger.info(f"Loaded {len(sources)} sources from {path}")
    return sources
