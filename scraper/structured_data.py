"""Extraction of schema.org Event data from embedded JSON-LD blocks."""
import json
import logging
from typing import Any, Iterable, List, Union

from bs4 import BeautifulSoup

from processor.models import RawRecord

logger = logging.getLogger(__name__)

EVENT_TYPE = 'Event'
GRAPH_KEY = '@graph'
ADDRESS_PARTS = (
    'streetAddress',
    'addressLocality',
    'addressRegion',
    'postalCode',
    'addressCountry',
)


def extract_structured_blocks(html_content: str) -> List[str]:
    """
    Collect the text of every JSON-LD script block on a page.

    Args:
        html_content: Page HTML

    Returns:
        List of raw block strings, in document order
    """
    soup = BeautifulSoup(html_content, 'html.parser')
    blocks = []
    for tag in soup.find_all('script', attrs={'type': 'application/ld+json'}):
        text = tag.string if tag.string is not None else tag.get_text()
        if text and text.strip():
            blocks.append(text)
    return blocks


def _is_event(node: dict) -> bool:
    node_type = node.get('@type')
    if isinstance(node_type, list):
        return EVENT_TYPE in node_type
    return node_type == EVENT_TYPE


def find_event_nodes(blocks: Iterable[str]) -> List[dict]:
    """
    Walk parsed JSON-LD documents and collect every Event object.

    Each block is parsed on its own; a block that is not valid JSON is
    skipped. Traversal uses an explicit stack: lists push their elements,
    Event objects are collected, and objects carrying an @graph push the
    graph contents. Scalars are ignored. Order of the result is unspecified.

    Args:
        blocks: Raw JSON-LD block strings

    Returns:
        List of Event objects as dicts
    """
    matches = []

    for block in blocks:
        try:
            document = json.loads(block)
        except (TypeError, ValueError, RecursionError):
            logger.debug("Skipping malformed JSON-LD block")
            continue

        stack: List[Any] = [document]
        while stack:
            node = stack.pop()
            if isinstance(node, list):
                stack.extend(node)
            elif isinstance(node, dict):
                if _is_event(node):
                    matches.append(node)
                elif GRAPH_KEY in node:
                    stack.append(node[GRAPH_KEY])

    return matches


def _format_address(address: Any) -> str:
    if isinstance(address, str):
        return address.strip()
    if not isinstance(address, dict):
        return ''
    parts = [address.get(part) for part in ADDRESS_PARTS]
    return ', '.join(str(part) for part in parts if part)


def _first_image(image: Any) -> Any:
    if isinstance(image, list):
        image = image[0] if image else None
    if isinstance(image, dict):
        return image.get('url')
    return image


def project_event(node: dict) -> RawRecord:
    """
    Project a schema.org Event object into a raw record.

    Args:
        node: Event object from a JSON-LD document

    Returns:
        Raw record keyed by the normalizer's field aliases
    """
    location = node.get('location')
    if isinstance(location, list):
        location = location[0] if location else None
    if not isinstance(location, dict):
        location = {}

    name = node.get('name')
    return {
        'title': name.strip() if isinstance(name, str) else name,
        'description': node.get('description'),
        'startDate': node.get('startDate'),
        'endDate': node.get('endDate'),
        'dateText': node.get('startDate'),
        'venueName': location.get('name'),
        'venueAddress': _format_address(location.get('address')),
        'imageUrl': _first_image(node.get('image')),
        'sourceUrl': node.get('url'),
    }


def extract_events(page_or_blocks: Union[str, Iterable[str]]) -> List[RawRecord]:
    """
    Extract raw event records from a page's structured data.

    Args:
        page_or_blocks: Page HTML, or an iterable of JSON-LD block strings

    Returns:
        Raw records with a non-empty title
    """
    if isinstance(page_or_blocks, str):
        blocks = extract_structured_blocks(page_or_blocks)
    else:
        blocks = list(page_or_blocks)

    records = [project_event(node) for node in find_event_nodes(blocks)]
    records = [record for record in records if record.get('title')]

    logger.debug(f"Extracted {len(records)} events from {len(blocks)} JSON-LD blocks")
    return records
