"""Normalizer mapping raw scraped records to canonical event drafts."""
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from dateutil import parser as dateutil_parser

from processor.models import Event, RawRecord

logger = logging.getLogger(__name__)

TITLE_FIELDS = ('title', 'name')
DATE_TEXT_FIELDS = ('dateText', 'date', 'startDate', 'start_time')
START_DATE_FIELDS = ('startDate', 'start_time', 'date')
END_DATE_FIELDS = ('endDate', 'end_time')
VENUE_NAME_FIELDS = ('venueName', 'venue', 'locationName')
VENUE_ADDRESS_FIELDS = ('venueAddress', 'locationAddress')
DESCRIPTION_FIELDS = ('description', 'summary')
IMAGE_FIELDS = ('imageUrl', 'image')
URL_FIELDS = ('sourceUrl', 'url')

# Two distinct fill-ins; a date part that differs between them was missing
PARSE_DEFAULTS = (datetime(2000, 1, 1), datetime(2004, 2, 2))


def first_present(raw: RawRecord, fields: Iterable[str]) -> Any:
    """Return the first non-empty value among the given fields, else ''."""
    for name in fields:
        value = raw.get(name)
        if isinstance(value, str):
            value = value.strip()
        if value:
            return value
    return ''


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a scraped date value into a timezone-aware datetime.

    Naive values are taken as UTC. Anything that cannot be parsed, and
    partial values such as a bare time or a day without a year, yield None
    so the result never depends on the day it was parsed.

    Args:
        value: Date string or datetime

    Returns:
        Parsed datetime or None
    """
    if not value:
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = dateutil_parser.parse(str(value), default=PARSE_DEFAULTS[0])
            check = dateutil_parser.parse(str(value), default=PARSE_DEFAULTS[1])
        except (ValueError, OverflowError, TypeError):
            return None
        if parsed.date() != check.date():
            logger.debug(f"Ignoring partial date '{value}'")
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_first_datetime(raw: RawRecord, fields: Iterable[str]) -> Optional[datetime]:
    for name in fields:
        value = raw.get(name)
        if value:
            return parse_datetime(value)
    return None


def normalize_category(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple, set)):
        categories = []
        for item in value:
            if item and str(item) not in categories:
                categories.append(str(item))
        return categories
    return [str(value)]


class EventNormalizer:
    """Maps heterogeneous raw records into canonical Event drafts."""

    def __init__(self, default_city: str = 'Sydney'):
        """
        Args:
            default_city: City assigned to every draft from this pipeline
        """
        self.default_city = default_city

    def normalize(self, raw: RawRecord, source_name: str) -> Event:
        """
        Normalize one raw record.

        Dates that cannot be parsed are stored as None; the free-text
        date label is kept in date_text either way.

        Args:
            raw: Raw record from the extractor or an adapter
            source_name: Display name of the producing source

        Returns:
            Event draft without identity or lifecycle timestamps
        """
        return Event(
            title=str(first_present(raw, TITLE_FIELDS)),
            date_text=str(first_present(raw, DATE_TEXT_FIELDS)),
            start_date=parse_first_datetime(raw, START_DATE_FIELDS),
            end_date=parse_first_datetime(raw, END_DATE_FIELDS),
            venue_name=str(first_present(raw, VENUE_NAME_FIELDS)),
            venue_address=str(first_present(raw, VENUE_ADDRESS_FIELDS)),
            city=self.default_city,
            description=str(first_present(raw, DESCRIPTION_FIELDS)),
            category=normalize_category(raw.get('category')),
            image_url=str(first_present(raw, IMAGE_FIELDS)),
            source=source_name,
            source_url=str(first_present(raw, URL_FIELDS))
        )

    def normalize_all(self, raw_records: List[RawRecord], source_name: str) -> List[Event]:
        """
        Normalize a batch of raw records from one source.

        Args:
            raw_records: Raw records
            source_name: Display name of the producing source

        Returns:
            List of Event drafts
        """
        drafts = []

        for raw in raw_records:
            try:
                drafts.append(self.normalize(raw, source_name))
            except Exception as e:
                logger.warning(
                    f"Failed to normalize record from {source_name}: {e}"
                )
                continue

        logger.info(
            f"Normalized {len(drafts)} of {len(raw_records)} records from {source_name}"
        )
        return drafts
