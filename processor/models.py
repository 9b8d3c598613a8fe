"""Data models for event ingestion and reconciliation."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# Loosely-typed record produced by structured-data extraction or an adapter
RawRecord = Dict[str, Any]


class EventStatus(str, Enum):
    """Lifecycle status owned by reconciliation and the staleness sweep."""
    NEW = 'new'
    UPDATED = 'updated'
    INACTIVE = 'inactive'


IMPORTED_TAG = 'imported'


class Transition(str, Enum):
    """What reconciliation did to a single record."""
    CREATED = 'created'
    UPDATED = 'updated'
    REFRESHED = 'refreshed'


@dataclass
class Event:
    """Canonical event record."""
    title: str
    source: str
    source_url: str = ''
    date_text: str = ''
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    venue_name: str = ''
    venue_address: str = ''
    city: str = ''
    description: str = ''
    category: List[str] = field(default_factory=list)
    image_url: str = ''
    event_id: Optional[str] = None
    last_scraped: Optional[datetime] = None
    status: EventStatus = EventStatus.NEW
    status_tags: List[str] = field(default_factory=list)
    imported_at: Optional[datetime] = None
    imported_by: Optional[str] = None
    import_notes: Optional[str] = None

    @property
    def dedup_key(self) -> Optional[tuple]:
        """(source, source_url) or None when the record is exempt from dedup."""
        if self.source and self.source_url:
            return (self.source, self.source_url)
        return None


# Fields refreshed from every scrape; identity, lifecycle and import
# metadata are never taken from a draft
SCRAPED_FIELDS = (
    'title',
    'date_text',
    'start_date',
    'end_date',
    'venue_name',
    'venue_address',
    'city',
    'description',
    'category',
    'image_url',
    'source',
    'source_url',
)


def derive_status_tags(status: EventStatus, imported_at: Optional[datetime]) -> List[str]:
    """
    Derive the display tag set for a record.

    Args:
        status: Current lifecycle status
        imported_at: Import timestamp, if the record was imported

    Returns:
        List with the status value, plus 'imported' when imported_at is set
    """
    tags = [EventStatus(status).value]
    if imported_at is not None:
        tags.append(IMPORTED_TAG)
    return tags


@dataclass
class IngestionResult:
    """Summary of one ingestion cycle."""
    sources_attempted: int = 0
    sources_failed: int = 0
    raw_records: int = 0
    drafts: int = 0
    skipped: int = 0
    created: int = 0
    updated: int = 0
    refreshed: int = 0
    deactivated: int = 0
    deadline_exceeded: bool = False
    errors: List[str] = field(default_factory=list)
