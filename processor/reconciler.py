"""Reconciliation of event drafts against stored state."""
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple

from processor.models import (
    SCRAPED_FIELDS,
    Event,
    EventStatus,
    Transition,
    derive_status_tags,
)
from storage.event_store import DuplicateKeyError, StaleWriteError

logger = logging.getLogger(__name__)

WATCHED_FIELDS = (
    'date_text',
    'start_date',
    'venue_name',
    'venue_address',
    'description',
    'image_url',
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _comparable(value):
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if value is None:
        return ''
    return value


def has_changed(existing: Event, draft: Event) -> bool:
    """
    Compare the watched fields of a stored event and a fresh draft.

    Dates are compared by their UTC ISO text, so the same instant in two
    timezone representations is not a change.

    Args:
        existing: Stored event
        draft: Freshly scraped draft

    Returns:
        True if any watched field differs
    """
    return any(
        _comparable(getattr(existing, name)) != _comparable(getattr(draft, name))
        for name in WATCHED_FIELDS
    )


def reconcile(
    existing: Optional[Event],
    draft: Event,
    now: datetime
) -> Tuple[Event, Transition]:
    """
    Compute the next version of an event from its stored state and a draft.

    A new event starts as 'new'. An existing event moves to 'updated' when
    a watched field changed and otherwise keeps its status; it never goes
    back to 'new'. Scraped fields always take the draft's values.

    Args:
        existing: Stored event, or None
        draft: Normalized draft
        now: Time of this ingestion pass

    Returns:
        Tuple of (event to persist, transition)
    """
    if existing is None:
        event = replace(
            draft,
            status=EventStatus.NEW,
            status_tags=derive_status_tags(EventStatus.NEW, None),
            last_scraped=now,
            imported_at=None,
            imported_by=None,
            import_notes=None,
        )
        return event, Transition.CREATED

    changed = has_changed(existing, draft)
    status = EventStatus.UPDATED if changed else EventStatus(existing.status)

    last_scraped = now
    if existing.last_scraped is not None and existing.last_scraped > now:
        last_scraped = existing.last_scraped

    scraped = {name: getattr(draft, name) for name in SCRAPED_FIELDS}
    event = replace(
        existing,
        status=status,
        status_tags=derive_status_tags(status, existing.imported_at),
        last_scraped=last_scraped,
        **scraped
    )
    return event, Transition.UPDATED if changed else Transition.REFRESHED


class ReconciliationEngine:
    """Applies drafts to the event store with insert-or-update semantics."""

    MAX_CONFLICT_RETRIES = 3

    def __init__(self, store, clock: Callable[[], datetime] = utcnow):
        """
        Args:
            store: Storage collaborator (find_by_key, insert, update)
            clock: Returns the current time
        """
        self.store = store
        self.clock = clock

    def reconcile_draft(self, draft: Event) -> Optional[Tuple[Event, Transition]]:
        """
        Reconcile one draft against the store.

        Drafts without a source_url have no dedup key and are skipped. A
        duplicate-key conflict on insert means another writer created the
        record first; it is re-read and the update path is replayed.

        Args:
            draft: Normalized draft

        Returns:
            Tuple of (stored event, transition), or None if skipped
        """
        if not draft.source_url:
            logger.debug(f"Skipping draft without source_url: '{draft.title}'")
            return None

        now = self.clock()

        for attempt in range(self.MAX_CONFLICT_RETRIES):
            existing = self.store.find_by_key(draft.source, draft.source_url)
            event, transition = reconcile(existing, draft, now)

            if existing is None:
                try:
                    return self.store.insert(event), transition
                except DuplicateKeyError:
                    logger.info(
                        f"Insert conflict for ({draft.source}, {draft.source_url}), "
                        f"retrying as update (attempt {attempt + 1}/{self.MAX_CONFLICT_RETRIES})"
                    )
                    continue

            try:
                return self.store.update(event), transition
            except StaleWriteError:
                logger.warning(
                    f"Newer version already stored for ({draft.source}, {draft.source_url}), "
                    f"keeping it"
                )
                current = self.store.find_by_key(draft.source, draft.source_url)
                return current or existing, Transition.REFRESHED

        raise DuplicateKeyError(draft.source, draft.source_url)

    def reconcile_all(
        self,
        drafts: Iterable[Event],
        deadline: Optional[float] = None
    ) -> Dict[Transition, int]:
        """
        Reconcile drafts one at a time.

        Args:
            drafts: Drafts with a dedup key
            deadline: time.monotonic() value after which remaining drafts are left alone

        Returns:
            Count of drafts per transition
        """
        counts = {transition: 0 for transition in Transition}

        for draft in drafts:
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Deadline reached, leaving remaining drafts unreconciled")
                break

            result = self.reconcile_draft(draft)
            if result is None:
                continue
            counts[result[1]] += 1

        logger.info(
            f"Reconciled drafts: {counts[Transition.CREATED]} created, "
            f"{counts[Transition.UPDATED]} updated, "
            f"{counts[Transition.REFRESHED]} refreshed"
        )
        return counts
