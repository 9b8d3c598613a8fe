"""Staleness sweep for events no longer seen at their source."""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from processor.models import Event, EventStatus, derive_status_tags
from processor.reconciler import utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=7)


def inactive_patch(event: Event) -> dict:
    """Attributes written when an event is swept; the imported tag survives."""
    return {
        'status': EventStatus.INACTIVE.value,
        'status_tags': derive_status_tags(EventStatus.INACTIVE, event.imported_at),
    }


class StalenessSweeper:
    """Marks events inactive once they have not been scraped for a while."""

    def __init__(
        self,
        store,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            store: Storage collaborator providing batch_update_where
            retention: How long an event stays active without being scraped
            clock: Returns the current time
        """
        self.store = store
        self.retention = retention
        self.clock = clock

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Deactivate every active event last scraped before now - retention.

        Events that are already inactive are not written.

        Args:
            now: Reference time, defaults to the clock

        Returns:
            Count of events deactivated
        """
        cutoff = (now or self.clock()) - self.retention
        count = self.store.batch_update_where(older_than=cutoff, patch=inactive_patch)
        logger.info(
            f"Staleness sweep deactivated {count} events scraped before {cutoff.isoformat()}"
        )
        return count
