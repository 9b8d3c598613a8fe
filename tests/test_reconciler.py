"""Unit tests for reconciliation."""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from processor.models import EventStatus, Transition
from processor.reconciler import ReconciliationEngine, has_changed, reconcile
from storage.event_store import DuplicateKeyError, StaleWriteError


class TestReconcile:
    """Test cases for the pure transition function."""

    def test_new_event(self, draft_factory, now):
        """Test that an unknown draft becomes a new event."""
        event, transition = reconcile(None, draft_factory(), now)

        assert transition == Transition.CREATED
        assert event.status == EventStatus.NEW
        assert event.status_tags == ['new']
        assert event.last_scraped == now
        assert event.title == 'Jazz Night'

    def test_identical_draft_keeps_status(self, draft_factory, now):
        """Test that an unchanged draft only advances last_scraped."""
        existing, _ = reconcile(None, draft_factory(), now)
        later = now + timedelta(hours=6)

        event, transition = reconcile(existing, draft_factory(), later)

        assert transition == Transition.REFRESHED
        assert event.status == EventStatus.NEW
        assert event.status_tags == ['new']
        assert event.last_scraped == later

    @pytest.mark.parametrize('field_name, value', [
        ('date_text', 'Sat 24 Oct, 8pm'),
        ('start_date', datetime(2026, 10, 25, 9, 0, tzinfo=timezone.utc)),
        ('venue_name', 'Bar B'),
        ('venue_address', '2 Pitt St, Sydney'),
        ('description', 'Now with a late set'),
        ('image_url', 'https://x/new.jpg'),
    ])
    def test_watched_field_change(self, draft_factory, now, field_name, value):
        """Test that each watched field flips status to updated."""
        existing, _ = reconcile(None, draft_factory(), now)

        event, transition = reconcile(existing, draft_factory(**{field_name: value}), now)

        assert transition == Transition.UPDATED
        assert event.status == EventStatus.UPDATED
        assert event.status_tags == ['updated']
        assert getattr(event, field_name) == value

    def test_unwatched_field_change(self, draft_factory, now):
        """Test that a category change is stored but not treated as an update."""
        existing, _ = reconcile(None, draft_factory(), now)

        event, transition = reconcile(existing, draft_factory(category=['Nightlife']), now)

        assert transition == Transition.REFRESHED
        assert event.status == EventStatus.NEW
        assert event.category == ['Nightlife']

    def test_inactive_reactivates_as_updated(self, draft_factory, now):
        """Test that a changed inactive event becomes updated, never new."""
        existing, _ = reconcile(None, draft_factory(), now - timedelta(days=10))
        existing.status = EventStatus.INACTIVE
        existing.status_tags = ['inactive']

        event, _ = reconcile(existing, draft_factory(venue_name='Bar B'), now)

        assert event.status == EventStatus.UPDATED
        assert event.status_tags == ['updated']

    def test_unchanged_inactive_stays_inactive(self, draft_factory, now):
        """Test that an unchanged inactive event keeps its status."""
        existing, _ = reconcile(None, draft_factory(), now - timedelta(days=10))
        existing.status = EventStatus.INACTIVE
        existing.status_tags = ['inactive']

        event, transition = reconcile(existing, draft_factory(), now)

        assert transition == Transition.REFRESHED
        assert event.status == EventStatus.INACTIVE
        assert event.last_scraped == now

    def test_import_metadata_preserved(self, draft_factory, now):
        """Test that import metadata survives and keeps its tag."""
        existing, _ = reconcile(None, draft_factory(), now)
        existing.event_id = 'abc'
        existing.imported_at = now
        existing.imported_by = 'user-1'

        event, _ = reconcile(existing, draft_factory(venue_name='Bar B'), now)

        assert event.event_id == 'abc'
        assert event.imported_by == 'user-1'
        assert event.status_tags == ['updated', 'imported']

    def test_last_scraped_never_decreases(self, draft_factory, now):
        """Test that an earlier pass does not move last_scraped back."""
        existing, _ = reconcile(None, draft_factory(), now)

        event, _ = reconcile(existing, draft_factory(), now - timedelta(minutes=5))

        assert event.last_scraped == now

    def test_date_compared_by_instant(self, draft_factory):
        """Test that the same instant in another timezone is not a change."""
        sydney = timezone(timedelta(hours=11))
        existing = draft_factory(start_date=datetime(2026, 10, 24, 9, 0, tzinfo=timezone.utc))
        draft = draft_factory(start_date=datetime(2026, 10, 24, 20, 0, tzinfo=sydney))

        assert not has_changed(existing, draft)


class TestReconciliationEngine:
    """Test cases for the store-backed engine."""

    def test_insert_then_update(self, event_store, draft_factory, now):
        """Test the insert path followed by the update path."""
        engine = ReconciliationEngine(event_store, clock=lambda: now)

        created, transition = engine.reconcile_draft(draft_factory())
        assert transition == Transition.CREATED

        engine.clock = lambda: now + timedelta(hours=1)
        updated, transition = engine.reconcile_draft(draft_factory(venue_name='Bar B'))

        assert transition == Transition.UPDATED
        assert updated.event_id == created.event_id
        stored = event_store.get_all_events()
        assert len(stored) == 1
        assert stored[created.event_id].venue_name == 'Bar B'
        assert stored[created.event_id].status == EventStatus.UPDATED

    def test_idempotent_reconcile(self, event_store, draft_factory, now):
        """Test that the same draft twice keeps status and advances last_scraped."""
        engine = ReconciliationEngine(event_store, clock=lambda: now)
        engine.reconcile_draft(draft_factory())

        later = now + timedelta(minutes=10)
        engine.clock = lambda: later
        event, transition = engine.reconcile_draft(draft_factory())

        assert transition == Transition.REFRESHED
        found = event_store.find_by_key('Eventbrite', 'https://x/1')
        assert found.status == EventStatus.NEW
        assert found.last_scraped == later
        assert len(event_store.get_all_events()) == 1

    def test_dedup_across_drafts(self, event_store, draft_factory, now):
        """Test that drafts sharing a dedup key never create two records."""
        engine = ReconciliationEngine(event_store, clock=lambda: now)

        counts = engine.reconcile_all([
            draft_factory(),
            draft_factory(description='Second listing'),
            draft_factory(source_url='https://x/2'),
        ])

        assert counts[Transition.CREATED] == 2
        assert counts[Transition.UPDATED] == 1
        assert len(event_store.get_all_events()) == 2

    def test_draft_without_source_url_skipped(self, draft_factory, now):
        """Test that drafts without a dedup key never reach the store."""
        store = Mock()
        engine = ReconciliationEngine(store, clock=lambda: now)

        assert engine.reconcile_draft(draft_factory(source_url='')) is None
        store.find_by_key.assert_not_called()

    def test_insert_conflict_replays_update(self, draft_factory, now):
        """Test that a duplicate-key race is recovered as an update."""
        winner, _ = reconcile(None, draft_factory(), now)
        winner.event_id = 'abc'

        store = Mock()
        store.find_by_key.side_effect = [None, winner]
        store.insert.side_effect = DuplicateKeyError('Eventbrite', 'https://x/1')
        store.update.side_effect = lambda event: event

        engine = ReconciliationEngine(store, clock=lambda: now)
        event, transition = engine.reconcile_draft(draft_factory(venue_name='Bar B'))

        assert transition == Transition.UPDATED
        assert event.event_id == 'abc'
        assert event.status == EventStatus.UPDATED
        store.update.assert_called_once()

    def test_persistent_conflict_raises(self, draft_factory, now):
        """Test that an unrecoverable conflict is surfaced."""
        store = Mock()
        store.find_by_key.return_value = None
        store.insert.side_effect = DuplicateKeyError('Eventbrite', 'https://x/1')

        engine = ReconciliationEngine(store, clock=lambda: now)

        with pytest.raises(DuplicateKeyError):
            engine.reconcile_draft(draft_factory())

        assert store.insert.call_count == ReconciliationEngine.MAX_CONFLICT_RETRIES

    def test_stale_write_keeps_stored_version(self, draft_factory, now):
        """Test that a newer stored version is not overwritten and is returned."""
        existing, _ = reconcile(None, draft_factory(), now)
        existing.event_id = 'abc'
        newer = replace(existing, venue_name='Bar C', last_scraped=now + timedelta(minutes=5))

        store = Mock()
        store.find_by_key.side_effect = [existing, newer]
        store.update.side_effect = StaleWriteError('newer version')

        engine = ReconciliationEngine(store, clock=lambda: now)
        event, transition = engine.reconcile_draft(draft_factory(venue_name='Bar B'))

        assert transition == Transition.REFRESHED
        assert event is newer
        assert store.find_by_key.call_count == 2

    def test_reconcile_all_respects_deadline(self, draft_factory, now):
        """Test that no draft is reconciled after the deadline."""
        store = Mock()
        engine = ReconciliationEngine(store, clock=lambda: now)

        counts = engine.reconcile_all([draft_factory()], deadline=0)

        assert sum(counts.values()) == 0
        store.find_by_key.assert_not_called()
