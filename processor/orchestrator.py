"""Ingestion cycle: fetch, extract, normalize, reconcile, sweep."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import List, Optional, Tuple

from processor.models import IngestionResult, RawRecord, Transition
from processor.normalizer import EventNormalizer
from processor.reconciler import ReconciliationEngine
from processor.sweeper import StalenessSweeper
from scraper.sources import Source
from scraper.structured_data import extract_events

logger = logging.getLogger(__name__)


class IngestionOrchestrator:
    """Runs one ingestion cycle over the configured sources."""

    def __init__(
        self,
        sources: List[Source],
        fetcher,
        normalizer: EventNormalizer,
        engine: ReconciliationEngine,
        sweeper: StalenessSweeper,
        max_workers: int = 1,
        deadline_seconds: Optional[float] = None
    ):
        """
        Args:
            sources: Sources to ingest, in processing order
            fetcher: Page fetching capability with fetch(url) -> Page
            normalizer: Raw record normalizer
            engine: Reconciliation engine
            sweeper: Staleness sweeper
            max_workers: Parallel page fetches (1 = sequential)
            deadline_seconds: Overall time budget for the cycle, or None
        """
        self.sources = sources
        self.fetcher = fetcher
        self.normalizer = normalizer
        self.engine = engine
        self.sweeper = sweeper
        self.max_workers = max(1, max_workers)
        self.deadline_seconds = deadline_seconds

    def run(self) -> IngestionResult:
        """
        Run a full cycle.

        A failing source is logged and skipped. Drafts without a title or
        source_url are dropped before reconciliation. The sweep always runs
        once at the end, also when the deadline cut the cycle short.

        Returns:
            IngestionResult with cycle statistics

        Raises:
            EventStoreError, botocore.exceptions.ClientError: If storage is unavailable
        """
        result = IngestionResult()
        deadline = None
        if self.deadline_seconds is not None:
            deadline = time.monotonic() + self.deadline_seconds

        drafts = []
        for source, raw_records, error in self._collect(deadline, result):
            result.sources_attempted += 1
            if error is not None:
                result.sources_failed += 1
                result.errors.append(f"{source.name}: {error}")
                continue

            result.raw_records += len(raw_records)
            drafts.extend(self.normalizer.normalize_all(raw_records, source.name))

        result.drafts = len(drafts)
        valid_drafts = [draft for draft in drafts if draft.title and draft.source_url]
        result.skipped = len(drafts) - len(valid_drafts)

        logger.info(
            f"Reconciling {len(valid_drafts)} drafts "
            f"({result.skipped} skipped without title or source_url)"
        )
        counts = self.engine.reconcile_all(valid_drafts, deadline=deadline)
        result.created = counts[Transition.CREATED]
        result.updated = counts[Transition.UPDATED]
        result.refreshed = counts[Transition.REFRESHED]
        if deadline is not None and time.monotonic() >= deadline:
            result.deadline_exceeded = True

        result.deactivated = self.sweeper.sweep()

        logger.info(
            f"Ingestion cycle complete",
            extra={
                'sources_attempted': result.sources_attempted,
                'sources_failed': result.sources_failed,
                'events_created': result.created,
                'events_updated': result.updated,
                'events_deactivated': result.deactivated,
            }
        )
        return result

    def _collect(self, deadline: Optional[float], result: IngestionResult):
        """Yield (source, raw records, error) per source, in source order."""
        if self.max_workers == 1:
            for source in self.sources:
                if self._expired(deadline, result):
                    return
                yield self._scrape_source(source)
            return

        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        expired = False
        try:
            futures = [executor.submit(self._scrape_source, source) for source in self.sources]
            for future in futures:
                timeout = None
                if deadline is not None:
                    timeout = max(0.0, deadline - time.monotonic())
                try:
                    yield future.result(timeout=timeout)
                except FutureTimeoutError:
                    logger.warning("Ingestion deadline reached, skipping remaining sources")
                    result.deadline_exceeded = True
                    expired = True
                    return
        finally:
            # In-flight fetches are abandoned once the deadline has passed
            executor.shutdown(wait=not expired, cancel_futures=expired)

    def _expired(self, deadline: Optional[float], result: IngestionResult) -> bool:
        if deadline is not None and time.monotonic() >= deadline:
            logger.warning("Ingestion deadline reached, skipping remaining sources")
            result.deadline_exceeded = True
            return True
        return False

    def _scrape_source(self, source: Source) -> Tuple[Source, List[RawRecord], Optional[Exception]]:
        try:
            logger.info(f"Scraping source {source.name}: {source.url}")
            page = self.fetcher.fetch(source.url)

            raw_records = extract_events(page.structured_blocks())
            if not raw_records and source.adapter is not None:
                logger.info(f"No structured data on {source.name}, using adapter")
                raw_records = source.adapter.extract(page)

            logger.info(f"Found {len(raw_records)} raw events on {source.name}")
            return source, raw_records, None

        except Exception as e:
            logger.error(
                f"Failed to scrape {source.name}: {e}",
                extra={'source': source.name, 'error_type': type(e).__name__},
                exc_info=True
            )
            return source, [], e
