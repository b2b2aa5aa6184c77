from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from ticket_ingest.collectors.config import IngestSettings
from ticket_ingest.collectors.socrata.client import SocrataClient
from ticket_ingest.collectors.socrata.pages import backfill_pages, incremental_pages
from ticket_ingest.db.core import PostgresEngine
from ticket_ingest.db.tickets import TableStats, TicketWriter
from ticket_ingest.sources.datasets import DatasetDescriptor, get_dataset
from ticket_ingest.sources.mapper import (
    MappingRejection,
    TicketRecord,
    map_row,
    max_updated_at,
)
from ticket_ingest.tracking.cursor_store import CursorStore, format_watermark
from ticket_ingest.tracking.ingestion_tracker import (
    IngestionRun,
    IngestionTracker,
    RunState,
)


class TicketCollector:
    """
    Orchestrates Socrata -> parking_ticket ingestion for one dataset at a time.

    Pages are fetched, mapped and upserted one after another. The cursor is
    advanced once, after the last page, and only when the run mapped at
    least one record newer than the prior watermark.
    """

    def __init__(
        self,
        client: SocrataClient,
        writer: TicketWriter,
        cursors: CursorStore,
        tracker: IngestionTracker | None = None,
    ) -> None:
        self.client = client
        self.writer = writer
        self.cursors = cursors
        self.tracker = tracker or IngestionTracker()
        self.logger = logging.getLogger("ticket_collector")

    @classmethod
    def from_settings(cls, settings: IngestSettings, engine: PostgresEngine) -> TicketCollector:
        client = SocrataClient(
            app_token=settings.app_token,
            base_url=settings.base_url,
            page_size=settings.page_size,
            page_delay=settings.page_delay,
            max_attempts=settings.max_attempts,
            initial_backoff=settings.initial_backoff,
            request_timeout=settings.request_timeout,
        )
        return cls(
            client=client,
            writer=TicketWriter(engine, batch_size=settings.batch_size),
            cursors=CursorStore(engine),
        )

    def run_backfill(self, dataset_id: str) -> IngestionRun:
        """Pull the full dataset ordered by :id."""
        descriptor = get_dataset(dataset_id)
        self.logger.info("=== Starting backfill for dataset: %s ===", dataset_id)
        with self.tracker.track(dataset_id, "backfill") as run:
            run.prior_watermark = self.cursors.read(dataset_id)
            self._ingest(run, descriptor, backfill_pages(self.client, descriptor))
        return run

    def run_sync(self, dataset_id: str) -> IngestionRun:
        """Pull rows updated since the stored cursor, ordered by :updated_at."""
        descriptor = get_dataset(dataset_id)
        self.logger.info("=== Starting incremental sync for dataset: %s ===", dataset_id)
        with self.tracker.track(dataset_id, "sync") as run:
            run.prior_watermark = self.cursors.read(dataset_id)
            cursor = format_watermark(run.prior_watermark)
            self.logger.info("Current cursor: %s", cursor)
            self._ingest(run, descriptor, incremental_pages(self.client, descriptor, cursor))
        return run

    def get_stats(self) -> TableStats:
        return self.writer.stats()

    def _ingest(
        self,
        run: IngestionRun,
        descriptor: DatasetDescriptor,
        pages: Iterable[list[dict[str, Any]]],
    ) -> None:
        run.transition(RunState.FETCHING)
        for page in pages:
            run.pages_fetched += 1
            run.rows_fetched += len(page)

            run.transition(RunState.MAPPING)
            records = self._map_page(run, descriptor, page)
            run.observe(max_updated_at(records))

            if records:
                run.transition(RunState.WRITING)
                changed = self.writer.write(records)
                run.rows_changed += changed
            else:
                changed = 0

            self.logger.info(
                "Page %d: processed %d rows, upserted %d (total: %d fetched, %d upserted)",
                run.pages_fetched,
                len(page),
                changed,
                run.rows_fetched,
                run.rows_changed,
            )
            run.transition(RunState.FETCHING)

        run.transition(RunState.ADVANCING)
        if run.rows_used and run.high_water_mark and (
            run.prior_watermark is None or run.high_water_mark > run.prior_watermark
        ):
            self.cursors.advance(descriptor.dataset_id, run.high_water_mark)
            run.cursor_advanced = True
        elif run.rows_used == 0:
            self.logger.info("No rows mapped for %s; cursor unchanged", descriptor.dataset_id)
        run.transition(RunState.DONE)

    def _map_page(
        self,
        run: IngestionRun,
        descriptor: DatasetDescriptor,
        page: list[dict[str, Any]],
    ) -> list[TicketRecord]:
        records = []
        for raw in page:
            result = map_row(descriptor, raw)
            if isinstance(result, MappingRejection):
                run.rows_rejected += 1
                self.logger.debug("Skipping %s row: %s", result.dataset_id, result.reason)
                continue
            records.append(result)
        run.rows_used += len(records)
        return records

    def close(self) -> None:
        self.client.close()
