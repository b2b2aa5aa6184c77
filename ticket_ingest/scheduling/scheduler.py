"""
Recurring incremental sync across every configured dataset.

One cycle runs immediately on start. Unless run_once is set, further cycles
are driven by an APScheduler interval job with a single worker and
max_instances=1, so a cycle never starts while another is in flight.
SIGINT/SIGTERM stop the timer, wait for the running cycle, and release the
connection pool.
"""

from __future__ import annotations

import logging
import signal
import time
from dataclasses import dataclass

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ticket_ingest.collectors.socrata.collector import TicketCollector
from ticket_ingest.db.core import PostgresEngine
from ticket_ingest.sources.datasets import DATASETS

JOB_ID = "sync_cycle"


@dataclass
class CycleResult:
    datasets_ok: int = 0
    datasets_failed: int = 0
    rows_fetched: int = 0
    rows_changed: int = 0
    duration_seconds: float = 0.0


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    return f"{seconds / 60:.1f}m"


class SyncScheduler:
    """Runs TicketCollector.run_sync over a list of datasets on an interval."""

    def __init__(
        self,
        collector: TicketCollector,
        engine: PostgresEngine,
        dataset_ids: list[str] | None = None,
        interval_minutes: float = 15,
        run_once: bool = False,
    ) -> None:
        self.collector = collector
        self.engine = engine
        self.dataset_ids = dataset_ids or list(DATASETS)
        self.interval_minutes = interval_minutes
        self.run_once = run_once
        self.logger = logging.getLogger("sync_scheduler")

        self._executor = ThreadPoolExecutor(max_workers=1)
        self._scheduler: BlockingScheduler | None = None
        self._stopping = False

    def run_cycle(self) -> CycleResult:
        """Sync every dataset in order. A failing dataset does not stop the others."""
        started = time.monotonic()
        result = CycleResult()
        self.logger.info("Starting sync cycle for %s", ", ".join(self.dataset_ids))
        first_run = len(self.collector.tracker.runs)

        for dataset_id in self.dataset_ids:
            try:
                self.collector.run_sync(dataset_id)
            except Exception:
                result.datasets_failed += 1
                self.logger.exception("[%s] Sync error", dataset_id)
                continue
            result.datasets_ok += 1

        # Failed runs still count: their committed batches stay in the table.
        for run in self.collector.tracker.runs[first_run:]:
            result.rows_fetched += run.rows_fetched
            result.rows_changed += run.rows_changed

        result.duration_seconds = time.monotonic() - started
        if result.rows_fetched > 0:
            self.logger.info(
                "Sync complete: %d fetched, %d upserted (%s)",
                result.rows_fetched,
                result.rows_changed,
                format_duration(result.duration_seconds),
            )
        else:
            self.logger.info("No new data (%s)", format_duration(result.duration_seconds))
        if result.datasets_failed:
            self.logger.warning("%d dataset(s) failed this cycle", result.datasets_failed)

        try:
            stats = self.collector.get_stats()
            self.logger.info("Total rows: %s", f"{stats.total_rows:,}")
        except Exception:
            self.logger.exception("Could not read table stats")
        return result

    def _scheduled_cycle(self) -> None:
        self.run_cycle()
        if not self._stopping:
            self.logger.info("Next sync in %s minutes...", f"{self.interval_minutes:g}")

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _handle_signal(self, signum: int, frame: object) -> None:
        self.logger.info("Received %s, shutting down...", signal.Signals(signum).name)
        self.stop()

    def stop(self) -> None:
        """Stop scheduling new cycles. An in-flight cycle is left to finish."""
        self._stopping = True
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def run(self) -> None:
        """Run the first cycle, then keep syncing until stopped or run_once."""
        self.install_signal_handlers()
        self.logger.info(
            "Interval: %s minutes, mode: %s",
            f"{self.interval_minutes:g}",
            "run once" if self.run_once else "continuous",
        )
        try:
            self.run_cycle()
            if self.run_once or self._stopping:
                return

            self._scheduler = BlockingScheduler(
                executors={"default": self._executor},
                job_defaults={"coalesce": True, "max_instances": 1},
            )
            self._scheduler.add_job(
                self._scheduled_cycle,
                trigger=IntervalTrigger(minutes=self.interval_minutes),
                id=JOB_ID,
                name="Incremental sync cycle",
                replace_existing=True,
            )
            self.logger.info("Next sync in %s minutes...", f"{self.interval_minutes:g}")
            self._scheduler.start()
        finally:
            # Blocks until a cycle already handed to the executor has returned.
            self._executor.shutdown(wait=True)
            self.collector.close()
            self.engine.close()
            self.logger.info("Scheduler shutdown complete")
