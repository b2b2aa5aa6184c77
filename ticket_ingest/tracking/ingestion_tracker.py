from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Iterator

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    START = "start"
    FETCHING = "fetching"
    MAPPING = "mapping"
    WRITING = "writing"
    ADVANCING = "advancing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class IngestionRun:
    """Tracks a single backfill or sync run's state and counters."""

    dataset_id: str
    mode: str
    state: RunState = RunState.START
    prior_watermark: datetime | None = None
    high_water_mark: datetime | None = None
    pages_fetched: int = 0
    rows_fetched: int = 0
    rows_used: int = 0
    rows_rejected: int = 0
    rows_changed: int = 0
    cursor_advanced: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    def transition(self, state: RunState) -> None:
        if self.state in (RunState.DONE, RunState.FAILED):
            raise RuntimeError(f"Run for {self.dataset_id} already {self.state.value}")
        logger.debug("%s %s: %s -> %s", self.mode, self.dataset_id, self.state.value, state.value)
        self.state = state

    def observe(self, updated_at: datetime | None) -> None:
        """Fold a page's max update timestamp into the running high-water mark."""
        if updated_at is not None and (
            self.high_water_mark is None or updated_at > self.high_water_mark
        ):
            self.high_water_mark = updated_at

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def __enter__(self) -> IngestionRun:
        self.started_at = datetime.now(UTC)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.completed_at = datetime.now(UTC)
        if exc_type is not None:
            self.state = RunState.FAILED
            self.error = str(exc_val)
        elif self.state is not RunState.DONE:
            self.transition(RunState.DONE)
        return False


class IngestionTracker:
    """
    Keeps the history of ingestion runs for this process.

    The scheduler reads runs to total a cycle's counters, including rows
    committed by runs that later failed.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger("ingestion_tracker")
        self._runs: list[IngestionRun] = []

    @contextmanager
    def track(self, dataset_id: str, mode: str) -> Iterator[IngestionRun]:
        """Create, yield, and record an IngestionRun."""
        run = IngestionRun(dataset_id=dataset_id, mode=mode)
        self._runs.append(run)
        try:
            with run:
                yield run
        finally:
            self._log_run(run)

    def _log_run(self, run: IngestionRun) -> None:
        if not run.succeeded:
            self.logger.error(
                "%s %s failed after %.1fs, %d rows fetched, %d changed: %s",
                run.mode,
                run.dataset_id,
                run.duration_seconds or 0.0,
                run.rows_fetched,
                run.rows_changed,
                run.error,
            )
        else:
            self.logger.info(
                "%s %s complete in %.1fs: %d fetched, %d used, %d rejected, %d changed",
                run.mode,
                run.dataset_id,
                run.duration_seconds or 0.0,
                run.rows_fetched,
                run.rows_used,
                run.rows_rejected,
                run.rows_changed,
            )

    @property
    def runs(self) -> list[IngestionRun]:
        return list(self._runs)
