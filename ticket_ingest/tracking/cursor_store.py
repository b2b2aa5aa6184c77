from __future__ import annotations

import logging
from datetime import UTC, datetime

import pandas as pd
import psycopg2

from ticket_ingest.collectors.exceptions import StoreError
from ticket_ingest.db.core import PostgresEngine

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def format_watermark(value: datetime) -> str:
    """
    Render a watermark as a UTC ISO-8601 string usable in a SoQL filter.

    Milliseconds are only included when non-zero, so the epoch renders as
    1970-01-01T00:00:00Z.
    """
    value = value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
    if value.microsecond % 1000:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _as_utc(value) -> datetime:
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    elif isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)


class CursorStore:
    """
    Per-dataset incremental sync watermark, persisted in ingest_cursor.

    A cursor row is created at the epoch on first read and only ever
    rewritten by advance().
    """

    TABLE_NAME = "ingest_cursor"

    def __init__(self, engine: PostgresEngine) -> None:
        self.engine = engine
        self.logger = logging.getLogger("cursor_store")

    def read(self, dataset_id: str) -> datetime:
        """Return the watermark for dataset_id, creating it at the epoch if absent."""
        try:
            self.engine.execute(
                f"""
                insert into {self.TABLE_NAME} (dataset_id, last_soda_updated, updated_at)
                values (%(dataset_id)s, %(epoch)s, now())
                on conflict (dataset_id) do nothing
                """,
                {"dataset_id": dataset_id, "epoch": EPOCH},
            )
            df = self.engine.query(
                f"""
                select last_soda_updated
                from {self.TABLE_NAME}
                where dataset_id = %(dataset_id)s
                """,
                {"dataset_id": dataset_id},
            )
        except psycopg2.Error as e:
            raise StoreError(f"Could not read cursor for {dataset_id}: {e}") from e

        if df.empty:
            raise StoreError(f"Cursor row for {dataset_id} missing after initialization")
        return _as_utc(df.iloc[0]["last_soda_updated"])

    def advance(self, dataset_id: str, watermark: datetime) -> None:
        """Persist a new watermark. Callers only pass a newly observed maximum."""
        try:
            self.engine.execute(
                f"""
                insert into {self.TABLE_NAME} (dataset_id, last_soda_updated, updated_at)
                values (%(dataset_id)s, %(watermark)s, now())
                on conflict (dataset_id)
                do update set last_soda_updated = excluded.last_soda_updated,
                              updated_at = now()
                """,
                {"dataset_id": dataset_id, "watermark": watermark},
            )
        except psycopg2.Error as e:
            raise StoreError(f"Could not advance cursor for {dataset_id}: {e}") from e
        self.logger.info("Cursor updated for %s: %s", dataset_id, format_watermark(watermark))
