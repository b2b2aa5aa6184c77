from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import psycopg2

from ticket_ingest.collectors.exceptions import StoreError
from ticket_ingest.db.core import PostgresEngine, pg_retry, rows_to_copy_buffer
from ticket_ingest.sources.datasets import NATURAL_KEY
from ticket_ingest.sources.mapper import TICKET_COLUMNS, TicketRecord

TICKET_TABLE = "parking_ticket"


@dataclass
class TableStats:
    total_rows: int
    by_dataset: dict[str, int] = field(default_factory=dict)


def dedupe_by_key(records: Sequence[TicketRecord]) -> list[TicketRecord]:
    """
    Collapse records sharing a summons number, keeping the most recently
    updated one (the later record wins ties). Order of first appearance is kept.
    """
    latest: dict[str, TicketRecord] = {}
    for record in records:
        current = latest.get(record.summons_number)
        if current is None or (record.soda_updated_at or "") >= (
            current.soda_updated_at or ""
        ):
            latest[record.summons_number] = record
    return list(latest.values())


class TicketWriter:
    """
    Idempotent, batched upsert of TicketRecords into parking_ticket.

    Each batch is copied into a transaction-scoped staging table and merged
    with INSERT ... ON CONFLICT. Conflicting rows are only rewritten when
    soda_updated_at changed, so re-delivering an unchanged record is a no-op
    and does not count toward the returned total.

    Batches commit independently: a failure leaves earlier batches of the
    same call in place. Re-running the call is safe.
    """

    def __init__(
        self,
        engine: PostgresEngine,
        batch_size: int = 500,
        table: str = TICKET_TABLE,
    ) -> None:
        self.engine = engine
        self.batch_size = batch_size
        self.table = table
        self.logger = logging.getLogger("ticket_writer")

    def write(self, records: Sequence[TicketRecord]) -> int:
        """Upsert records in sequential batches. Returns rows actually changed."""
        if not records:
            return 0

        changed = 0
        for start in range(0, len(records), self.batch_size):
            batch = dedupe_by_key(records[start : start + self.batch_size])
            try:
                count = self._upsert_batch(batch)
            except psycopg2.Error as e:
                raise StoreError(
                    f"Upsert into {self.table} failed for batch at offset {start}: {e}"
                ) from e
            self.logger.debug(
                "Batch at offset %d: %d rows sent, %d changed", start, len(batch), count
            )
            changed += count
        return changed

    def upsert_sql(self, staging_table: str) -> str:
        col_list = ", ".join(f'"{c}"' for c in TICKET_COLUMNS)
        set_clause = ", ".join(
            f'"{c}" = excluded."{c}"' for c in TICKET_COLUMNS if c != NATURAL_KEY
        )
        return (
            f"insert into {self.table} ({col_list}) "
            f"select {col_list} from {staging_table} "
            f'on conflict ("{NATURAL_KEY}") do update set {set_clause} '
            f"where {self.table}.soda_updated_at is distinct from excluded.soda_updated_at"
        )

    @pg_retry()
    def _upsert_batch(self, batch: list[TicketRecord]) -> int:
        staging = f"_staging_{self.table}"
        col_list = ", ".join(f'"{c}"' for c in TICKET_COLUMNS)
        buf = rows_to_copy_buffer((r.as_row() for r in batch), TICKET_COLUMNS)

        with self.engine.cursor() as cur:
            cur.execute(
                f"create temp table {staging} "
                f"(like {self.table} including defaults) on commit drop"
            )
            cur.copy_expert(
                f"copy {staging} ({col_list}) from stdin with (format text, NULL '\\N')",
                buf,
            )
            cur.execute(self.upsert_sql(staging))
            return cur.rowcount

    def stats(self) -> TableStats:
        """Count stored tickets, in total and per source dataset."""
        try:
            total = self.engine.query(f"select count(*) as count from {self.table}")
            per_dataset = self.engine.query(
                f"""
                select source_dataset, count(*) as count
                from {self.table}
                group by source_dataset
                order by source_dataset
                """
            )
        except psycopg2.Error as e:
            raise StoreError(f"Could not read stats from {self.table}: {e}") from e

        return TableStats(
            total_rows=int(total["count"].iloc[0]) if not total.empty else 0,
            by_dataset={
                str(row["source_dataset"]): int(row["count"])
                for _, row in per_dataset.iterrows()
            },
        )
