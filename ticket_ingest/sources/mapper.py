from __future__ import annotations

import math
from dataclasses import dataclass, fields
from datetime import UTC, datetime
from typing import Any, Iterable

import pandas as pd

from ticket_ingest.sources.datasets import NATURAL_KEY, DatasetDescriptor

DATE_FIELDS = frozenset({"issue_date"})
NUMERIC_FIELDS = frozenset({"fine_amount"})


@dataclass(frozen=True)
class TicketRecord:
    """One row of the parking_ticket table, independent of the source dataset."""

    summons_number: str
    source_dataset: str
    issue_date: str | None = None
    violation_time: str | None = None
    violation_code: str | None = None
    violation_desc: str | None = None
    issuing_agency: str | None = None
    county: str | None = None
    precinct: str | None = None
    street_name: str | None = None
    intersecting_street: str | None = None
    fine_amount: float | None = None
    plate_id: str | None = None
    registration_state: str | None = None
    plate_type: str | None = None
    soda_row_id: str | None = None
    soda_created_at: str | None = None
    soda_updated_at: str | None = None

    def as_row(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


TICKET_COLUMNS: tuple[str, ...] = tuple(f.name for f in fields(TicketRecord))
MAPPED_FIELDS: tuple[str, ...] = tuple(
    c
    for c in TICKET_COLUMNS
    if c not in (NATURAL_KEY, "source_dataset")
    and not c.startswith("soda_")
)


@dataclass(frozen=True)
class MappingRejection:
    """A raw record that was skipped before reaching the canonical model."""

    dataset_id: str
    reason: str


def map_row(
    descriptor: DatasetDescriptor, raw: dict[str, Any]
) -> TicketRecord | MappingRejection:
    """
    Translate one raw Socrata row into a TicketRecord.

    Never raises on malformed values: unparseable dates and numbers become
    None. Only a missing or blank summons number rejects the row.
    """
    summons_number = _text(raw.get(NATURAL_KEY))
    if summons_number is None:
        return MappingRejection(descriptor.dataset_id, f"missing {NATURAL_KEY}")

    values: dict[str, Any] = {}
    for canonical in MAPPED_FIELDS:
        source = descriptor.source_field(canonical)
        if source is None:
            continue
        value = raw.get(source)
        if canonical in DATE_FIELDS:
            values[canonical] = parse_date(value)
        elif canonical in NUMERIC_FIELDS:
            values[canonical] = parse_numeric(value)
        else:
            values[canonical] = _text(value)

    return TicketRecord(
        summons_number=summons_number,
        source_dataset=descriptor.dataset_id,
        soda_row_id=_text(raw.get(":id")),
        soda_created_at=parse_timestamp(raw.get(":created_at")),
        soda_updated_at=parse_timestamp(raw.get(":updated_at")),
        **values,
    )


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text if text.strip() else None


def _to_timestamp(value: Any) -> pd.Timestamp | None:
    # SODA sends dates as text; numbers are never read as epoch offsets
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        ts = pd.to_datetime(value, errors="coerce")
    except (TypeError, ValueError, OverflowError):
        return None
    if not isinstance(ts, pd.Timestamp) or pd.isna(ts):
        return None
    return ts


def parse_date(value: Any) -> str | None:
    """Normalize any parseable date representation to YYYY-MM-DD."""
    ts = _to_timestamp(value)
    if ts is None:
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC")
    return ts.date().isoformat()


def parse_timestamp(value: Any) -> str | None:
    """Normalize a source timestamp to a UTC ISO-8601 string with a Z suffix."""
    ts = _to_timestamp(value)
    if ts is None:
        return None
    ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_numeric(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def max_updated_at(records: Iterable[TicketRecord]) -> datetime | None:
    """Return the latest soda_updated_at across records as an aware datetime."""
    latest: datetime | None = None
    for record in records:
        if not record.soda_updated_at:
            continue
        updated = datetime.fromisoformat(record.soda_updated_at).astimezone(UTC)
        if latest is None or updated > latest:
            latest = updated
    return latest
