from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from ticket_ingest.collectors.socrata.client import SocrataClient
from ticket_ingest.collectors.socrata.collector import TicketCollector
from ticket_ingest.db.tickets import TableStats, dedupe_by_key
from ticket_ingest.sources.mapper import TicketRecord
from ticket_ingest.tracking.cursor_store import EPOCH

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeTicketWriter:
    """
    In-memory stand-in for TicketWriter with the same conflict rule:
    an existing row is only rewritten when soda_updated_at differs.
    """

    def __init__(self):
        self.rows: dict[str, TicketRecord] = {}
        self.calls: list[list[TicketRecord]] = []
        self.fail_with: Exception | None = None

    def write(self, records):
        self.calls.append(list(records))
        if self.fail_with is not None:
            raise self.fail_with
        changed = 0
        for record in dedupe_by_key(records):
            existing = self.rows.get(record.summons_number)
            if existing is None or existing.soda_updated_at != record.soda_updated_at:
                self.rows[record.summons_number] = record
                changed += 1
        return changed

    def stats(self):
        by_dataset: dict[str, int] = {}
        for record in self.rows.values():
            by_dataset[record.source_dataset] = by_dataset.get(record.source_dataset, 0) + 1
        return TableStats(total_rows=len(self.rows), by_dataset=by_dataset)


class FakeCursorStore:
    def __init__(self):
        self.cursors: dict[str, datetime] = {}
        self.advances: list[tuple[str, datetime]] = []

    def read(self, dataset_id):
        return self.cursors.setdefault(dataset_id, EPOCH)

    def advance(self, dataset_id, watermark):
        self.advances.append((dataset_id, watermark))
        self.cursors[dataset_id] = watermark


class FakeSocrataApi:
    """
    Serves a fixed list of rows through SocrataClient.paginate semantics,
    honoring the :updated_at > cursor filter and $offset/$limit.
    """

    def __init__(self, rows: list[dict], page_size: int):
        self.rows = rows
        self.page_size = page_size
        self.requests: list[dict] = []

    def paginate(self, dataset_id, columns=None, where=None, order_by=":id ASC"):
        self.requests.append({"dataset_id": dataset_id, "where": where, "order_by": order_by})
        rows = self.rows
        if where:
            cursor = where.split("'")[1]
            cutoff = datetime.fromisoformat(cursor)
            rows = [r for r in rows if datetime.fromisoformat(r[":updated_at"]) > cutoff]
        key = ":updated_at" if order_by.startswith(":updated_at") else ":id"
        rows = sorted(rows, key=lambda r: r[key])
        offset = 0
        while True:
            page = rows[offset : offset + self.page_size]
            if not page:
                break
            yield page
            if len(page) < self.page_size:
                break
            offset += self.page_size

    def close(self):
        pass


def raw_ticket(summons: str | None, updated_at: str = "2024-03-01T10:00:00.000Z", **extra):
    row = {
        ":id": f"row-{summons}",
        ":created_at": "2024-01-01T00:00:00.000Z",
        ":updated_at": updated_at,
        "issue_date": "2024-02-15T00:00:00.000",
        "violation_time": "0932A",
        "violation_code": "21",
        "issuing_agency": "T",
        "violation_county": "NY",
        "violation_precinct": "14",
    }
    if summons is not None:
        row["summons_number"] = summons
    row.update(extra)
    return row


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_raw():
    return raw_ticket


@pytest.fixture
def writer():
    return FakeTicketWriter()


@pytest.fixture
def cursors():
    return FakeCursorStore()


@pytest.fixture
def make_collector(writer, cursors):
    """Build a TicketCollector over a FakeSocrataApi serving `rows`."""

    def _make(rows: list[dict], page_size: int = 1000):
        api = FakeSocrataApi(rows, page_size)
        return TicketCollector(client=api, writer=writer, cursors=cursors), api

    return _make


@pytest.fixture
def mock_session():
    return MagicMock()


@pytest.fixture
def client(mock_session):
    """SocrataClient with a mocked session and a recording, non-blocking sleep."""
    sleeps: list[float] = []
    c = SocrataClient(page_size=2, page_delay=0.1, sleep=sleeps.append)
    c._session = mock_session
    c.sleeps = sleeps
    return c


def make_response(status: int = 200, json_data=None, headers=None, text: str = ""):
    resp = MagicMock()
    resp.status_code = status
    resp.reason = "Test"
    resp.headers = headers or {}
    resp.text = text
    resp.json.return_value = json_data if json_data is not None else []
    return resp


@pytest.fixture
def response():
    return make_response
