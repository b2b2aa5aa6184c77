from __future__ import annotations

from datetime import UTC, datetime

import pytest

from ticket_ingest.sources.datasets import (
    OPEN_PARKING_AND_CAMERA_VIOLATIONS,
    PARKING_VIOLATIONS_FY2024,
)
from ticket_ingest.sources.mapper import (
    TICKET_COLUMNS,
    MappingRejection,
    TicketRecord,
    map_row,
    max_updated_at,
    parse_date,
    parse_numeric,
    parse_timestamp,
)

FY2024_RAW = {
    ":id": "row-abc",
    ":created_at": "2024-01-10T08:00:00.000Z",
    ":updated_at": "2024-03-01T10:15:30.123Z",
    "summons_number": "1234567890",
    "issue_date": "2024-02-15T00:00:00.000",
    "violation_time": "0932A",
    "violation_code": "21",
    "issuing_agency": "T",
    "violation_county": "NY",
    "violation_precinct": "14",
    "street_name": "BROADWAY",
    "intersecting_street": "W 34TH ST",
    "plate_id": "ABC1234",
    "registration_state": "NY",
    "plate_type": "PAS",
}

OPEN_VIOLATIONS_RAW = {
    ":id": "row-def",
    ":created_at": "2024-01-10T08:00:00.000Z",
    ":updated_at": "2024-03-05T00:00:00.000Z",
    "summons_number": "9876543210",
    "issue_date": "02/15/2024",
    "violation_time": "1145P",
    "violation": "NO PARKING-STREET CLEANING",
    "issuing_agency": "TRAFFIC",
    "county": "K",
    "precinct": "078",
    "plate": "XYZ987",
    "state": "NJ",
    "license_type": "COM",
    "fine_amount": "65",
}


class TestMapRow:
    def test_maps_fy2024_fields(self):
        record = map_row(PARKING_VIOLATIONS_FY2024, FY2024_RAW)

        assert isinstance(record, TicketRecord)
        assert record.summons_number == "1234567890"
        assert record.source_dataset == "pvqr-7yc4"
        assert record.issue_date == "2024-02-15"
        assert record.county == "NY"
        assert record.precinct == "14"
        assert record.street_name == "BROADWAY"
        assert record.soda_row_id == "row-abc"
        assert record.soda_updated_at == "2024-03-01T10:15:30.123000Z"

    def test_fields_absent_from_dataset_stay_unset(self):
        record = map_row(PARKING_VIOLATIONS_FY2024, FY2024_RAW)
        assert record.violation_desc is None
        assert record.fine_amount is None

        other = map_row(OPEN_PARKING_AND_CAMERA_VIOLATIONS, OPEN_VIOLATIONS_RAW)
        assert other.violation_code is None
        assert other.street_name is None
        assert other.intersecting_street is None

    def test_maps_open_violations_renamed_fields(self):
        record = map_row(OPEN_PARKING_AND_CAMERA_VIOLATIONS, OPEN_VIOLATIONS_RAW)

        assert record.source_dataset == "nc67-uf89"
        assert record.violation_desc == "NO PARKING-STREET CLEANING"
        assert record.plate_id == "XYZ987"
        assert record.registration_state == "NJ"
        assert record.plate_type == "COM"
        assert record.fine_amount == 65.0
        assert record.issue_date == "2024-02-15"

    @pytest.mark.parametrize("summons", [None, "", "   "])
    def test_rejects_missing_natural_key(self, summons):
        raw = dict(FY2024_RAW)
        if summons is None:
            del raw["summons_number"]
        else:
            raw["summons_number"] = summons

        result = map_row(PARKING_VIOLATIONS_FY2024, raw)

        assert isinstance(result, MappingRejection)
        assert result.dataset_id == "pvqr-7yc4"
        assert "summons_number" in result.reason

    def test_is_deterministic(self):
        first = map_row(OPEN_PARKING_AND_CAMERA_VIOLATIONS, OPEN_VIOLATIONS_RAW)
        second = map_row(OPEN_PARKING_AND_CAMERA_VIOLATIONS, dict(OPEN_VIOLATIONS_RAW))
        assert first == second
        assert repr(first) == repr(second)

    def test_malformed_values_do_not_reject(self):
        raw = dict(OPEN_VIOLATIONS_RAW, issue_date="not a date", fine_amount="n/a")
        record = map_row(OPEN_PARKING_AND_CAMERA_VIOLATIONS, raw)

        assert isinstance(record, TicketRecord)
        assert record.issue_date is None
        assert record.fine_amount is None

    def test_numeric_issue_date_stays_unset(self):
        raw = dict(FY2024_RAW, issue_date=20240215)
        record = map_row(PARKING_VIOLATIONS_FY2024, raw)
        assert record.issue_date is None

    def test_empty_strings_become_none(self):
        raw = dict(FY2024_RAW, street_name="", plate_type=None)
        record = map_row(PARKING_VIOLATIONS_FY2024, raw)
        assert record.street_name is None
        assert record.plate_type is None

    def test_as_row_covers_every_column(self):
        record = map_row(PARKING_VIOLATIONS_FY2024, FY2024_RAW)
        assert tuple(record.as_row()) == TICKET_COLUMNS


class TestParsers:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2024-02-15T00:00:00.000", "2024-02-15"),
            ("2024-02-15", "2024-02-15"),
            ("02/15/2024", "2024-02-15"),
            ("2024-02-15T23:30:00-05:00", "2024-02-16"),
            ("", None),
            (None, None),
            ("garbage", None),
            (20240215, None),
            (1.5, None),
        ],
    )
    def test_parse_date(self, value, expected):
        assert parse_date(value) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [("65", 65.0), ("12.5", 12.5), (40, 40.0), ("", None), (None, None), ("abc", None), ("NaN", None)],
    )
    def test_parse_numeric(self, value, expected):
        assert parse_numeric(value) == expected

    def test_parse_timestamp_normalizes_to_utc(self):
        assert parse_timestamp("2024-03-01T05:00:00-05:00") == "2024-03-01T10:00:00.000000Z"
        assert parse_timestamp("2024-03-01T10:00:00") == "2024-03-01T10:00:00.000000Z"
        assert parse_timestamp("nope") is None


class TestMaxUpdatedAt:
    def test_returns_latest(self):
        records = [
            TicketRecord("A", "d", soda_updated_at="2024-03-01T10:00:00.000000Z"),
            TicketRecord("B", "d", soda_updated_at="2024-03-05T00:00:00.000000Z"),
            TicketRecord("C", "d", soda_updated_at=None),
        ]
        assert max_updated_at(records) == datetime(2024, 3, 5, tzinfo=UTC)

    def test_empty(self):
        assert max_updated_at([]) is None
