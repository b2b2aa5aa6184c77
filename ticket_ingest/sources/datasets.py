from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from ticket_ingest.collectors.exceptions import ConfigError

SYSTEM_FIELDS = (":id", ":created_at", ":updated_at")
NATURAL_KEY = "summons_number"


@dataclass(frozen=True)
class DatasetDescriptor:
    """
    A Socrata dataset feeding the parking_ticket table.

    Attributes:
        dataset_id:  Socrata 4x4 identifier.
        name:        Human readable dataset title.
        fields:      Source columns to $select, system fields included.
        field_map:   Canonical ticket field -> source column. Canonical fields
                     missing from the map are not published by this dataset
                     and stay unset.
    """

    dataset_id: str
    name: str
    fields: tuple[str, ...]
    field_map: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "field_map", MappingProxyType(dict(self.field_map)))
        missing = set(self.field_map.values()) - set(self.fields)
        if missing:
            raise ValueError(
                f"{self.dataset_id}: mapped columns not selected: {sorted(missing)}"
            )

    def source_field(self, canonical_field: str) -> str | None:
        return self.field_map.get(canonical_field)


def _descriptor(dataset_id: str, name: str, field_map: dict[str, str]) -> DatasetDescriptor:
    fields = SYSTEM_FIELDS + (NATURAL_KEY,) + tuple(field_map.values())
    return DatasetDescriptor(
        dataset_id=dataset_id, name=name, fields=fields, field_map=field_map
    )


###############################################################################
#                          NYC PARKING VIOLATIONS                             #
###############################################################################

PARKING_VIOLATIONS_FY2024 = _descriptor(
    dataset_id="pvqr-7yc4",
    name="Parking Violations Issued - Fiscal Year 2024",
    field_map={
        "issue_date": "issue_date",
        "violation_time": "violation_time",
        "violation_code": "violation_code",
        "issuing_agency": "issuing_agency",
        "county": "violation_county",
        "precinct": "violation_precinct",
        "street_name": "street_name",
        "intersecting_street": "intersecting_street",
        "plate_id": "plate_id",
        "registration_state": "registration_state",
        "plate_type": "plate_type",
    },
)

OPEN_PARKING_AND_CAMERA_VIOLATIONS = _descriptor(
    dataset_id="nc67-uf89",
    name="Open Parking and Camera Violations",
    field_map={
        "issue_date": "issue_date",
        "violation_time": "violation_time",
        "violation_desc": "violation",
        "issuing_agency": "issuing_agency",
        "county": "county",
        "precinct": "precinct",
        "fine_amount": "fine_amount",
        "plate_id": "plate",
        "registration_state": "state",
        "plate_type": "license_type",
    },
)

DATASETS: dict[str, DatasetDescriptor] = {
    d.dataset_id: d for d in (PARKING_VIOLATIONS_FY2024, OPEN_PARKING_AND_CAMERA_VIOLATIONS)
}


def get_dataset(dataset_id: str) -> DatasetDescriptor:
    try:
        return DATASETS[dataset_id]
    except KeyError:
        raise ConfigError(
            f"Unknown dataset {dataset_id!r}. Valid options: {', '.join(DATASETS)}"
        ) from None


def resolve_datasets(arg: str) -> list[DatasetDescriptor]:
    """Expand a dataset argument ("all" or a single 4x4 id) into descriptors."""
    if arg == "all":
        return list(DATASETS.values())
    return [get_dataset(arg)]
