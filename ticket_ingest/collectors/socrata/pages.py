from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from ticket_ingest.collectors.socrata.client import SocrataClient
from ticket_ingest.sources.datasets import DatasetDescriptor

BACKFILL_ORDER = ":id ASC"
INCREMENTAL_ORDER = ":updated_at ASC"


@dataclass(frozen=True)
class PageSequence:
    """
    A restartable sequence of raw-record pages for one dataset.

    Each iteration starts a fresh paginate() generator at offset 0, so
    iterating twice requests the same page boundaries.
    """

    client: SocrataClient
    descriptor: DatasetDescriptor
    order_by: str
    where: str | None = None

    def __iter__(self) -> Iterator[list[dict[str, Any]]]:
        return self.client.paginate(
            dataset_id=self.descriptor.dataset_id,
            columns=self.descriptor.fields,
            where=self.where,
            order_by=self.order_by,
        )


def backfill_pages(client: SocrataClient, descriptor: DatasetDescriptor) -> PageSequence:
    """Every row of the dataset, ordered by the stable row identifier."""
    return PageSequence(client, descriptor, order_by=BACKFILL_ORDER)


def incremental_pages(
    client: SocrataClient, descriptor: DatasetDescriptor, cursor: str
) -> PageSequence:
    """Rows updated strictly after `cursor`, ordered by update time."""
    return PageSequence(
        client,
        descriptor,
        order_by=INCREMENTAL_ORDER,
        where=f":updated_at > '{cursor}'",
    )
