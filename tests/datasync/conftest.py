from __future__ import annotations

from typing import Any, Iterable, Iterator

import pytest

from flask_app.datasync.adapters.base import SOURCE_ID_FIELDS, SourceAdapter, SyncFilters
from flask_app.datasync.delta import DeltaStateStore
from flask_app.datasync.identity import IdentityRegistry
from flask_app.datasync.ledger import ChangeLedger
from flask_app.models import db


class MemoryAdapter(SourceAdapter):
    """Serves records from dictionaries keyed by entity type."""

    code = "memory"
    label = "In-memory"

    def __init__(self, records: dict[str, list[dict[str, Any]]] | None = None) -> None:
        super().__init__()
        self.records = {entity_type: list(rows) for entity_type, rows in (records or {}).items()}
        self.read_calls: list[tuple[str, tuple[int, ...] | None]] = []
        self.existing_calls: list[tuple[str, tuple[int, ...]]] = []
        self.fail_reads_over: int | None = None
        self.configure()

    def validate(self) -> bool:
        return True

    def read(self, entity_type: str, filters: SyncFilters | None = None) -> Iterator[dict[str, Any]]:
        filters = SyncFilters.from_mapping(filters)
        self.read_calls.append((entity_type, filters.entity_ids))
        if (
            self.fail_reads_over is not None
            and filters.entity_ids is not None
            and len(filters.entity_ids) > self.fail_reads_over
        ):
            raise OSError("source connection reset")
        for record in self.records.get(entity_type, []):
            if filters.matches(record, id_field=SOURCE_ID_FIELDS.get(entity_type, "entity_id")):
                yield dict(record)

    def existing_ids(self, entity_type: str, ids: Iterable[int]) -> set[int]:
        wanted = tuple(sorted({int(value) for value in ids}))
        self.existing_calls.append((entity_type, wanted))
        id_field = SOURCE_ID_FIELDS.get(entity_type, "entity_id")
        present = {int(record[id_field]) for record in self.records.get(entity_type, [])}
        return {value for value in wanted if value in present}


@pytest.fixture
def memory_adapter_factory():
    def _factory(records: dict[str, list[dict[str, Any]]] | None = None) -> MemoryAdapter:
        return MemoryAdapter(records)

    return _factory


@pytest.fixture
def ledger(app):
    return ChangeLedger(db.session)


@pytest.fixture
def registry(app):
    return IdentityRegistry(db.session)


@pytest.fixture
def delta_store(app):
    return DeltaStateStore(db.session)


@pytest.fixture
def customer_record():
    def _record(entity_id: int, email: str | None = None, **extra: Any) -> dict[str, Any]:
        record = {
            "entity_id": entity_id,
            "email": email or f"customer{entity_id}@example.com",
            "firstname": "Ada",
            "lastname": f"Customer{entity_id}",
        }
        record.update(extra)
        return record

    return _record


@pytest.fixture
def order_record():
    def _record(entity_id: int, customer_id: int | None, **extra: Any) -> dict[str, Any]:
        record = {
            "entity_id": entity_id,
            "increment_id": f"1000000{entity_id}",
            "customer_id": customer_id,
            "customer_email": "buyer@example.com",
            "grand_total": "42.50",
            "base_grand_total": "42.50",
            "items": [{"sku": "SKU-1", "name": "Widget", "qty_ordered": 1, "price": "42.50"}],
        }
        record.update(extra)
        return record

    return _record
