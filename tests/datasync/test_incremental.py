from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from flask_app.datasync.errors import ConfigurationError
from flask_app.datasync.handlers.customer import CustomerHandler
from flask_app.datasync.identity import IdentityRegistry
from flask_app.datasync.incremental import (
    MODE_BATCH,
    MODE_INDIVIDUAL,
    IncrementalService,
    apply_stock_mode,
)
from flask_app.datasync.ledger import COMPLETION_PERMISSION_DENIED
from flask_app.datasync.lock import LockUnavailable, SyncLock
from flask_app.models import Customer, SalesOrder, StockItem, db

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _track(ledger, *changes):
    for offset, (entity_type, entity_id, action) in enumerate(changes):
        ledger.record_change(entity_type, entity_id, action, BASE_TIME + timedelta(seconds=offset))


def _service(adapter, **options):
    return IncrementalService(adapter, source_system="live", session=db.session, **options)


def _product(entity_id, sku=None):
    return {"entity_id": entity_id, "sku": sku or f"SKU-{entity_id}", "name": f"Widget {entity_id}", "price": "10.00"}


def test_customer_then_order_in_one_run(ledger, memory_adapter_factory, customer_record, order_record):
    # The order change is older than the customer change; dispatch order still puts customers first.
    _track(ledger, ("order", 1, "create"), ("customer", 10, "create"))
    adapter = memory_adapter_factory({"customer": [customer_record(10)], "order": [order_record(1, 10)]})

    report = _service(adapter).run(mark_completed=True)

    assert report.synced == 2
    assert report.errors == 0
    assert report.exit_code == 0
    assert report.completion.completed == 2
    assert ledger.pending_counts() == {}
    assert [call[0] for call in adapter.read_calls] == ["customer", "order"]

    order = db.session.scalar(select(SalesOrder))
    assert order.customer_id == IdentityRegistry(db.session).resolve("live", "customer", 10)


def test_order_waits_for_its_customer_across_runs(ledger, memory_adapter_factory, customer_record, order_record):
    _track(ledger, ("customer", 7, "create"), ("order", 55, "create"))
    adapter = memory_adapter_factory({"customer": [customer_record(7)], "order": [order_record(55, 7)]})

    first = _service(adapter).run(entity_type="order", mark_completed=True)

    order_report = first.for_type("order")
    assert order_report.skipped == 1
    assert order_report.synced == 0
    assert any("Cannot resolve customer_id" in message for message in order_report.messages)
    assert first.completion is None
    assert ledger.pending_counts() == {"customer": 1, "order": 1}
    assert db.session.scalar(select(SalesOrder)) is None

    second = _service(adapter).run(mark_completed=True)

    assert second.synced == 2
    assert second.completion.completed == 2
    assert ledger.pending_counts() == {}
    order = db.session.scalar(select(SalesOrder))
    assert order.customer_id == IdentityRegistry(db.session).resolve("live", "customer", 7)


def test_deletes_and_orphaned_stock_are_retired(ledger, memory_adapter_factory):
    _track(
        ledger,
        ("stock", 5, "update"),
        ("product", 7, "delete"),
        ("stock", 7, "update"),
        ("product", 6, "update"),
        ("stock", 6, "update"),
    )
    adapter = memory_adapter_factory(
        {"product": [_product(6)], "stock": [{"product_id": 6, "qty": "4", "is_in_stock": "1"}]}
    )

    report = _service(adapter).run(mark_completed=True)

    assert report.for_type("stock").retired == 2
    assert report.for_type("product").retired == 1
    assert report.for_type("product").synced == 1
    assert report.for_type("stock").synced == 1
    assert adapter.existing_calls == [("product", (5, 6))]
    assert ledger.pending_counts() == {}

    stock = db.session.scalar(select(StockItem))
    assert stock.product_id == IdentityRegistry(db.session).resolve("live", "product", 6)
    assert stock.is_in_stock is True


def test_pre_pass_reports_retirement_reasons(ledger, memory_adapter_factory):
    _track(ledger, ("product", 7, "delete"), ("stock", 7, "update"), ("stock", 8, "update"))
    adapter = memory_adapter_factory({"product": [_product(8)]})
    service = _service(adapter)

    pending = ledger.fetch_pending()
    retired = service.retire_deletes_and_orphans(pending)
    by_entity = {(change.entity_type, change.entity_id): retired.get(change.tracker_id) for change in pending}

    assert by_entity == {
        ("product", 7): "delete",
        ("stock", 7): "product deleted",
        ("stock", 8): None,
    }


def test_validation_skips_stay_pending(ledger, memory_adapter_factory, customer_record):
    _track(ledger, ("customer", 1, "update"), ("customer", 2, "update"))
    adapter = memory_adapter_factory({"customer": [customer_record(1, email="broken"), customer_record(2)]})

    report = _service(adapter).run(mark_completed=True)

    customer_report = report.for_type("customer")
    assert customer_report.synced == 1
    assert customer_report.skipped == 1
    assert any("Invalid email" in message for message in customer_report.messages)
    assert report.exit_code == 0
    assert [change.entity_id for change in ledger.fetch_pending()] == [1]


def test_records_missing_at_source_stay_pending(ledger, memory_adapter_factory, customer_record):
    _track(ledger, ("customer", 1, "update"), ("customer", 99, "update"))
    adapter = memory_adapter_factory({"customer": [customer_record(1)]})

    report = _service(adapter).run(mark_completed=True)

    assert report.missing == 1
    assert report.synced == 1
    assert [change.entity_id for change in ledger.fetch_pending()] == [99]


def test_record_errors_fail_the_run_and_stay_pending(ledger, memory_adapter_factory, customer_record, monkeypatch):
    _track(ledger, ("customer", 1, "update"))
    adapter = memory_adapter_factory({"customer": [customer_record(1)]})

    def exploding_import(self, record, registry):
        raise RuntimeError("destination rejected the row")

    monkeypatch.setattr(CustomerHandler, "import_record", exploding_import)
    report = _service(adapter).run(mark_completed=True)

    assert report.errors == 1
    assert report.exit_code == 1
    assert report.completion is None
    assert ledger.pending_counts() == {"customer": 1}


def test_batch_failure_falls_back_to_individual_sync(ledger, memory_adapter_factory, customer_record):
    _track(ledger, ("customer", 1, "update"), ("customer", 2, "update"))
    adapter = memory_adapter_factory({"customer": [customer_record(1), customer_record(2)]})
    adapter.fail_reads_over = 1
    messages = []

    report = _service(adapter, progress_callback=messages.append).run(mark_completed=True)

    customer_report = report.for_type("customer")
    assert customer_report.mode == MODE_INDIVIDUAL
    assert customer_report.synced == 2
    assert ledger.pending_counts() == {}
    assert [call[1] for call in adapter.read_calls] == [(1, 2), (1,), (2,)]
    assert any("falling back to individual sync" in message for message in messages)


def test_individual_failures_are_counted_per_record(ledger, memory_adapter_factory, customer_record):
    _track(ledger, ("customer", 1, "update"), ("customer", 2, "update"))
    adapter = memory_adapter_factory({"customer": [customer_record(1), customer_record(2)]})
    adapter.fail_reads_over = 0

    report = _service(adapter).run(mark_completed=True)

    assert report.for_type("customer").errors == 2
    assert report.exit_code == 1
    assert ledger.pending_counts() == {"customer": 2}


def test_batch_mode_used_when_source_is_healthy(ledger, memory_adapter_factory, customer_record):
    _track(ledger, ("customer", 1, "update"), ("customer", 2, "update"))
    adapter = memory_adapter_factory({"customer": [customer_record(1), customer_record(2)]})

    report = _service(adapter).run()

    assert report.for_type("customer").mode == MODE_BATCH
    assert len(adapter.read_calls) == 1
    assert report.completion is None
    assert ledger.pending_counts() == {"customer": 2}


def test_stock_modes(ledger, memory_adapter_factory, customer_record):
    _track(ledger, ("customer", 1, "update"), ("stock", 6, "update"))
    adapter = memory_adapter_factory({"customer": [customer_record(1)], "product": [_product(6)]})

    excluded = _service(adapter).run(mark_completed=True, stock_mode="exclude")
    assert excluded.pending == {"customer": 1}
    assert ledger.pending_counts() == {"stock": 1}

    only = apply_stock_mode(ledger.fetch_pending(), "only")
    assert only.entity_types() == ["stock"]


def test_dry_run_plans_and_retires_nothing(ledger, memory_adapter_factory, customer_record):
    _track(ledger, ("customer", 1, "create"), ("product", 3, "delete"))
    adapter = memory_adapter_factory({"customer": [customer_record(1)]})

    report = _service(adapter).run(mark_completed=True, dry_run=True)

    assert report.dry_run
    assert report.planned == 1
    assert report.synced == 0
    assert report.completion is None
    assert report.summary().startswith("[DRY RUN]")
    assert db.session.scalar(select(Customer)) is None
    assert ledger.pending_counts() == {"customer": 1, "product": 1}


def test_sub_records_are_retired_with_their_parent(ledger, memory_adapter_factory, customer_record):
    ledger.track_with_parents("customer_address", 30, "update", parent_id=1, occurred_at=BASE_TIME)
    adapter = memory_adapter_factory({"customer": [customer_record(1)]})

    report = _service(adapter).run(mark_completed=True)

    assert report.for_type("customer_address").retired == 1
    assert report.for_type("customer").synced == 1
    assert ledger.pending_counts() == {}


def test_unknown_entity_types_stay_pending(ledger, memory_adapter_factory):
    _track(ledger, ("wishlist", 1, "update"))

    report = _service(memory_adapter_factory()).run(mark_completed=True)

    assert report.synced == 0
    assert ledger.pending_counts() == {"wishlist": 1}


def test_empty_ledger(ledger, memory_adapter_factory):
    messages = []
    report = _service(memory_adapter_factory(), progress_callback=messages.append).run(mark_completed=True)

    assert report.pending == {}
    assert report.types == {}
    assert messages == ["No pending changes to sync."]


def test_limit_and_entity_filter(ledger, memory_adapter_factory, customer_record, order_record):
    _track(ledger, ("customer", 1, "update"), ("customer", 2, "update"), ("order", 5, "update"))
    adapter = memory_adapter_factory({"customer": [customer_record(1), customer_record(2)]})

    report = _service(adapter).run(entity_type="customer", limit=1, mark_completed=True)

    assert report.pending == {"customer": 1}
    assert ledger.pending_counts() == {"customer": 1, "order": 1}


def test_permission_denied_completion_is_not_fatal(ledger, memory_adapter_factory, customer_record, monkeypatch):
    _track(ledger, ("customer", 1, "update"))
    adapter = memory_adapter_factory({"customer": [customer_record(1)]})

    def denied(chunk):
        raise OperationalError("UPDATE datasync_change_tracker", {}, Exception("UPDATE command denied to user"))

    monkeypatch.setattr(ledger, "_complete_chunk", denied)
    report = _service(adapter, ledger=ledger).run(mark_completed=True)

    assert report.synced == 1
    assert report.completion_status == COMPLETION_PERMISSION_DENIED
    assert report.exit_code == 0
    assert report.to_dict()["completion"]["status"] == COMPLETION_PERMISSION_DENIED


def test_invalid_run_options(memory_adapter_factory):
    service = _service(memory_adapter_factory())

    with pytest.raises(ConfigurationError):
        service.run(entity_type="wishlist")
    with pytest.raises(ConfigurationError):
        service.run(stock_mode="sometimes")


def test_run_locked_rejects_concurrent_run(ledger, memory_adapter_factory, tmp_path):
    path = tmp_path / "incremental.lock"
    service = _service(memory_adapter_factory())

    with SyncLock(path, command="other run"):
        with pytest.raises(LockUnavailable):
            service.run_locked(SyncLock(path))

    report = service.run_locked(SyncLock(path))
    assert report.pending == {}
