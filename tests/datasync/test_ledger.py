from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from flask_app.datasync.ledger import (
    COMPLETION_COMPLETED,
    COMPLETION_DUPLICATE_HANDLED,
    COMPLETION_FAILED,
    COMPLETION_PERMISSION_DENIED,
    COMPLETION_SKIPPED,
    ChangeLedger,
    is_permission_error,
    merge_action,
)
from flask_app.models import ChangeAction, ChangeRecord, SyncStatus, db

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _rows(entity_type=None):
    statement = select(ChangeRecord).order_by(ChangeRecord.tracker_id)
    if entity_type:
        statement = statement.where(ChangeRecord.entity_type == entity_type)
    return list(db.session.scalars(statement))


def _pending_ids(ledger):
    return ledger.fetch_pending().tracker_ids()


def test_merge_action_delete_wins():
    assert merge_action("create", "update") is ChangeAction.UPDATE
    assert merge_action("update", "delete") is ChangeAction.DELETE
    assert merge_action(ChangeAction.DELETE, ChangeAction.UPDATE) is ChangeAction.DELETE


def test_record_change_coalesces_pending_rows(ledger):
    ledger.record_change("customer", 5, "create", BASE_TIME)
    ledger.record_change("customer", 5, "update", BASE_TIME + timedelta(minutes=1))

    rows = _rows("customer")
    assert len(rows) == 1
    assert rows[0].action is ChangeAction.UPDATE
    assert rows[0].sync_completed == SyncStatus.PENDING.value


def test_record_change_keeps_delete_over_later_update(ledger):
    ledger.record_change("product", 9, "delete", BASE_TIME)
    ledger.record_change("product", 9, "update", BASE_TIME + timedelta(minutes=1))

    rows = _rows("product")
    assert len(rows) == 1
    assert rows[0].action is ChangeAction.DELETE


def test_record_change_merges_into_row_won_by_concurrent_writer(ledger, monkeypatch):
    ledger.record_change("order", 3, "create", BASE_TIME)

    real_pending_row = ledger._pending_row
    calls = []

    def racing_pending_row(entity_type, entity_id):
        calls.append(entity_id)
        if len(calls) == 1:
            return None
        return real_pending_row(entity_type, entity_id)

    monkeypatch.setattr(ledger, "_pending_row", racing_pending_row)
    ledger.record_change("order", 3, "delete", BASE_TIME + timedelta(minutes=1))

    rows = _rows("order")
    assert len(rows) == 1
    assert rows[0].action is ChangeAction.DELETE
    assert len(calls) == 2


def test_track_with_parents_mirrors_sub_record_onto_parent(ledger):
    records = ledger.track_with_parents("customer_address", 7, "update", parent_id=3)

    assert [(record.entity_type, record.entity_id) for record in records] == [
        ("customer_address", 7),
        ("customer", 3),
    ]
    assert ledger.pending_counts() == {"customer": 1, "customer_address": 1}


def test_track_with_parents_ignores_top_level_types(ledger):
    records = ledger.track_with_parents("product", 1, "update", parent_id=99)
    assert len(records) == 1


def test_fetch_pending_orders_oldest_first_and_applies_limit(ledger):
    ledger.record_change("order", 2, "update", BASE_TIME + timedelta(minutes=5))
    ledger.record_change("customer", 1, "create", BASE_TIME)
    ledger.record_change("customer", 4, "update", BASE_TIME + timedelta(minutes=10))

    pending = ledger.fetch_pending()
    assert [change.entity_id for change in pending] == [1, 4, 2]
    assert pending.counts() == {"customer": 2, "order": 1}

    limited = ledger.fetch_pending(limit=2)
    assert len(limited) == 2
    assert {change.entity_id for change in limited} == {1, 2}

    only_orders = ledger.fetch_pending(entity_type="order")
    assert only_orders.entity_types() == ["order"]


def test_mark_completed_retires_rows_in_chunks(ledger):
    for entity_id in range(1, 6):
        ledger.record_change("customer", entity_id, "update", BASE_TIME + timedelta(seconds=entity_id))

    report = ledger.mark_completed(_pending_ids(ledger), chunk_size=2)

    assert report.status == COMPLETION_COMPLETED
    assert report.requested == 5
    assert report.completed == 5
    assert report.chunks == 3
    assert report.retired_everything
    assert ledger.pending_counts() == {}
    assert all(row.synced_at is not None for row in _rows())


def test_mark_completed_is_idempotent(ledger):
    ledger.record_change("customer", 1, "update", BASE_TIME)
    tracker_ids = _pending_ids(ledger)

    first = ledger.mark_completed(tracker_ids)
    second = ledger.mark_completed(tracker_ids)

    assert first.completed == 1
    assert second.completed == 0
    assert second.status == COMPLETION_COMPLETED
    assert len(_rows()) == 1


def test_mark_completed_with_no_ids_is_skipped(ledger):
    report = ledger.mark_completed([])
    assert report.status == COMPLETION_SKIPPED
    assert report.retired_everything


def test_mark_completed_removes_previous_completed_row(ledger):
    ledger.record_change("customer", 1, "create", BASE_TIME)
    ledger.mark_completed(_pending_ids(ledger))
    ledger.record_change("customer", 1, "update", BASE_TIME + timedelta(hours=1))

    report = ledger.mark_completed(_pending_ids(ledger))

    assert report.completed == 1
    rows = _rows("customer")
    assert len(rows) == 1
    assert rows[0].action is ChangeAction.UPDATE
    assert rows[0].sync_completed == SyncStatus.COMPLETED.value


def test_mark_completed_degrades_on_permission_error(ledger, monkeypatch):
    for entity_id in range(1, 6):
        ledger.record_change("customer", entity_id, "update", BASE_TIME + timedelta(seconds=entity_id))

    real_complete = ledger._complete_chunk
    calls = []

    def flaky_complete(chunk):
        calls.append(chunk)
        if len(calls) > 1:
            raise OperationalError("UPDATE datasync_change_tracker", {}, Exception("UPDATE command denied to user"))
        return real_complete(chunk)

    monkeypatch.setattr(ledger, "_complete_chunk", flaky_complete)
    report = ledger.mark_completed(_pending_ids(ledger), chunk_size=2)

    assert report.status == COMPLETION_PERMISSION_DENIED
    assert report.completed == 2
    assert report.chunks == 1
    assert not report.is_failure
    assert "reprocessed on the next run" in report.message
    assert len(calls) == 2
    assert ledger.pending_counts() == {"customer": 3}


def test_mark_completed_treats_uniqueness_race_as_handled(ledger, monkeypatch):
    ledger.record_change("customer", 1, "update", BASE_TIME)

    def racing_complete(chunk):
        raise IntegrityError("UPDATE datasync_change_tracker", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(ledger, "_complete_chunk", racing_complete)
    report = ledger.mark_completed(_pending_ids(ledger))

    assert report.status == COMPLETION_DUPLICATE_HANDLED
    assert not report.is_failure


def test_mark_completed_reports_other_database_failures(ledger, monkeypatch):
    ledger.record_change("customer", 1, "update", BASE_TIME)

    def broken_complete(chunk):
        raise OperationalError("UPDATE datasync_change_tracker", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ledger, "_complete_chunk", broken_complete)
    report = ledger.mark_completed(_pending_ids(ledger))

    assert report.status == COMPLETION_FAILED
    assert report.is_failure
    assert "disk I/O error" in report.message


def test_is_permission_error_recognises_mysql_errno():
    error = OperationalError("UPDATE x", {}, Exception(1142, "UPDATE denied"))
    assert is_permission_error(error)
    assert not is_permission_error(OperationalError("UPDATE x", {}, Exception("deadlock found")))


def test_purge_completed_deletes_old_completed_rows(ledger):
    ledger.record_change("customer", 1, "update", BASE_TIME)
    ledger.record_change("customer", 2, "update", BASE_TIME)
    ledger.record_change("customer", 3, "update", BASE_TIME)
    pending = ledger.fetch_pending()
    ledger.mark_completed(pending.tracker_ids()[:2])

    old_id = pending.tracker_ids()[0]
    db.session.execute(
        update(ChangeRecord)
        .where(ChangeRecord.tracker_id == old_id)
        .values(synced_at=datetime.now(timezone.utc) - timedelta(days=60))
    )
    db.session.commit()

    purged = ledger.purge_completed(timedelta(days=30))

    assert purged == 1
    remaining = {row.entity_id for row in _rows()}
    assert remaining == {2, 3}


def test_ledger_defaults_to_flask_session(app):
    assert ChangeLedger().session is db.session
