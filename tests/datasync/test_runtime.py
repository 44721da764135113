from datetime import datetime

import pytest
from sqlalchemy import select

from flask_app.datasync.adapters import DatabaseAdapter
from flask_app.datasync.adapters.source_schema import customer_table, order_item_table, order_table
from flask_app.datasync.errors import AdapterNotFound, ConfigurationError
from flask_app.datasync.lock import LockUnavailable
from flask_app.datasync.runtime import (
    build_adapter,
    build_incremental_adapter,
    build_lock,
    load_source_credentials,
    run_incremental,
)
from flask_app.models import Customer, SalesOrder, db


def _seed_source(rows_by_table):
    with db.engines["source"].begin() as connection:
        for table, rows in rows_by_table:
            connection.execute(table.insert(), rows)


def test_credentials_fall_back_to_env_file(app, tmp_path):
    env_file = tmp_path / ".env.local"
    env_file.write_text(
        "DATASYNC_LIVE_HOST=db.internal\nDATASYNC_LIVE_DB=store\nDATASYNC_LIVE_USER=reader\nDATASYNC_LIVE_PASS=s3cret\n"
    )
    app.config["DATASYNC_ENV_FILE"] = str(env_file)

    credentials = load_source_credentials(app, {"username": "override"})

    assert credentials.is_complete
    assert credentials.host == "db.internal"
    assert credentials.database == "store"
    assert credentials.username == "override"
    assert credentials.password == "s3cret"


def test_partial_credentials_are_rejected(app):
    with pytest.raises(ConfigurationError) as excinfo:
        load_source_credentials(app, {"host": "db.internal"})
    assert "--db-name" in str(excinfo.value)


def test_no_credentials_use_source_bind(app):
    credentials = load_source_credentials(app, {})
    assert credentials.is_empty

    adapter = build_incremental_adapter(app, credentials)
    assert isinstance(adapter, DatabaseAdapter)
    assert adapter.engine is db.engines["source"]


def test_build_adapter_respects_enabled_codes(app):
    app.config["DATASYNC_ADAPTERS"] = ("csv",)
    with pytest.raises(AdapterNotFound):
        build_adapter(app, "database")


def test_run_incremental_end_to_end_on_source_bind(app, ledger):
    _seed_source(
        [
            (
                customer_table,
                [
                    {
                        "entity_id": 10,
                        "website_id": 1,
                        "email": "ada@example.com",
                        "firstname": "Ada",
                        "lastname": "Lovelace",
                        "created_at": datetime(2024, 1, 1),
                    }
                ],
            ),
            (
                order_table,
                [
                    {
                        "entity_id": 1,
                        "increment_id": "100000001",
                        "customer_id": 10,
                        "customer_email": "ada@example.com",
                        "grand_total": 25,
                        "base_grand_total": 25,
                        "created_at": datetime(2024, 1, 2),
                    }
                ],
            ),
            (
                order_item_table,
                [{"item_id": 1, "order_id": 1, "sku": "SKU-1", "name": "Widget", "qty_ordered": 1, "price": 25}],
            ),
        ]
    )
    ledger.record_change("order", 1, "create")
    ledger.record_change("customer", 10, "create")

    report = run_incremental(app, mark_completed=True)

    assert report.synced == 2
    assert report.exit_code == 0
    assert ledger.pending_counts() == {}
    customer = db.session.scalar(select(Customer))
    order = db.session.scalar(select(SalesOrder))
    assert order.customer_id == customer.id
    assert [item.sku for item in order.items] == ["SKU-1"]


def test_run_incremental_respects_lock(app):
    with build_lock(app, command="other"):
        with pytest.raises(LockUnavailable):
            run_incremental(app)

    assert run_incremental(app, use_lock=False).pending == {}
