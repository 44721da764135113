import json
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock, patch

from sqlalchemy import func, select

from flask_app.datasync import init_datasync
from flask_app.datasync.adapters.source_schema import product_table, stock_table
from flask_app.datasync.delta import DeltaStateStore
from flask_app.datasync.identity import IdentityRegistry
from flask_app.datasync.ledger import ChangeLedger
from flask_app.datasync.runtime import build_lock
from flask_app.models import ChangeRecord, Customer, Product, ProductLink, RegistryMapping, StockItem, db


def _json_payload(output: str):
    """The indented JSON document printed after any progress lines."""
    lines = output.splitlines()
    start = next(index for index, line in enumerate(lines) if line in ("{", "["))
    return json.loads("\n".join(lines[start:]))


def _write_customers(tmp_path: Path, *rows: str) -> Path:
    csv_file = tmp_path / "customers.csv"
    csv_file.write_text("entity_id,email,firstname,lastname\n" + "".join(rows), encoding="utf-8")
    return csv_file


def test_group_lists_enabled_adapters(runner):
    result = runner.invoke(args=["datasync"])

    assert result.exit_code == 0, result.output
    assert "Enabled adapters:" in result.output
    assert "  - csv" in result.output


def test_disabled_group_refuses_commands(app):
    app.config["DATASYNC_ENABLED"] = False
    init_datasync(app)

    result = app.test_cli_runner().invoke(args=["datasync"])

    assert result.exit_code == 1
    assert "DATASYNC_ENABLED=false" in result.output
    assert app.extensions["datasync"]["enabled"] is False


def test_sync_csv_with_summary_json(runner, tmp_path):
    csv_file = _write_customers(
        tmp_path,
        "1,ada@example.com,Ada,Lovelace\n",
        "2,grace@example.com,Grace,Hopper\n",
    )

    result = runner.invoke(args=["datasync", "sync", "customer", "--file", str(csv_file), "--summary-json"])

    assert result.exit_code == 0, result.output
    payload = _json_payload(result.output)
    assert payload["created"] == 2
    assert payload["source_system"] == "live"
    db.session.expire_all()
    assert db.session.scalar(select(func.count(Customer.id))) == 2


def test_sync_exits_non_zero_on_record_errors(runner, tmp_path):
    csv_file = _write_customers(tmp_path, "1,not-an-email,Ada,Lovelace\n")

    result = runner.invoke(args=["datasync", "sync", "customer", "--file", str(csv_file)])

    assert result.exit_code == 1
    assert "Invalid email" in result.output


def test_sync_missing_file_is_a_click_error(runner, tmp_path):
    result = runner.invoke(args=["datasync", "sync", "customer", "--file", str(tmp_path / "missing.csv")])

    assert result.exit_code == 1
    assert "Source file not found" in result.output


def test_sync_rejects_disabled_adapter(app, runner, tmp_path):
    app.config["DATASYNC_ADAPTERS"] = ("database",)
    csv_file = _write_customers(tmp_path, "1,ada@example.com,Ada,Lovelace\n")

    result = runner.invoke(args=["datasync", "sync", "customer", "--file", str(csv_file)])

    assert result.exit_code == 1
    assert "csv" in result.output


def test_incremental_summary_json_on_empty_ledger(runner):
    result = runner.invoke(args=["datasync", "incremental", "--mark-synced", "--summary-json"])

    assert result.exit_code == 0, result.output
    assert "No pending changes to sync." in result.output
    payload = _json_payload(result.output)
    assert payload["pending"] == {}
    assert payload["exit_code"] == 0


def test_incremental_reports_lock_contention(app, runner):
    with build_lock(app, command="flask datasync incremental"):
        result = runner.invoke(args=["datasync", "incremental"])

    assert result.exit_code == 1
    assert "Another incremental sync is already running" in result.output


def test_incremental_rejects_partial_credentials(runner):
    result = runner.invoke(args=["datasync", "incremental", "--db-host", "db.internal"])

    assert result.exit_code == 1
    assert "--db-name" in result.output


def test_incremental_queue_sends_task(runner):
    async_result = Mock()
    async_result.id = "celery-task-123"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("flask_app.datasync.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["datasync", "incremental", "--queue", "--entity", "order", "--mark-synced"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip().splitlines()[-1])
    assert payload["status"] == "queued"
    assert payload["task_id"] == "celery-task-123"
    assert payload["entity_type"] == "order"
    celery_app.send_task.assert_called_once()
    args, kwargs = celery_app.send_task.call_args
    assert args == ("datasync.incremental",)
    assert kwargs["kwargs"]["mark_completed"] is True


def test_incremental_queue_rejects_credentials(runner):
    with patch("flask_app.datasync.cli._resolve_celery") as resolve:
        result = runner.invoke(args=["datasync", "incremental", "--queue", "--db-name", "store"])

    assert result.exit_code == 1
    assert "--db-*" in result.output
    resolve.assert_not_called()


def _seed_source_stock(*rows):
    with db.engines["source"].begin() as connection:
        connection.execute(product_table.insert(), [{"entity_id": entity_id, "sku": sku} for entity_id, sku, _ in rows])
        connection.execute(
            stock_table.insert(),
            [{"product_id": entity_id, "qty": qty, "is_in_stock": qty > 0} for entity_id, _, qty in rows],
        )


def test_stock_creates_missing_rows_only(runner):
    _seed_source_stock((1, "A-1", 5), (2, "A-2", 3), (3, "B-1", 7))
    stocked = Product(sku="A-1", name="A-1")
    unstocked = Product(sku="A-2", name="A-2")
    db.session.add_all([stocked, unstocked])
    db.session.flush()
    db.session.add(StockItem(product_id=stocked.id, qty=Decimal("1"), is_in_stock=True))
    db.session.commit()

    result = runner.invoke(args=["datasync", "stock", "--missing-only", "--summary-json"])

    assert result.exit_code == 0, result.output
    assert "Found 3 stock items in source" in result.output
    payload = _json_payload(result.output)
    assert (payload["created"], payload["updated"], payload["skipped"], payload["not_found"]) == (1, 0, 1, 1)
    db.session.expire_all()
    quantities = dict(db.session.execute(select(Product.sku, StockItem.qty).join(StockItem)).all())
    assert quantities == {"A-1": Decimal("1"), "A-2": Decimal("3")}


def test_stock_dry_run_with_sku_pattern(runner):
    _seed_source_stock((1, "A-1", 5), (2, "B-1", 7))
    product = Product(sku="A-1", name="A-1")
    db.session.add_all([product, Product(sku="B-1", name="B-1")])
    db.session.flush()
    db.session.add(StockItem(product_id=product.id, qty=Decimal("1"), is_in_stock=True))
    db.session.commit()

    result = runner.invoke(args=["datasync", "stock", "--sku", "A%", "--dry-run", "--summary-json"])

    assert result.exit_code == 0, result.output
    assert "DRY RUN - no changes will be made" in result.output
    payload = _json_payload(result.output)
    assert payload["total"] == 1
    assert payload["updated"] == 1
    db.session.expire_all()
    assert db.session.scalar(select(StockItem.qty)) == Decimal("1")
    assert db.session.scalar(select(func.count(StockItem.id))) == 1


def test_stock_rejects_partial_credentials(runner):
    result = runner.invoke(args=["datasync", "stock", "--db-name", "store"])

    assert result.exit_code == 1
    assert "--db-name" in result.output


def test_sync_auto_links_configurables(runner, tmp_path):
    csv_file = tmp_path / "products.csv"
    csv_file.write_text(
        "entity_id,sku,name,type_id,attribute_set\n"
        "1,TEE,Tee,configurable,Shirts\n"
        "2,TEE-S,Tee S,simple,Shirts\n"
        "3,MUG,Mug,simple,Kitchen\n",
        encoding="utf-8",
    )

    result = runner.invoke(
        args=["datasync", "sync", "product", "--file", str(csv_file), "--auto-link-configurables"]
    )

    assert result.exit_code == 0, result.output
    db.session.expire_all()
    links = db.session.scalars(select(ProductLink)).all()
    assert len(links) == 1
    assert db.session.get(Product, links[0].child_id).sku == "TEE-S"


def test_status_summary_json(runner):
    ChangeLedger(db.session).record_change("customer", 1, "update")
    DeltaStateStore(db.session).record_success(
        "live",
        "customer",
        "csv",
        high_water_entity_id=4,
        high_water_updated_at=None,
        synced_count=4,
        error_count=0,
        config_hash_value=None,
    )

    result = runner.invoke(args=["datasync", "status", "--summary-json"])

    assert result.exit_code == 0, result.output
    payload = _json_payload(result.output)
    assert payload["pending"] == {"customer": 1}
    assert payload["delta_states"][0]["last_entity_id"] == 4
    assert payload["lock"] == {"held": False}


def test_status_text_output(runner):
    result = runner.invoke(args=["datasync", "status"])

    assert result.exit_code == 0, result.output
    assert "Pending changes:" in result.output
    assert "Registry mappings:" in result.output


def test_reset_and_registry_purge(runner):
    DeltaStateStore(db.session).record_success(
        "live",
        "customer",
        "csv",
        high_water_entity_id=9,
        high_water_updated_at=None,
        synced_count=1,
        error_count=0,
        config_hash_value=None,
    )
    IdentityRegistry(db.session).register("live", "customer", 9, 100)
    db.session.commit()

    result = runner.invoke(args=["datasync", "reset", "--source-system", "live", "--purge-registry", "--yes"])

    assert result.exit_code == 0, result.output
    assert "Reset 1 delta state row(s) for live." in result.output
    assert "Deleted 1 registry mapping(s)." in result.output
    db.session.expire_all()
    assert DeltaStateStore(db.session).last_synced_id("live", "customer") is None
    assert db.session.scalar(select(func.count(RegistryMapping.id))) == 0


def test_registry_lookup_stats_and_purge(runner):
    IdentityRegistry(db.session).register("live", "customer", 7, 70, external_ref="ada@example.com")
    db.session.commit()

    by_source = runner.invoke(args=["datasync", "registry", "lookup", "--entity", "customer", "--source-id", "7"])
    assert by_source.exit_code == 0, by_source.output
    assert "live/customer #7 -> #70" in by_source.output

    by_ref = runner.invoke(args=["datasync", "registry", "lookup", "--entity", "customer", "--ref", "ada@example.com"])
    assert by_ref.exit_code == 0, by_ref.output
    assert _json_payload(by_ref.output)[0]["target_id"] == 70

    missing = runner.invoke(args=["datasync", "registry", "lookup", "--entity", "customer", "--source-id", "8"])
    assert missing.exit_code == 1

    ambiguous = runner.invoke(args=["datasync", "registry", "lookup", "--entity", "customer"])
    assert ambiguous.exit_code == 2

    stats = runner.invoke(args=["datasync", "registry", "stats"])
    assert "customer: 1" in stats.output

    purge = runner.invoke(args=["datasync", "registry", "purge", "--source-system", "live", "--yes"])
    assert purge.exit_code == 0, purge.output
    assert "Deleted 1 registry mapping(s)." in purge.output


def test_purge_ledger(runner):
    ledger = ChangeLedger(db.session)
    record = ledger.record_change("customer", 1, "update")
    ledger.mark_completed([record.tracker_id])

    kept = runner.invoke(args=["datasync", "purge-ledger"])
    assert "Purged 0 completed ledger row(s)." in kept.output

    purged = runner.invoke(args=["datasync", "purge-ledger", "--older-than-days", "0"])
    assert purged.exit_code == 0, purged.output
    assert "Purged 1 completed ledger row(s)." in purged.output
    db.session.expire_all()
    assert db.session.scalar(select(func.count(ChangeRecord.tracker_id))) == 0

    invalid = runner.invoke(args=["datasync", "purge-ledger", "--older-than-days", "-1"])
    assert invalid.exit_code == 2
