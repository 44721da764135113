"""
``flask datasync`` command group.

Record-level failures are reported in the summary and turn the exit status
non-zero; configuration, connection and lock failures abort with a
``click.ClickException``.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from flask_app.models.base import db
from flask_app.utils.datasync import get_datasync_adapters, get_source_system, is_datasync_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .constants import DUPLICATE_ERROR, DUPLICATE_MODES, ENTITY_ORDER, STOCK_INCLUDE, STOCK_MODES
from .delta import DeltaStateStore
from .engine import SyncEngine
from .errors import DataSyncError
from .handlers.product_strategies import OPTIONS_MODES
from .identity import IdentityRegistry
from .ledger import ChangeLedger
from .lock import LockUnavailable, format_age
from .runtime import build_adapter, build_incremental_adapter, build_lock, load_source_credentials, run_incremental
from .stock_sync import BulkStockSync


def _load_app(ctx):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


@contextmanager
def _surface_errors():
    """Turn run-aborting failures into click errors."""
    try:
        yield
    except LockUnavailable as exc:
        raise click.ClickException(str(exc)) from exc
    except DataSyncError as exc:
        raise click.ClickException(f"[{exc.code}] {exc}") from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


@click.group(name="datasync", invoke_without_command=True)
@click.pass_context
def datasync_cli(ctx):
    """
    Data synchronization commands.

    Lists the enabled adapters when invoked without a subcommand.
    """
    app = _load_app(ctx)
    if not is_datasync_enabled(app):
        raise click.ClickException("DataSync is disabled via DATASYNC_ENABLED=false.")
    if ctx.invoked_subcommand is None:
        adapters = get_datasync_adapters(app)
        if not adapters:
            click.echo("No adapters configured.")
        else:
            click.echo("Enabled adapters:")
            for adapter in adapters:
                click.echo(f"  - {adapter}")


def get_disabled_datasync_group() -> click.Group:
    @click.group(name="datasync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("DataSync commands are unavailable because DATASYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "DataSync Celery app is unavailable. Ensure DATASYNC_ENABLED=true and the "
            "datasync package initialises before running worker commands."
        )
    return celery_app


# -- sync ------------------------------------------------------------------


@datasync_cli.command("sync")
@click.argument("entity_type", type=click.Choice(ENTITY_ORDER))
@click.option("--adapter", "adapter_code", default="csv", show_default=True, help="Source adapter code.")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Input file for the csv adapter.",
)
@click.option("--source-system", help="Identifier of the source system (defaults to DATASYNC_SOURCE_SYSTEM).")
@click.option(
    "--on-duplicate",
    type=click.Choice(DUPLICATE_MODES),
    default=DUPLICATE_ERROR,
    show_default=True,
    help="What to do when the record already exists in the destination.",
)
@click.option("--dry-run", is_flag=True, help="Plan every record without writing.")
@click.option("--skip-invalid", is_flag=True, help="Skip records failing validation instead of erroring.")
@click.option("--limit", type=int, help="Maximum number of records to read.")
@click.option("--date-from", help="Only records updated at or after this date.")
@click.option("--date-to", help="Only records updated at or before this date.")
@click.option("--entity-ids", help="Comma-separated source entity ids.")
@click.option("--increment-ids", help="Comma-separated increment ids (sales documents).")
@click.option(
    "--auto-link-configurables",
    is_flag=True,
    help="Link simple products to the configurable product preceding them in the same attribute set.",
)
@click.option(
    "--options-mode",
    type=click.Choice(OPTIONS_MODES),
    help="How custom options replace, merge with or append to existing product options.",
)
@click.option("--verbose", "-v", is_flag=True, help="Print per-record progress.")
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary after completion.")
@click.pass_context
def datasync_sync(
    ctx,
    entity_type: str,
    adapter_code: str,
    file_path: Optional[Path],
    source_system: Optional[str],
    on_duplicate: str,
    dry_run: bool,
    skip_invalid: bool,
    limit: Optional[int],
    date_from: Optional[str],
    date_to: Optional[str],
    entity_ids: Optional[str],
    increment_ids: Optional[str],
    auto_link_configurables: bool,
    options_mode: Optional[str],
    verbose: bool,
    summary_json: bool,
):
    """Pull ENTITY_TYPE records from a source adapter into the destination."""
    app = _load_app(ctx)
    with _surface_errors():
        options: dict[str, Any] = {}
        if file_path is not None:
            options["file_path"] = str(file_path.resolve())
        adapter = build_adapter(app, adapter_code, **options)
        entity_options: dict[str, Any] = {}
        if auto_link_configurables:
            entity_options["auto_link_configurables"] = True
        if options_mode:
            entity_options["options_mode"] = options_mode
        engine = SyncEngine(
            adapter,
            source_system=source_system or get_source_system(app),
            on_duplicate=on_duplicate,
            skip_invalid=skip_invalid,
            dry_run=dry_run,
            filters={
                "limit": limit,
                "date_from": date_from,
                "date_to": date_to,
                "entity_ids": entity_ids,
                "increment_ids": increment_ids,
            },
            entity_options=entity_options,
            progress_callback=click.echo,
            progress_interval=app.config.get("DATASYNC_PROGRESS_INTERVAL", 100),
            verbose=verbose,
        )
        try:
            result = engine.sync(entity_type)
        finally:
            adapter.close()

    click.echo(result.summary())
    for error in result.errors[:10]:
        click.echo(f"  #{error.source_id}: {error.reason}", err=True)
    if summary_json:
        _echo_json(result.to_dict())
    if result.has_errors():
        ctx.exit(1)


# -- incremental -------------------------------------------------------------


@datasync_cli.command("incremental")
@click.option("--entity", "entity_type", type=click.Choice(ENTITY_ORDER), help="Only sync this entity type.")
@click.option("--limit", type=int, help="Maximum number of pending ledger rows to process.")
@click.option("--mark-synced", is_flag=True, help="Retire successfully synced ledger rows.")
@click.option("--dry-run", is_flag=True, help="Plan the run without writing or retiring anything.")
@click.option(
    "--stock",
    "stock_mode",
    type=click.Choice(STOCK_MODES),
    default=STOCK_INCLUDE,
    show_default=True,
    help="Include, exclude or exclusively process stock changes.",
)
@click.option("--no-lock", is_flag=True, help="Skip the run lock (use with care).")
@click.option("--db-host", help="Source database host.")
@click.option("--db-name", help="Source database name.")
@click.option("--db-user", help="Source database user.")
@click.option("--db-pass", help="Source database password.")
@click.option("--queue", is_flag=True, help="Queue the run on the Celery worker instead of running inline.")
@click.option("--verbose", "-v", is_flag=True, help="Print per-record progress.")
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary after completion.")
@click.pass_context
def datasync_incremental(
    ctx,
    entity_type: Optional[str],
    limit: Optional[int],
    mark_synced: bool,
    dry_run: bool,
    stock_mode: str,
    no_lock: bool,
    db_host: Optional[str],
    db_name: Optional[str],
    db_user: Optional[str],
    db_pass: Optional[str],
    queue: bool,
    verbose: bool,
    summary_json: bool,
):
    """Replicate pending changes recorded in the source change ledger."""
    app = _load_app(ctx)
    options = {
        "entity_type": entity_type,
        "limit": limit,
        "mark_completed": mark_synced,
        "dry_run": dry_run,
        "stock_mode": stock_mode,
        "use_lock": not no_lock,
    }

    if queue:
        if any((db_host, db_name, db_user, db_pass)):
            raise click.ClickException("Queued runs use the configured source database; drop the --db-* options.")
        celery_app = _resolve_celery(app)
        async_result = celery_app.send_task("datasync.incremental", kwargs=options)
        app.logger.info(
            "Incremental sync queued via CLI",
            extra={"datasync_task_id": async_result.id, "datasync_entity_type": entity_type},
        )
        click.echo(json.dumps({"task_id": async_result.id, "status": "queued", **options}))
        return

    with _surface_errors():
        report = run_incremental(
            app,
            credentials={"host": db_host, "database": db_name, "username": db_user, "password": db_pass},
            progress_callback=click.echo,
            verbose=verbose,
            **options,
        )

    for type_report in report.types.values():
        for message in type_report.messages[:10]:
            click.echo(f"  {type_report.entity_type} {message}", err=True)
    if summary_json:
        _echo_json(report.to_dict())
    if report.exit_code:
        ctx.exit(report.exit_code)


# -- stock -------------------------------------------------------------------


@datasync_cli.command("stock")
@click.option("--sku", "sku_pattern", help="Only SKUs matching this LIKE pattern (e.g. 'ABC%').")
@click.option("--missing-only", is_flag=True, help="Only create stock rows for products that have none.")
@click.option("--dry-run", is_flag=True, help="Count what would change without writing.")
@click.option("--db-host", help="Source database host.")
@click.option("--db-name", help="Source database name.")
@click.option("--db-user", help="Source database user.")
@click.option("--db-pass", help="Source database password.")
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary after completion.")
@click.pass_context
def datasync_stock(
    ctx,
    sku_pattern: Optional[str],
    missing_only: bool,
    dry_run: bool,
    db_host: Optional[str],
    db_name: Optional[str],
    db_user: Optional[str],
    db_pass: Optional[str],
    summary_json: bool,
):
    """Copy every source stock row to the destination product with the same SKU."""
    app = _load_app(ctx)
    if dry_run:
        click.echo("DRY RUN - no changes will be made")
    with _surface_errors():
        credentials = load_source_credentials(
            app, {"host": db_host, "database": db_name, "username": db_user, "password": db_pass}
        )
        adapter = build_incremental_adapter(app, credentials)
        try:
            report = BulkStockSync(adapter, db.session, progress_callback=click.echo).run(
                sku_pattern=sku_pattern,
                missing_only=missing_only,
                dry_run=dry_run,
            )
        finally:
            adapter.close()

    click.echo(report.summary())
    if summary_json:
        _echo_json(report.to_dict())


# -- status / reset ----------------------------------------------------------


@datasync_cli.command("status")
@click.option("--source-system", help="Restrict delta state and registry statistics to one source system.")
@click.option("--summary-json", is_flag=True, help="Emit the status as JSON.")
@click.pass_context
def datasync_status(ctx, source_system: Optional[str], summary_json: bool):
    """Show pending ledger rows, delta state and registry statistics."""
    app = _load_app(ctx)
    with _surface_errors():
        pending = ChangeLedger(db.session).pending_counts()
        store = DeltaStateStore(db.session)
        states = store.states_for_source(source_system) if source_system else store.all_states()
        registry_stats = IdentityRegistry(db.session).stats(source_system)
        lock = build_lock(app)
        holder = lock.holder()

    payload = {
        "pending": pending,
        "delta_states": [state.to_dict() for state in states],
        "registry": registry_stats,
        "lock": {"held": holder is not None, "holder": holder, "age": format_age(lock.age_seconds())}
        if holder
        else {"held": False},
    }
    if summary_json:
        _echo_json(payload)
        return

    click.echo("Pending changes:")
    if not pending:
        click.echo("  none")
    for entity_type, count in pending.items():
        click.echo(f"  {entity_type}: {count}")
    click.echo("Delta state:")
    if not states:
        click.echo("  none")
    for state in states:
        click.echo(
            f"  {state.source_system}/{state.entity_type}: last_sync={state.last_sync_at} "
            f"last_id={state.last_entity_id} synced={state.sync_count} errors={state.error_count}"
        )
    click.echo("Registry mappings:")
    if not registry_stats:
        click.echo("  none")
    for entity_type, count in registry_stats.items():
        click.echo(f"  {entity_type}: {count}")
    if holder:
        click.echo(f"Lock held by pid {holder.get('pid')} for {format_age(lock.age_seconds())}")


@datasync_cli.command("reset")
@click.option("--source-system", required=True, help="Source system whose progress is reset.")
@click.option("--entity", "entity_type", type=click.Choice(ENTITY_ORDER), help="Only reset this entity type.")
@click.option("--purge-registry", is_flag=True, help="Also delete identity mappings for the source system.")
@click.confirmation_option(prompt="Reset delta state? The next sync re-reads everything.")
@click.pass_context
def datasync_reset(ctx, source_system: str, entity_type: Optional[str], purge_registry: bool):
    """Clear delta state (and optionally identity mappings) for a source system."""
    _load_app(ctx)
    with _surface_errors():
        reset = DeltaStateStore(db.session).reset_state(source_system, entity_type)
        click.echo(f"Reset {reset} delta state row(s) for {source_system}.")
        if purge_registry:
            deleted = IdentityRegistry(db.session).delete_by_source_system(source_system, entity_type)
            click.echo(f"Deleted {deleted} registry mapping(s).")


@datasync_cli.command("purge-ledger")
@click.option("--older-than-days", type=int, default=30, show_default=True)
@click.pass_context
def datasync_purge_ledger(ctx, older_than_days: int):
    """Delete completed ledger rows synced more than N days ago."""
    _load_app(ctx)
    if older_than_days < 0:
        raise click.BadParameter("must be zero or greater", param_hint="--older-than-days")
    with _surface_errors():
        purged = ChangeLedger(db.session).purge_completed(timedelta(days=older_than_days))
    click.echo(f"Purged {purged} completed ledger row(s).")


# -- registry ----------------------------------------------------------------


@datasync_cli.group(name="registry")
def registry_group():
    """Inspect and maintain identity mappings."""


@registry_group.command("lookup")
@click.option("--source-system", help="Source system (defaults to DATASYNC_SOURCE_SYSTEM).")
@click.option("--entity", "entity_type", type=click.Choice(ENTITY_ORDER), required=True)
@click.option("--source-id", type=int, help="Source identifier to resolve.")
@click.option("--target-id", type=int, help="Destination identifier to reverse-resolve.")
@click.option("--ref", "external_ref", help="External reference (email, SKU, ...).")
@click.pass_context
def registry_lookup(
    ctx,
    source_system: Optional[str],
    entity_type: str,
    source_id: Optional[int],
    target_id: Optional[int],
    external_ref: Optional[str],
):
    """Resolve one mapping by source id, target id or external reference."""
    app = _load_app(ctx)
    if sum(value is not None for value in (source_id, target_id, external_ref)) != 1:
        raise click.UsageError("Pass exactly one of --source-id, --target-id or --ref.")
    registry = IdentityRegistry(db.session)
    system = source_system or get_source_system(app)

    if source_id is not None:
        resolved = registry.resolve(system, entity_type, source_id)
        if resolved is None:
            raise click.ClickException(f"No mapping for {system}/{entity_type} #{source_id}.")
        click.echo(f"{system}/{entity_type} #{source_id} -> #{resolved}")
        return

    if target_id is not None:
        mappings = registry.find_by_target(entity_type, target_id)
    else:
        mappings = registry.find_by_external_ref(external_ref, entity_type=entity_type, source_system=source_system)
    if not mappings:
        raise click.ClickException("No matching mappings.")
    _echo_json([mapping.to_dict() for mapping in mappings])


@registry_group.command("stats")
@click.option("--source-system", help="Restrict to one source system.")
@click.pass_context
def registry_stats(ctx, source_system: Optional[str]):
    """Count mappings per entity type."""
    _load_app(ctx)
    stats = IdentityRegistry(db.session).stats(source_system)
    if not stats:
        click.echo("No registry mappings.")
        return
    for entity_type, count in stats.items():
        click.echo(f"{entity_type}: {count}")


@registry_group.command("purge")
@click.option("--source-system", required=True)
@click.option("--entity", "entity_type", type=click.Choice(ENTITY_ORDER))
@click.confirmation_option(prompt="Delete identity mappings? Later syncs will create duplicates.")
@click.pass_context
def registry_purge(ctx, source_system: str, entity_type: Optional[str]):
    """Delete mappings for a source system, optionally for one entity type."""
    _load_app(ctx)
    with _surface_errors():
        deleted = IdentityRegistry(db.session).delete_by_source_system(source_system, entity_type)
    click.echo(f"Deleted {deleted} registry mapping(s).")


# -- worker ------------------------------------------------------------------


@datasync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the DataSync background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("datasync", {})
    if not state.get("worker_enabled") and not app.config.get("DATASYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: DATASYNC_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    app.extensions.setdefault("datasync", {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting DataSync worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Check worker connectivity by running the heartbeat task."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("datasync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'datasync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    click.echo(json.dumps(payload, indent=2))
