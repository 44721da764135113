"""
Incremental replication driven by the change ledger.

One run:

1. reads pending ledger rows (optionally for one entity type, capped by a limit),
2. applies the stock mode pre-filter,
3. retires deletes and orphaned dependent rows without dispatching them,
4. retires sub-record rows that their parent handler re-reads,
5. dispatches the remaining groups in dependency order, batch first with a
   per-record fallback on infrastructure failures,
6. classifies every identifier from the explicit per-record outcome,
7. optionally retires the synced rows through ``ChangeLedger.mark_completed``.

The caller must hold the run lock; ``IncrementalService.run_locked`` does that.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flask_app.models import db

from . import metrics
from .adapters.base import SourceAdapter
from .constants import (
    DEPENDENT_PARENTS,
    DUPLICATE_MERGE,
    ENTITY_ORDER,
    STOCK_EXCLUDE,
    STOCK_INCLUDE,
    STOCK_MODES,
    STOCK_ONLY,
    SUB_RECORD_TYPES,
    dispatch_position,
)
from .engine import ProgressCallback, SyncEngine
from .errors import ConfigurationError, ConnectionFailed
from .ledger import DEFAULT_CHUNK_SIZE, ChangeLedger, CompletionReport, PendingChange, PendingChanges
from .lock import SyncLock
from .result import RecordOutcome, SyncResult

logger = logging.getLogger(__name__)

# Failures of a whole batch that are retried one record at a time.
BATCH_FALLBACK_ERRORS = (ConnectionFailed, SQLAlchemyError, OSError)

MODE_BATCH = "batch"
MODE_INDIVIDUAL = "individual"

STATUS_SYNCED = "synced"
STATUS_PLANNED = "planned"
STATUS_SKIPPED = "skipped"
STATUS_MISSING = "missing"
STATUS_ERROR = "error"


@dataclass
class TypeReport:
    """Per entity type detail of one incremental run."""

    entity_type: str
    pending: int = 0
    retired: int = 0
    synced: int = 0
    planned: int = 0
    skipped: int = 0
    missing: int = 0
    errors: int = 0
    mode: str | None = None
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "pending": self.pending,
            "retired": self.retired,
            "synced": self.synced,
            "planned": self.planned,
            "skipped": self.skipped,
            "missing": self.missing,
            "errors": self.errors,
            "mode": self.mode,
            "messages": list(self.messages),
        }


@dataclass
class IncrementalReport:
    dry_run: bool = False
    stock_mode: str = STOCK_INCLUDE
    pending: dict[str, int] = field(default_factory=dict)
    types: dict[str, TypeReport] = field(default_factory=dict)
    completable_tracker_ids: list[int] = field(default_factory=list)
    completion: CompletionReport | None = None
    duration_seconds: float = 0.0

    def for_type(self, entity_type: str) -> TypeReport:
        report = self.types.get(entity_type)
        if report is None:
            report = TypeReport(entity_type=entity_type)
            self.types[entity_type] = report
        return report

    def _total(self, attribute: str) -> int:
        return sum(getattr(report, attribute) for report in self.types.values())

    @property
    def synced(self) -> int:
        return self._total("synced")

    @property
    def planned(self) -> int:
        return self._total("planned")

    @property
    def skipped(self) -> int:
        return self._total("skipped")

    @property
    def missing(self) -> int:
        return self._total("missing")

    @property
    def errors(self) -> int:
        return self._total("errors")

    @property
    def retired(self) -> int:
        return self._total("retired")

    @property
    def completion_status(self) -> str | None:
        return self.completion.status if self.completion is not None else None

    @property
    def exit_code(self) -> int:
        if self.errors:
            return 1
        if self.completion is not None and self.completion.is_failure:
            return 1
        return 0

    def summary(self) -> str:
        prefix = "[DRY RUN] " if self.dry_run else ""
        text = (
            f"{prefix}Synced: {self.synced}, Retired: {self.retired}, Skipped: {self.skipped}, "
            f"Missing: {self.missing}, Errors: {self.errors}"
        )
        if self.dry_run:
            text += f", Planned: {self.planned}"
        if self.completion is not None:
            text += f", Completion: {self.completion.status} ({self.completion.completed}/{self.completion.requested})"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "stock_mode": self.stock_mode,
            "pending": dict(self.pending),
            "synced": self.synced,
            "planned": self.planned,
            "retired": self.retired,
            "skipped": self.skipped,
            "missing": self.missing,
            "errors": self.errors,
            "completion": self.completion.to_dict() if self.completion is not None else None,
            "types": {entity_type: report.to_dict() for entity_type, report in self.types.items()},
            "duration_seconds": round(self.duration_seconds, 3),
            "exit_code": self.exit_code,
        }


def apply_stock_mode(pending: PendingChanges, stock_mode: str) -> PendingChanges:
    """Restrict which entity-type groups are dispatched; rows outside the mode stay pending."""
    if stock_mode not in STOCK_MODES:
        raise ConfigurationError(f"Invalid stock mode: {stock_mode}. Use: {', '.join(STOCK_MODES)}")
    if stock_mode == STOCK_INCLUDE:
        return pending
    filtered = PendingChanges()
    for change in pending:
        is_stock = change.entity_type == "stock"
        if (stock_mode == STOCK_ONLY and is_stock) or (stock_mode == STOCK_EXCLUDE and not is_stock):
            filtered.add(change)
    return filtered


class IncrementalService:
    """Consumes the change ledger through one adapter and the sync engine."""

    def __init__(
        self,
        adapter: SourceAdapter,
        *,
        source_system: str = "live",
        on_duplicate: str = DUPLICATE_MERGE,
        session: Session | None = None,
        ledger: ChangeLedger | None = None,
        engine_factory: Callable[..., SyncEngine] | None = None,
        progress_callback: ProgressCallback | None = None,
        verbose: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.adapter = adapter
        self.source_system = source_system
        self.on_duplicate = on_duplicate
        self.session = session or db.session
        self.ledger = ledger or ChangeLedger(self.session)
        self.engine_factory = engine_factory or SyncEngine
        self.progress_callback = progress_callback
        self.verbose = verbose
        self.chunk_size = chunk_size

    def _say(self, message: str) -> None:
        logger.info(message)
        if self.progress_callback is not None:
            self.progress_callback(message)

    def _engine(self, *, dry_run: bool) -> SyncEngine:
        return self.engine_factory(
            self.adapter,
            source_system=self.source_system,
            on_duplicate=self.on_duplicate,
            skip_invalid=True,
            dry_run=dry_run,
            progress_callback=self.progress_callback,
            verbose=self.verbose,
            session=self.session,
        )

    # -- pre-pass ------------------------------------------------------------

    def retire_deletes_and_orphans(self, pending: PendingChanges) -> dict[int, str]:
        """
        Tracker ids retired without dispatch, mapped to the reason.

        Deletes are retired directly. A dependent row is an orphan when its
        parent is deleted in this batch or no longer exists at the source;
        existence is checked with one batched query per parent type.
        """
        retired: dict[int, str] = {}
        deleted: dict[str, set[int]] = {}
        for change in pending:
            if change.is_delete:
                retired[change.tracker_id] = "delete"
                deleted.setdefault(change.entity_type, set()).add(change.entity_id)

        for dependent_type, parent_type in DEPENDENT_PARENTS.items():
            candidates = [change for change in pending.for_type(dependent_type) if change.tracker_id not in retired]
            if not candidates:
                continue
            deleted_parents = deleted.get(parent_type, set())
            for change in candidates:
                if change.entity_id in deleted_parents:
                    retired[change.tracker_id] = f"{parent_type} deleted"
            remaining = [change for change in candidates if change.tracker_id not in retired]
            if not remaining:
                continue
            existing = self.adapter.existing_ids(parent_type, (change.entity_id for change in remaining))
            for change in remaining:
                if change.entity_id not in existing:
                    retired[change.tracker_id] = f"{parent_type} missing at source"
                    logger.info(
                        "Orphaned ledger row",
                        extra={
                            "datasync_entity_type": dependent_type,
                            "datasync_entity_id": change.entity_id,
                            "datasync_parent_type": parent_type,
                        },
                    )
        return retired

    # -- dispatch ------------------------------------------------------------

    @staticmethod
    def classify(change: PendingChange, result: SyncResult) -> str:
        """Status of one ledger row from the engine's explicit outcome for it."""
        record = result.outcome_for(change.entity_id)
        if record is None:
            return STATUS_MISSING
        if record.outcome is RecordOutcome.ERROR:
            return STATUS_ERROR
        if record.outcome.completes_ledger:
            return STATUS_SYNCED
        if record.outcome in (RecordOutcome.WOULD_CREATE, RecordOutcome.WOULD_UPDATE, RecordOutcome.WOULD_MERGE):
            return STATUS_PLANNED
        return STATUS_SKIPPED

    def _apply_statuses(
        self,
        changes: Iterable[PendingChange],
        result: SyncResult,
        type_report: TypeReport,
        completable: list[int],
    ) -> None:
        for change in changes:
            status = self.classify(change, result)
            if status == STATUS_SYNCED:
                type_report.synced += 1
                completable.append(change.tracker_id)
            elif status == STATUS_PLANNED:
                type_report.planned += 1
            elif status == STATUS_SKIPPED:
                type_report.skipped += 1
                record = result.outcome_for(change.entity_id)
                type_report.messages.append(f"#{change.entity_id} skipped: {record.reason if record else ''}")
            elif status == STATUS_ERROR:
                type_report.errors += 1
                record = result.outcome_for(change.entity_id)
                type_report.messages.append(f"#{change.entity_id} failed: {record.reason if record else ''}")
            else:
                type_report.missing += 1

    def dispatch_group(
        self,
        entity_type: str,
        changes: list[PendingChange],
        type_report: TypeReport,
        completable: list[int],
        *,
        dry_run: bool = False,
    ) -> None:
        """Sync one entity-type group in a single engine call, falling back to one call per record."""
        engine = self._engine(dry_run=dry_run)
        entity_ids = [change.entity_id for change in changes]
        started = time.monotonic()
        try:
            result = engine.sync_ids(entity_type, entity_ids)
        except BATCH_FALLBACK_ERRORS as exc:
            logger.warning(
                "Batch sync failed, falling back to individual sync",
                extra={"datasync_entity_type": entity_type, "datasync_error": str(exc)},
            )
            self._say(f"  Batch sync failed, falling back to individual sync: {exc}")
            self.session.rollback()
            self._dispatch_individually(entity_type, changes, type_report, completable, dry_run=dry_run)
            metrics.record_batch(
                entity_type=entity_type, mode=MODE_INDIVIDUAL, duration_seconds=time.monotonic() - started
            )
            return

        type_report.mode = MODE_BATCH
        self._apply_statuses(changes, result, type_report, completable)
        metrics.record_batch(entity_type=entity_type, mode=MODE_BATCH, duration_seconds=time.monotonic() - started)

    def _dispatch_individually(
        self,
        entity_type: str,
        changes: list[PendingChange],
        type_report: TypeReport,
        completable: list[int],
        *,
        dry_run: bool,
    ) -> None:
        type_report.mode = MODE_INDIVIDUAL
        for change in changes:
            engine = self._engine(dry_run=dry_run)
            try:
                result = engine.sync_ids(entity_type, [change.entity_id])
            except BATCH_FALLBACK_ERRORS as exc:
                self.session.rollback()
                type_report.errors += 1
                type_report.messages.append(f"#{change.entity_id} failed: {exc}")
                logger.warning(
                    "Individual sync failed",
                    extra={
                        "datasync_entity_type": entity_type,
                        "datasync_entity_id": change.entity_id,
                        "datasync_error": str(exc),
                    },
                )
                continue
            self._apply_statuses([change], result, type_report, completable)

    # -- run -----------------------------------------------------------------

    def run(
        self,
        *,
        entity_type: str | None = None,
        limit: int | None = None,
        mark_completed: bool = False,
        dry_run: bool = False,
        stock_mode: str = STOCK_INCLUDE,
    ) -> IncrementalReport:
        if entity_type is not None and entity_type not in ENTITY_ORDER:
            raise ConfigurationError(f"Unknown entity type: {entity_type}. Valid: {', '.join(ENTITY_ORDER)}")
        if stock_mode not in STOCK_MODES:
            raise ConfigurationError(f"Invalid stock mode: {stock_mode}. Use: {', '.join(STOCK_MODES)}")

        started = time.monotonic()
        report = IncrementalReport(dry_run=dry_run, stock_mode=stock_mode)
        if not self.adapter.validate():
            raise ConnectionFailed(f"Adapter {self.adapter.code} validation failed")

        pending = apply_stock_mode(self.ledger.fetch_pending(entity_type=entity_type, limit=limit), stock_mode)
        report.pending = pending.counts()
        metrics.record_pending(report.pending)
        if not pending:
            self._say("No pending changes to sync.")
            report.duration_seconds = time.monotonic() - started
            return report

        self._say("Pending changes:")
        for pending_type, count in report.pending.items():
            self._say(f"  {pending_type}: {count}")
            report.for_type(pending_type).pending = count

        retired = self.retire_deletes_and_orphans(pending)
        for change in pending:
            if change.tracker_id in retired:
                report.for_type(change.entity_type).retired += 1
                report.completable_tracker_ids.append(change.tracker_id)

        for group_type in sorted(pending.entity_types(), key=dispatch_position):
            changes = [change for change in pending.for_type(group_type) if change.tracker_id not in retired]
            if not changes:
                continue
            type_report = report.for_type(group_type)
            if group_type in SUB_RECORD_TYPES:
                type_report.retired += len(changes)
                report.completable_tracker_ids.extend(change.tracker_id for change in changes)
                continue
            if group_type not in ENTITY_ORDER:
                logger.warning("Unknown entity type in change ledger", extra={"datasync_entity_type": group_type})
                continue
            self._say(f"Syncing {group_type} ({len(changes)} items)...")
            self.dispatch_group(group_type, changes, type_report, report.completable_tracker_ids, dry_run=dry_run)

        if dry_run:
            self._say("Dry run - no changes were made.")
        elif mark_completed and report.completable_tracker_ids:
            report.completion = self.ledger.mark_completed(report.completable_tracker_ids, self.chunk_size)
            if report.completion.message:
                self._say(report.completion.message)
            else:
                self._say(f"Marked {report.completion.completed} tracker records as synced.")

        report.duration_seconds = time.monotonic() - started
        self._say(report.summary())
        return report

    def run_locked(self, lock: SyncLock | None, **options: Any) -> IncrementalReport:
        """``run`` under the run-level lock; ``None`` skips locking."""
        if lock is None:
            return self.run(**options)
        with lock:
            return self.run(**options)
