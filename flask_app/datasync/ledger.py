"""
Change ledger reconciliation.

The source system appends mutation events to ``datasync_change_tracker`` and
coalesces them while they are pending: at most one pending row exists per
(entity_type, entity_id). The destination reads pending rows, applies them
and then retires them through ``mark_completed``.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from flask_app.models import ChangeAction, ChangeRecord, SyncStatus, db

from . import metrics

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500

# Sub-record changes are mirrored onto their parent so the parent handler
# re-reads the current sub-record state.
PARENT_TYPES = {
    "customer_address": "customer",
    "invoice": "order",
    "shipment": "order",
    "creditmemo": "order",
    "order_comment": "order",
}

COMPLETION_COMPLETED = "completed"
COMPLETION_PERMISSION_DENIED = "permission_denied"
COMPLETION_DUPLICATE_HANDLED = "duplicate_handled"
COMPLETION_FAILED = "failed"
COMPLETION_SKIPPED = "skipped"

_PERMISSION_MARKERS = ("command denied", "permission denied", "access denied", "readonly database", "read-only")
_PERMISSION_ERRNOS = {1142, 1044, 1045}


def merge_action(existing: ChangeAction | str, incoming: ChangeAction | str) -> ChangeAction:
    """Coalescing rule: a delete always wins, otherwise the newest action is kept."""
    existing = ChangeAction.coerce(existing)
    incoming = ChangeAction.coerce(incoming)
    if ChangeAction.DELETE in (existing, incoming):
        return ChangeAction.DELETE
    return incoming


def is_permission_error(exc: BaseException) -> bool:
    """Return True when a database error means the caller may not write the ledger."""
    original = getattr(exc, "orig", None)
    if original is not None:
        args = getattr(original, "args", ()) or ()
        if args and isinstance(args[0], int) and args[0] in _PERMISSION_ERRNOS:
            return True
        if type(original).__name__ == "InsufficientPrivilege":
            return True
        pgcode = getattr(original, "pgcode", None)
        if pgcode == "42501":
            return True
    message = str(original if original is not None else exc).lower()
    return any(marker in message for marker in _PERMISSION_MARKERS)


@dataclass(frozen=True)
class PendingChange:
    """Detached snapshot of one pending ledger row."""

    tracker_id: int
    entity_type: str
    entity_id: int
    action: ChangeAction
    created_at: datetime

    @property
    def is_delete(self) -> bool:
        return self.action is ChangeAction.DELETE


@dataclass
class PendingChanges:
    """Pending rows grouped by entity type, oldest first within each group."""

    groups: "OrderedDict[str, list[PendingChange]]" = field(default_factory=OrderedDict)

    def add(self, change: PendingChange) -> None:
        self.groups.setdefault(change.entity_type, []).append(change)

    def __len__(self) -> int:
        return sum(len(changes) for changes in self.groups.values())

    def __iter__(self) -> Iterator[PendingChange]:
        for changes in self.groups.values():
            yield from changes

    def __bool__(self) -> bool:
        return any(self.groups.values())

    def entity_types(self) -> list[str]:
        return list(self.groups.keys())

    def for_type(self, entity_type: str) -> list[PendingChange]:
        return list(self.groups.get(entity_type, ()))

    def counts(self) -> dict[str, int]:
        return {entity_type: len(changes) for entity_type, changes in self.groups.items()}

    def tracker_ids(self) -> list[int]:
        return [change.tracker_id for change in self]


@dataclass
class CompletionReport:
    """Outcome of one ``mark_completed`` call."""

    status: str = COMPLETION_COMPLETED
    requested: int = 0
    completed: int = 0
    chunks: int = 0
    message: str | None = None

    @property
    def retired_everything(self) -> bool:
        return self.status in (COMPLETION_COMPLETED, COMPLETION_SKIPPED) and self.completed == self.requested

    @property
    def is_failure(self) -> bool:
        return self.status == COMPLETION_FAILED

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "requested": self.requested,
            "completed": self.completed,
            "chunks": self.chunks,
            "message": self.message,
        }


def _chunked(values: Sequence[int], size: int) -> Iterator[list[int]]:
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


class ChangeLedger:
    """Read, coalesce and retire rows of the change tracker table."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # -- source side -----------------------------------------------------

    def record_change(
        self,
        entity_type: str,
        entity_id: int,
        action: ChangeAction | str,
        occurred_at: datetime | None = None,
    ) -> ChangeRecord:
        """
        Append an event, merging it into the pending row when one exists.

        A concurrent writer may insert the pending row between our read and
        our insert; the insert then fails on the unique key and the event is
        merged into the row that won.
        """
        action = ChangeAction.coerce(action)
        occurred_at = occurred_at or datetime.now(timezone.utc)
        entity_id = int(entity_id)

        try:
            with self._transaction():
                record = self._pending_row(entity_type, entity_id)
                if record is not None:
                    record.action = merge_action(record.action, action)
                    record.created_at = occurred_at
                else:
                    record = ChangeRecord(
                        entity_type=entity_type,
                        entity_id=entity_id,
                        action=action,
                        created_at=occurred_at,
                        sync_completed=SyncStatus.PENDING.value,
                    )
                    self.session.add(record)
                    self.session.flush()
            return record
        except IntegrityError:
            with self._transaction():
                record = self._pending_row(entity_type, entity_id)
                if record is None:
                    raise
                record.action = merge_action(record.action, action)
                record.created_at = occurred_at
            return record

    def track_with_parents(
        self,
        entity_type: str,
        entity_id: int,
        action: ChangeAction | str,
        *,
        parent_id: int | None = None,
        occurred_at: datetime | None = None,
    ) -> list[ChangeRecord]:
        """Record a change and, for sub-records, an ``update`` of the owning entity."""
        records = [self.record_change(entity_type, entity_id, action, occurred_at)]
        parent_type = PARENT_TYPES.get(entity_type)
        if parent_type and parent_id is not None:
            records.append(self.record_change(parent_type, parent_id, ChangeAction.UPDATE, occurred_at))
        return records

    def _pending_row(self, entity_type: str, entity_id: int) -> ChangeRecord | None:
        return self.session.scalar(
            select(ChangeRecord).where(
                ChangeRecord.entity_type == entity_type,
                ChangeRecord.entity_id == entity_id,
                ChangeRecord.sync_completed == SyncStatus.PENDING.value,
            )
        )

    # -- destination side ------------------------------------------------

    def fetch_pending(self, entity_type: str | None = None, limit: int | None = None) -> PendingChanges:
        statement = select(ChangeRecord).where(ChangeRecord.sync_completed == SyncStatus.PENDING.value)
        if entity_type:
            statement = statement.where(ChangeRecord.entity_type == entity_type)
        statement = statement.order_by(ChangeRecord.created_at, ChangeRecord.tracker_id)
        if limit:
            statement = statement.limit(limit)

        pending = PendingChanges()
        for record in self.session.scalars(statement):
            pending.add(
                PendingChange(
                    tracker_id=record.tracker_id,
                    entity_type=record.entity_type,
                    entity_id=record.entity_id,
                    action=ChangeAction.coerce(record.action),
                    created_at=record.created_at,
                )
            )
        return pending

    def pending_counts(self) -> dict[str, int]:
        rows = self.session.execute(
            select(ChangeRecord.entity_type, func.count(ChangeRecord.tracker_id))
            .where(ChangeRecord.sync_completed == SyncStatus.PENDING.value)
            .group_by(ChangeRecord.entity_type)
            .order_by(ChangeRecord.entity_type)
        ).all()
        return {entity_type: count for entity_type, count in rows}

    def mark_completed(self, tracker_ids: Iterable[int], chunk_size: int = DEFAULT_CHUNK_SIZE) -> CompletionReport:
        """
        Retire pending rows in chunks, one transaction per chunk.

        Rows that are already completed are ignored, so repeating a call is a
        no-op. A privilege failure stops at the failing chunk and leaves the
        remaining rows pending.
        """
        ids = sorted({int(tracker_id) for tracker_id in tracker_ids})
        report = CompletionReport(requested=len(ids))
        if not ids:
            report.status = COMPLETION_SKIPPED
            return report

        for chunk in _chunked(ids, max(1, chunk_size)):
            try:
                report.completed += self._complete_chunk(chunk)
                report.chunks += 1
            except IntegrityError as exc:
                report.status = COMPLETION_DUPLICATE_HANDLED
                report.message = "Uniqueness race while completing ledger rows; treated as already handled."
                metrics.record_completion_failure(COMPLETION_DUPLICATE_HANDLED)
                logger.warning(
                    report.message,
                    extra={"datasync_chunk_size": len(chunk), "datasync_error": str(exc.orig)},
                )
            except DBAPIError as exc:
                if not is_permission_error(exc):
                    report.status = COMPLETION_FAILED
                    report.message = f"Failed to mark ledger rows as synced: {exc.orig}"
                    metrics.record_completion_failure(COMPLETION_FAILED)
                    logger.error(report.message, extra={"datasync_chunk_size": len(chunk)})
                    break
                report.status = COMPLETION_PERMISSION_DENIED
                report.message = (
                    "Records were processed but could not be marked as synced: the database user lacks "
                    "UPDATE/DELETE privilege on datasync_change_tracker. They will be reprocessed on the next run."
                )
                metrics.record_completion_failure(COMPLETION_PERMISSION_DENIED)
                logger.warning(report.message, extra={"datasync_error": str(exc.orig)})
                break

        metrics.record_ledger_completed(report.completed)
        logger.info(
            "Marked %s of %s ledger rows as synced",
            report.completed,
            report.requested,
            extra={"datasync_completion_status": report.status, "datasync_chunks": report.chunks},
        )
        return report

    def _complete_chunk(self, chunk: list[int]) -> int:
        now = datetime.now(timezone.utc)
        with self._transaction():
            rows = self.session.execute(
                select(ChangeRecord.tracker_id, ChangeRecord.entity_type, ChangeRecord.entity_id).where(
                    ChangeRecord.tracker_id.in_(chunk),
                    ChangeRecord.sync_completed == SyncStatus.PENDING.value,
                )
            ).all()
            if not rows:
                return 0

            pending_ids = [row.tracker_id for row in rows]
            by_type: dict[str, set[int]] = {}
            for row in rows:
                by_type.setdefault(row.entity_type, set()).add(row.entity_id)

            for entity_type, entity_ids in by_type.items():
                self.session.execute(
                    delete(ChangeRecord)
                    .where(
                        ChangeRecord.entity_type == entity_type,
                        ChangeRecord.entity_id.in_(sorted(entity_ids)),
                        ChangeRecord.sync_completed == SyncStatus.COMPLETED.value,
                        ChangeRecord.tracker_id.not_in(pending_ids),
                    )
                    .execution_options(synchronize_session=False)
                )
            result = self.session.execute(
                update(ChangeRecord)
                .where(
                    ChangeRecord.tracker_id.in_(pending_ids),
                    ChangeRecord.sync_completed == SyncStatus.PENDING.value,
                )
                .values(sync_completed=SyncStatus.COMPLETED.value, synced_at=now)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0

    def purge_completed(self, older_than: datetime | timedelta) -> int:
        """Delete completed rows synced before ``older_than`` (a timestamp or an age)."""
        if isinstance(older_than, timedelta):
            cutoff = datetime.now(timezone.utc) - older_than
        else:
            cutoff = older_than
        with self._transaction():
            result = self.session.execute(
                delete(ChangeRecord)
                .where(
                    ChangeRecord.sync_completed == SyncStatus.COMPLETED.value,
                    ChangeRecord.synced_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
        logger.info("Purged completed ledger rows", extra={"datasync_rows": result.rowcount})
        return result.rowcount or 0
