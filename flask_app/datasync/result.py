"""Structured outcome of one engine invocation."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class RecordOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    MERGED = "merged"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_INVALID = "skipped_invalid"
    WOULD_CREATE = "would_create"
    WOULD_UPDATE = "would_update"
    WOULD_MERGE = "would_merge"
    ERROR = "error"

    @property
    def completes_ledger(self) -> bool:
        """True when the source change has been applied (or is provably already present)."""
        return self in _LEDGER_COMPLETING

    @property
    def is_write(self) -> bool:
        return self in (RecordOutcome.CREATED, RecordOutcome.UPDATED, RecordOutcome.MERGED)


_LEDGER_COMPLETING = frozenset(
    {
        RecordOutcome.CREATED,
        RecordOutcome.UPDATED,
        RecordOutcome.MERGED,
        RecordOutcome.SKIPPED_DUPLICATE,
    }
)


@dataclass(slots=True)
class RecordResult:
    """Terminal state of one source record."""

    source_id: int | str
    outcome: RecordOutcome
    target_id: int | None = None
    reason: str | None = None
    error_type: str | None = None

    @property
    def message(self) -> str:
        return self.reason or ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "outcome": self.outcome.value,
            "target_id": self.target_id,
            "reason": self.reason,
            "error_type": self.error_type,
        }


@dataclass
class SyncResult:
    """Per-record detail plus aggregate counters for one entity type."""

    entity_type: str
    source_system: str
    dry_run: bool = False
    records: list[RecordResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    latest_source_updated_at: datetime | None = None
    _started_clock: float = field(default_factory=time.monotonic, repr=False)
    _duration: float | None = field(default=None, repr=False)

    def add_success(
        self,
        source_id: int | str,
        target_id: int | None,
        outcome: RecordOutcome,
        reason: str | None = None,
    ) -> RecordResult:
        record = RecordResult(source_id=source_id, outcome=outcome, target_id=target_id, reason=reason)
        self.records.append(record)
        return record

    def add_skipped(
        self,
        source_id: int | str,
        target_id: int | None,
        reason: str,
        *,
        invalid: bool = False,
    ) -> RecordResult:
        outcome = RecordOutcome.SKIPPED_INVALID if invalid else RecordOutcome.SKIPPED_DUPLICATE
        record = RecordResult(source_id=source_id, outcome=outcome, target_id=target_id, reason=reason)
        self.records.append(record)
        return record

    def add_error(self, source_id: int | str, error: BaseException | str) -> RecordResult:
        if isinstance(error, BaseException):
            record = RecordResult(
                source_id=source_id,
                outcome=RecordOutcome.ERROR,
                reason=str(error),
                error_type=type(error).__name__,
            )
        else:
            record = RecordResult(source_id=source_id, outcome=RecordOutcome.ERROR, reason=error)
        self.records.append(record)
        return record

    def observe_source_timestamp(self, value: datetime | None) -> None:
        if value is None:
            return
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if self.latest_source_updated_at is None or value > self.latest_source_updated_at:
            self.latest_source_updated_at = value

    def finish(self) -> "SyncResult":
        if self.finished_at is None:
            self.finished_at = datetime.now(timezone.utc)
            self._duration = time.monotonic() - self._started_clock
        return self

    def _count(self, *outcomes: RecordOutcome) -> int:
        return sum(1 for record in self.records if record.outcome in outcomes)

    @property
    def created(self) -> int:
        return self._count(RecordOutcome.CREATED)

    @property
    def updated(self) -> int:
        return self._count(RecordOutcome.UPDATED)

    @property
    def merged(self) -> int:
        return self._count(RecordOutcome.MERGED)

    @property
    def skipped(self) -> int:
        return self._count(RecordOutcome.SKIPPED_DUPLICATE, RecordOutcome.SKIPPED_INVALID)

    @property
    def skipped_invalid(self) -> int:
        return self._count(RecordOutcome.SKIPPED_INVALID)

    @property
    def would_create(self) -> int:
        return self._count(RecordOutcome.WOULD_CREATE)

    @property
    def would_update(self) -> int:
        return self._count(RecordOutcome.WOULD_UPDATE)

    @property
    def would_merge(self) -> int:
        return self._count(RecordOutcome.WOULD_MERGE)

    @property
    def error_count(self) -> int:
        return self._count(RecordOutcome.ERROR)

    @property
    def success_count(self) -> int:
        return self._count(RecordOutcome.CREATED, RecordOutcome.UPDATED, RecordOutcome.MERGED)

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def errors(self) -> list[RecordResult]:
        return [record for record in self.records if record.outcome is RecordOutcome.ERROR]

    def has_errors(self) -> bool:
        return self.error_count > 0

    def outcome_for(self, source_id: int | str) -> RecordResult | None:
        for record in reversed(self.records):
            if str(record.source_id) == str(source_id):
                return record
        return None

    def highest_success_source_id(self) -> int | None:
        highest: int | None = None
        for record in self.records:
            if not record.outcome.is_write:
                continue
            try:
                candidate = int(record.source_id)
            except (TypeError, ValueError):
                continue
            if highest is None or candidate > highest:
                highest = candidate
        return highest

    @property
    def duration_seconds(self) -> float:
        if self._duration is not None:
            return self._duration
        return time.monotonic() - self._started_clock

    @property
    def records_per_second(self) -> float:
        duration = self.duration_seconds
        return round(self.total / duration, 1) if duration > 0 else 0.0

    def summary(self) -> str:
        prefix = "[DRY RUN] " if self.dry_run else ""
        if self.dry_run:
            body = (
                f"would create {self.would_create}, would update {self.would_update}, "
                f"would merge {self.would_merge}"
            )
        else:
            body = f"created {self.created}, updated {self.updated}, merged {self.merged}"
        return (
            f"{prefix}{self.entity_type} from {self.source_system}: {body}, skipped {self.skipped}, "
            f"errors {self.error_count} in {self.duration_seconds:.2f}s ({self.records_per_second} rec/s)"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_system": self.source_system,
            "dry_run": self.dry_run,
            "created": self.created,
            "updated": self.updated,
            "merged": self.merged,
            "skipped": self.skipped,
            "skipped_invalid": self.skipped_invalid,
            "would_create": self.would_create,
            "would_update": self.would_update,
            "would_merge": self.would_merge,
            "errors": [record.to_dict() for record in self.errors],
            "error_count": self.error_count,
            "total": self.total,
            "duration_seconds": round(self.duration_seconds, 3),
            "records_per_second": self.records_per_second,
        }
