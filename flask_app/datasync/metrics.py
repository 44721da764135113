"""Prometheus metrics helpers for DataSync."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_records_counter = Counter(
    "datasync_records_total",
    "Source records processed by entity type and outcome.",
    ["entity_type", "outcome"],
)
_ledger_completed_counter = Counter(
    "datasync_ledger_completed_total",
    "Change-ledger rows marked completed.",
)
_completion_failure_counter = Counter(
    "datasync_ledger_completion_failures_total",
    "Completion attempts that did not retire their rows, by status.",
    ["status"],
)
_lock_contention_counter = Counter(
    "datasync_lock_contention_total",
    "Incremental runs refused because another run held the lock.",
)
_batch_duration = Histogram(
    "datasync_batch_duration_seconds",
    "Duration of one entity-type batch in seconds.",
    ["entity_type", "mode"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
)
_pending_gauge = Gauge(
    "datasync_ledger_pending_rows",
    "Pending change-ledger rows observed at the start of the last run.",
    ["entity_type"],
)


def record_outcome(entity_type: str, outcome: str, count: int = 1) -> None:
    """Increment the per-record outcome counter."""

    if count <= 0:
        return
    _records_counter.labels(entity_type=entity_type, outcome=outcome).inc(count)


def record_ledger_completed(count: int) -> None:
    if count > 0:
        _ledger_completed_counter.inc(count)


def record_completion_failure(status: Literal["permission_denied", "duplicate_handled", "failed"]) -> None:
    _completion_failure_counter.labels(status=status).inc()


def record_lock_contention() -> None:
    _lock_contention_counter.inc()


def record_batch(*, entity_type: str, mode: Literal["batch", "individual", "sync"], duration_seconds: float) -> None:
    """Capture the duration of a dispatched entity-type group."""

    _batch_duration.labels(entity_type=entity_type, mode=mode).observe(duration_seconds)


def record_pending(counts: dict[str, int]) -> None:
    for entity_type, count in counts.items():
        _pending_gauge.labels(entity_type=entity_type).set(count)
