"""
Synchronization engine shared by the bulk ``sync`` command and the
incremental service.

Each record goes through: fetched, FK-resolved, existence-checked, then one
of create, update, merge, skip or error, and finally persisted and registered.
Records are committed one at a time; a failing record is rolled back and
recorded without stopping the batch. Configuration and connection failures
abort the run.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy.orm import Session

from flask_app.models import db

from . import metrics
from .adapters.base import SOURCE_ID_FIELDS, SourceAdapter, SyncFilters, parse_datetime
from .constants import DUPLICATE_ERROR, DUPLICATE_MERGE, DUPLICATE_MODES, DUPLICATE_SKIP
from .delta import DeltaStateStore
from .errors import (
    ConfigurationError,
    ConnectionFailed,
    DataSyncError,
    DuplicateEntity,
    EntityNotSupported,
    ForeignKeyResolutionFailed,
    ValidationFailed,
)
from .handlers import EntityHandler, get_handler
from .handlers.base import ACTION_MERGE, ACTION_UPDATE, is_empty
from .identity import IdentityRegistry
from .result import RecordOutcome, RecordResult, SyncResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

DEFAULT_PROGRESS_INTERVAL = 100


class _SkipRecord(Exception):
    """Ends processing of one record with a recorded skip."""


class SyncEngine:
    """Drives one adapter and the entity handlers for a single source system."""

    def __init__(
        self,
        adapter: SourceAdapter | None = None,
        *,
        source_system: str | None = None,
        on_duplicate: str = DUPLICATE_ERROR,
        skip_invalid: bool = False,
        dry_run: bool = False,
        filters: SyncFilters | Mapping[str, Any] | None = None,
        entity_options: Mapping[str, Any] | None = None,
        progress_callback: ProgressCallback | None = None,
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
        verbose: bool = False,
        session: Session | None = None,
        registry: IdentityRegistry | None = None,
        delta_store: DeltaStateStore | None = None,
    ) -> None:
        self.session = session or db.session
        self.adapter = adapter
        self.source_system = source_system or ""
        self.on_duplicate = self._validate_duplicate_mode(on_duplicate)
        self.skip_invalid = skip_invalid
        self.dry_run = dry_run
        self.filters = SyncFilters.from_mapping(filters)
        self.entity_options = dict(entity_options or {})
        self.progress_callback = progress_callback
        self.progress_interval = max(1, int(progress_interval))
        self.verbose = verbose
        self.registry = registry or IdentityRegistry(self.session)
        self.delta_store = delta_store or DeltaStateStore(self.session)

    @staticmethod
    def _validate_duplicate_mode(mode: str) -> str:
        if mode not in DUPLICATE_MODES:
            raise ConfigurationError(
                f"Invalid duplicate mode: {mode}. Must be one of: {', '.join(DUPLICATE_MODES)}"
            )
        return mode

    # -- output ------------------------------------------------------------

    def _progress(self, message: str) -> None:
        if self.verbose and self.progress_callback is not None:
            self.progress_callback(message)

    def _log(self, message: str, **extra: Any) -> None:
        logger.info(message, extra=extra or None)
        self._progress(message)

    def config_snapshot(self) -> dict[str, Any]:
        """Inputs that change which records a pull run reads; targeted identifier lists are left out."""
        filters = self.filters.to_dict()
        filters.pop("entity_ids", None)
        return {
            "filters": filters,
            "adapter": self.adapter.code if self.adapter is not None else None,
            "on_duplicate": self.on_duplicate,
        }

    # -- pipeline ----------------------------------------------------------

    def _validate_prerequisites(self, entity_type: str) -> None:
        if self.adapter is None:
            raise ConfigurationError("Source adapter not set.")
        if not self.source_system:
            raise ConfigurationError("Source system not set.")
        if not self.adapter.supports(entity_type):
            raise EntityNotSupported(entity_type, owner=f"Adapter {self.adapter.code}")
        if not self.adapter.validate():
            raise ConnectionFailed(f"Adapter {self.adapter.code} validation failed")

    def _decorate(self, record: Mapping[str, Any]) -> dict[str, Any]:
        decorated = dict(record)
        decorated["_source_system"] = self.source_system
        decorated["_adapter"] = self.adapter.code if self.adapter is not None else None
        decorated["_on_duplicate"] = self.on_duplicate
        decorated["_entity_options"] = self.entity_options
        return decorated

    def resolve_foreign_keys(self, handler: EntityHandler, record: dict[str, Any]) -> dict[str, Any]:
        """
        Rewrite foreign keys from source to destination identifiers.

        Empty values are left alone. Unresolved optional keys become ``None``;
        unresolved required keys raise ``ForeignKeyResolutionFailed``.
        """
        for field, foreign_key in handler.foreign_keys().items():
            value = record.get(field)
            if is_empty(value):
                continue
            source_id = int(value)
            target_id = self.registry.resolve(self.source_system, foreign_key.entity_type, source_id)
            if target_id is None and foreign_key.required:
                raise ForeignKeyResolutionFailed(
                    handler.entity_type, field, source_id, self.source_system, foreign_key.entity_type
                )
            record[field] = target_id
            record[f"_original_{field}"] = source_id
        return record

    @staticmethod
    def validation_errors(handler: EntityHandler, record: Mapping[str, Any]) -> list[str]:
        errors: list[str] = []
        missing = [field for field in handler.required_fields if is_empty(record.get(field))]
        if missing:
            errors.append(f"Missing required fields: {', '.join(missing)}")
        errors.extend(handler.validate(record))
        return errors

    @staticmethod
    def source_id_of(entity_type: str, record: Mapping[str, Any], fallback: int) -> int | str:
        value = record.get("entity_id")
        if is_empty(value):
            value = record.get(SOURCE_ID_FIELDS.get(entity_type, "entity_id"))
        if is_empty(value):
            return fallback
        try:
            return int(value)
        except (TypeError, ValueError):
            return str(value)

    def _process(
        self,
        handler: EntityHandler,
        raw: Mapping[str, Any],
        result: SyncResult,
        position: int,
    ) -> RecordResult:
        entity_type = handler.entity_type
        record = self._decorate(raw)
        source_id = self.source_id_of(entity_type, record, position)
        record.setdefault("entity_id", source_id)
        registered = False
        try:
            try:
                self.resolve_foreign_keys(handler, record)
            except ForeignKeyResolutionFailed as exc:
                if not self.skip_invalid:
                    raise
                raise _SkipRecord(str(exc)) from exc

            errors = self.validation_errors(handler, record)
            if errors:
                if not self.skip_invalid:
                    raise ValidationFailed(entity_type, source_id, errors)
                raise _SkipRecord(f"Validation failed: {'; '.join(errors)}")

            existing_id = handler.find_existing(record)
            if existing_id is not None:
                if self.on_duplicate == DUPLICATE_SKIP:
                    self._progress(f"Skipped {entity_type} #{source_id} (exists as #{existing_id})")
                    return result.add_skipped(source_id, existing_id, "Duplicate - skipped")
                if self.on_duplicate == DUPLICATE_ERROR:
                    raise DuplicateEntity(entity_type, source_id, existing_id)
                record["_existing_id"] = existing_id
                record["_action"] = ACTION_MERGE if self.on_duplicate == DUPLICATE_MERGE else ACTION_UPDATE

            if self.dry_run:
                if existing_id is None:
                    outcome = RecordOutcome.WOULD_CREATE
                elif self.on_duplicate == DUPLICATE_MERGE:
                    outcome = RecordOutcome.WOULD_MERGE
                else:
                    outcome = RecordOutcome.WOULD_UPDATE
                self._progress(f"Would {outcome.value.split('_', 1)[1]} {entity_type} #{source_id}")
                return result.add_success(source_id, existing_id, outcome)

            target_id = handler.import_record(record, self.registry)
            self.registry.register(
                self.source_system,
                entity_type,
                source_id,
                target_id,
                external_ref=handler.external_ref(record),
                metadata={"adapter": record["_adapter"]} if record.get("_adapter") else None,
            )
            registered = True
            self.session.commit()

            if existing_id is None:
                outcome = RecordOutcome.CREATED
            elif self.on_duplicate == DUPLICATE_MERGE:
                outcome = RecordOutcome.MERGED
            else:
                outcome = RecordOutcome.UPDATED
            result.observe_source_timestamp(parse_datetime(record.get("updated_at")))
            self._progress(f"{outcome.value} {entity_type} #{source_id} -> #{target_id}")
            return result.add_success(source_id, target_id, outcome)

        except _SkipRecord as skip:
            self.session.rollback()
            self._progress(f"Skipped invalid {entity_type} #{source_id}: {skip}")
            return result.add_skipped(source_id, None, str(skip), invalid=True)
        except ConnectionFailed:
            self.session.rollback()
            raise
        except Exception as exc:
            self.session.rollback()
            if registered:
                self.registry.clear_cache()
            logger.warning(
                "Failed to import record",
                extra={
                    "datasync_entity_type": entity_type,
                    "datasync_source_id": source_id,
                    "datasync_error": str(exc),
                    "datasync_error_code": getattr(exc, "code", None),
                },
                exc_info=not isinstance(exc, DataSyncError),
            )
            self._progress(f"ERROR: {exc}")
            return result.add_error(source_id, exc)

    def _finalize(self, handler: EntityHandler) -> None:
        try:
            handler.finalize_batch(self.registry)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def sync(self, entity_type: str) -> SyncResult:
        """Pull every record of ``entity_type`` matching the filters and apply it."""
        self._validate_prerequisites(entity_type)
        handler = get_handler(entity_type, self.session)
        result = SyncResult(entity_type=entity_type, source_system=self.source_system, dry_run=self.dry_run)

        snapshot = self.config_snapshot()
        if self.delta_store.has_config_changed(self.source_system, entity_type, snapshot):
            logger.warning(
                "Sync configuration changed since the last run; high-water marks may not apply",
                extra={"datasync_entity_type": entity_type, "datasync_source_system": self.source_system},
            )

        self._log(
            f"Starting sync for {entity_type} from {self.source_system}",
            datasync_entity_type=entity_type,
            datasync_source_system=self.source_system,
            datasync_dry_run=self.dry_run,
        )
        if self.dry_run:
            self._log("DRY RUN MODE - No data will be imported")

        started = time.monotonic()
        last_tick, last_count = started, 0
        count = 0
        try:
            for raw in self.adapter.read(entity_type, self.filters):
                count += 1
                if count % self.progress_interval == 0:
                    now = time.monotonic()
                    overall = count / (now - started) if now > started else 0.0
                    current = (count - last_count) / (now - last_tick) if now > last_tick else 0.0
                    self._progress(
                        f"Progress: {count} records | {overall:.1f} rec/s (current: {current:.1f} rec/s)"
                    )
                    last_tick, last_count = now, count
                self._process(handler, raw, result, count)

            if not self.dry_run:
                self._finalize(handler)
        except Exception:
            result.finish()
            logger.exception(
                "Sync failed",
                extra={"datasync_entity_type": entity_type, "datasync_source_system": self.source_system},
            )
            raise

        result.finish()
        for outcome in RecordOutcome:
            counted = sum(1 for record in result.records if record.outcome is outcome)
            if counted:
                metrics.record_outcome(entity_type, outcome.value, counted)

        if not self.dry_run:
            self.delta_store.update_from_result(
                self.source_system,
                entity_type,
                self.adapter.code,
                result,
                snapshot,
            )
        self._log(result.summary(), datasync_entity_type=entity_type, datasync_total=result.total)
        return result

    def sync_ids(self, entity_type: str, source_ids: Iterable[int]) -> SyncResult:
        """Run ``sync`` restricted to explicit source identifiers."""
        original = self.filters
        self.filters = original.with_entity_ids(source_ids)
        try:
            return self.sync(entity_type)
        finally:
            self.filters = original

    def import_single(self, entity_type: str, record: Mapping[str, Any]) -> RecordResult:
        """The per-record pipeline for one programmatically supplied record."""
        if not self.source_system:
            raise ConfigurationError("Source system not set.")
        handler = get_handler(entity_type, self.session)
        result = SyncResult(entity_type=entity_type, source_system=self.source_system, dry_run=self.dry_run)
        outcome = self._process(handler, record, result, 1)
        if not self.dry_run and outcome.outcome.is_write:
            self._finalize(handler)
        metrics.record_outcome(entity_type, outcome.outcome.value)
        return outcome
