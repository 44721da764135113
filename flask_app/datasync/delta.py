"""
Delta state store: per (source system, entity type) progress of pull syncs.
"""

from __future__ import annotations

import hashlib
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from flask_app.models import DeltaState, db

if TYPE_CHECKING:  # pragma: no cover
    from .result import SyncResult

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS = 5


def config_hash(config: Mapping[str, Any] | None) -> str:
    """Stable 64-character digest of a sync configuration."""
    canonical = json.dumps(config or {}, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class DeltaStateStore:
    """Persistence helpers around ``datasync_delta_state``."""

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

    def load(self, source_system: str, entity_type: str) -> DeltaState | None:
        return self.session.scalar(
            select(DeltaState).where(
                DeltaState.source_system == source_system,
                DeltaState.entity_type == entity_type,
            )
        )

    def last_sync_time(self, source_system: str, entity_type: str) -> datetime | None:
        state = self.load(source_system, entity_type)
        return state.last_sync_at if state else None

    def last_synced_id(self, source_system: str, entity_type: str) -> int | None:
        state = self.load(source_system, entity_type)
        return state.last_entity_id if state else None

    def has_config_changed(self, source_system: str, entity_type: str, config: Mapping[str, Any] | None) -> bool:
        state = self.load(source_system, entity_type)
        if state is None or state.config_hash is None:
            return False
        return state.config_hash != config_hash(config)

    def record_success(
        self,
        source_system: str,
        entity_type: str,
        adapter_code: str,
        *,
        high_water_entity_id: int | None,
        high_water_updated_at: datetime | None,
        synced_count: int,
        error_count: int,
        config_hash_value: str | None,
        errors: Iterable[str] = (),
    ) -> DeltaState:
        """
        Advance (or lazily create) the bookkeeping row.

        The high-water id and timestamp never move backwards.
        """
        with self._transaction():
            state = self.load(source_system, entity_type)
            if state is None:
                state = DeltaState(
                    source_system=source_system,
                    entity_type=entity_type,
                    adapter_code=adapter_code,
                    sync_count=0,
                    error_count=0,
                )
                self.session.add(state)

            state.adapter_code = adapter_code
            state.last_sync_at = datetime.now(timezone.utc)
            if high_water_entity_id is not None and (
                state.last_entity_id is None or high_water_entity_id > state.last_entity_id
            ):
                state.last_entity_id = high_water_entity_id
            current_updated_at = _as_aware(state.last_updated_at)
            candidate_updated_at = _as_aware(high_water_updated_at)
            if candidate_updated_at is not None and (
                current_updated_at is None or candidate_updated_at > current_updated_at
            ):
                state.last_updated_at = candidate_updated_at
            state.sync_count = (state.sync_count or 0) + max(0, synced_count)
            state.error_count = (state.error_count or 0) + max(0, error_count)
            messages = list(errors)[:MAX_STORED_ERRORS]
            state.last_error = "\n".join(messages) if messages else None
            state.config_hash = config_hash_value
        return state

    def update_from_result(
        self,
        source_system: str,
        entity_type: str,
        adapter_code: str,
        result: "SyncResult",
        config: Mapping[str, Any] | None = None,
    ) -> DeltaState:
        return self.record_success(
            source_system,
            entity_type,
            adapter_code,
            high_water_entity_id=result.highest_success_source_id(),
            high_water_updated_at=result.latest_source_updated_at,
            synced_count=result.success_count,
            error_count=result.error_count,
            config_hash_value=config_hash(config),
            errors=(error.message for error in result.errors),
        )

    def reset_state(self, source_system: str, entity_type: str | None = None) -> int:
        statement = select(DeltaState).where(DeltaState.source_system == source_system)
        if entity_type:
            statement = statement.where(DeltaState.entity_type == entity_type)
        with self._transaction():
            states = list(self.session.scalars(statement))
            for state in states:
                state.clear_progress()
        logger.info(
            "Reset delta state",
            extra={
                "datasync_source_system": source_system,
                "datasync_entity_type": entity_type,
                "datasync_rows": len(states),
            },
        )
        return len(states)

    def delete_by_source_system(self, source_system: str) -> int:
        with self._transaction():
            result = self.session.execute(delete(DeltaState).where(DeltaState.source_system == source_system))
        return result.rowcount or 0

    def states_for_source(self, source_system: str) -> list[DeltaState]:
        return list(
            self.session.scalars(
                select(DeltaState).where(DeltaState.source_system == source_system).order_by(DeltaState.entity_type)
            )
        )

    def all_states(self) -> list[DeltaState]:
        return list(self.session.scalars(select(DeltaState).order_by(DeltaState.source_system, DeltaState.entity_type)))
