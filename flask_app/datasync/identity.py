"""
Identity registry: durable source-id -> destination-id mappings.

The engine rewrites foreign keys through ``resolve`` before a handler runs and
records every imported entity through ``register`` so later records (and later
runs) can find it. Lookups are cached per registry instance; a fresh instance
is created per sync run.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from flask_app.models import RegistryMapping, db

logger = logging.getLogger(__name__)

_CacheKey = tuple[str, str, int]


@dataclass(frozen=True)
class MappingInput:
    """One mapping row accepted by ``IdentityRegistry.bulk_upsert``."""

    source_system: str
    entity_type: str
    source_id: int
    target_id: int
    external_ref: str | None = None
    metadata: Mapping[str, Any] | None = field(default=None)

    @classmethod
    def coerce(cls, value: "MappingInput | Mapping[str, Any]") -> "MappingInput":
        if isinstance(value, cls):
            return value
        return cls(
            source_system=str(value["source_system"]),
            entity_type=str(value["entity_type"]),
            source_id=int(value["source_id"]),
            target_id=int(value["target_id"]),
            external_ref=value.get("external_ref"),
            metadata=value.get("metadata"),
        )

    @property
    def key(self) -> _CacheKey:
        return (self.source_system, self.entity_type, self.source_id)


class IdentityRegistry:
    """Read/write access to ``datasync_entity_registry``."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session
        self._cache: dict[_CacheKey, int] = {}

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def resolve(self, source_system: str, entity_type: str, source_id: int | str) -> int | None:
        key = (source_system, entity_type, int(source_id))
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        target_id = self.session.scalar(
            select(RegistryMapping.target_id).where(
                RegistryMapping.source_system == source_system,
                RegistryMapping.entity_type == entity_type,
                RegistryMapping.source_id == key[2],
            )
        )
        # Misses are not cached: the mapping may be registered later in the same run.
        if target_id is not None:
            self._cache[key] = target_id
        return target_id

    def resolve_many(
        self, source_system: str, entity_type: str, source_ids: Iterable[int | str]
    ) -> dict[int, int]:
        wanted = sorted({int(source_id) for source_id in source_ids})
        if not wanted:
            return {}
        rows = self.session.execute(
            select(RegistryMapping.source_id, RegistryMapping.target_id).where(
                RegistryMapping.source_system == source_system,
                RegistryMapping.entity_type == entity_type,
                RegistryMapping.source_id.in_(wanted),
            )
        ).all()
        resolved = {source_id: target_id for source_id, target_id in rows}
        for source_id, target_id in resolved.items():
            self._cache[(source_system, entity_type, source_id)] = target_id
        return resolved

    def exists(self, source_system: str, entity_type: str, source_id: int | str) -> bool:
        return self.resolve(source_system, entity_type, source_id) is not None

    def register(
        self,
        source_system: str,
        entity_type: str,
        source_id: int | str,
        target_id: int,
        external_ref: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> RegistryMapping:
        """
        Insert or refresh one mapping inside the caller's transaction.

        Only target_id, external_ref, metadata and synced_at are overwritten.
        """
        source_id = int(source_id)
        mapping = self.session.scalar(
            select(RegistryMapping).where(
                RegistryMapping.source_system == source_system,
                RegistryMapping.entity_type == entity_type,
                RegistryMapping.source_id == source_id,
            )
        )
        now = datetime.now(timezone.utc)
        if mapping is None:
            mapping = RegistryMapping(
                source_system=source_system,
                entity_type=entity_type,
                source_id=source_id,
                target_id=int(target_id),
                external_ref=external_ref,
                metadata_json=dict(metadata) if metadata else None,
                synced_at=now,
            )
            self.session.add(mapping)
        else:
            mapping.target_id = int(target_id)
            mapping.external_ref = external_ref
            mapping.metadata_json = dict(metadata) if metadata else None
            mapping.synced_at = now
        self.session.flush()
        self._cache[(source_system, entity_type, source_id)] = int(target_id)
        return mapping

    def bulk_upsert(self, mappings: Sequence[MappingInput | Mapping[str, Any]]) -> int:
        """
        Idempotently write many mappings in one transaction.

        Duplicate keys inside ``mappings`` collapse to the last occurrence.
        Returns the number of distinct mappings written.
        """
        latest: dict[_CacheKey, MappingInput] = {}
        for raw in mappings:
            item = MappingInput.coerce(raw)
            latest[item.key] = item
        if not latest:
            return 0

        now = datetime.now(timezone.utc)
        with self._transaction():
            existing_rows = self._load_existing(latest.keys())
            new_rows: list[dict[str, Any]] = []
            for key, item in latest.items():
                row = existing_rows.get(key)
                if row is None:
                    new_rows.append(
                        {
                            "source_system": item.source_system,
                            "entity_type": item.entity_type,
                            "source_id": item.source_id,
                            "target_id": item.target_id,
                            "external_ref": item.external_ref,
                            "metadata_json": dict(item.metadata) if item.metadata else None,
                            "synced_at": now,
                            "created_at": now,
                            "updated_at": now,
                        }
                    )
                    continue
                row.target_id = item.target_id
                row.external_ref = item.external_ref
                row.metadata_json = dict(item.metadata) if item.metadata else None
                row.synced_at = now
            if new_rows:
                self.session.execute(RegistryMapping.__table__.insert(), new_rows)

        for key, item in latest.items():
            self._cache[key] = item.target_id
        logger.info(
            "Registry bulk upsert wrote %s mappings",
            len(latest),
            extra={
                "datasync_registry_inserted": len(latest) - len(existing_rows),
                "datasync_registry_updated": len(existing_rows),
            },
        )
        return len(latest)

    def _load_existing(self, keys: Iterable[_CacheKey]) -> dict[_CacheKey, RegistryMapping]:
        grouped: dict[tuple[str, str], set[int]] = {}
        for source_system, entity_type, source_id in keys:
            grouped.setdefault((source_system, entity_type), set()).add(source_id)

        existing: dict[_CacheKey, RegistryMapping] = {}
        for (source_system, entity_type), source_ids in grouped.items():
            rows = self.session.scalars(
                select(RegistryMapping).where(
                    RegistryMapping.source_system == source_system,
                    RegistryMapping.entity_type == entity_type,
                    RegistryMapping.source_id.in_(sorted(source_ids)),
                )
            )
            for row in rows:
                existing[(row.source_system, row.entity_type, row.source_id)] = row
        return existing

    def delete_by_source_system(self, source_system: str, entity_type: str | None = None) -> int:
        statement = delete(RegistryMapping).where(RegistryMapping.source_system == source_system)
        if entity_type:
            statement = statement.where(RegistryMapping.entity_type == entity_type)
        with self._transaction():
            result = self.session.execute(statement)
        self.clear_cache()
        logger.info(
            "Deleted registry mappings",
            extra={
                "datasync_source_system": source_system,
                "datasync_entity_type": entity_type,
                "datasync_rows": result.rowcount,
            },
        )
        return result.rowcount or 0

    def find_by_external_ref(
        self,
        external_ref: str,
        *,
        entity_type: str | None = None,
        source_system: str | None = None,
    ) -> list[RegistryMapping]:
        statement = select(RegistryMapping).where(RegistryMapping.external_ref == external_ref)
        if entity_type:
            statement = statement.where(RegistryMapping.entity_type == entity_type)
        if source_system:
            statement = statement.where(RegistryMapping.source_system == source_system)
        return list(self.session.scalars(statement.order_by(RegistryMapping.id)))

    def find_by_target(self, entity_type: str, target_id: int) -> list[RegistryMapping]:
        """Reverse lookup; several source systems may map onto the same destination row."""
        statement = (
            select(RegistryMapping)
            .where(RegistryMapping.entity_type == entity_type, RegistryMapping.target_id == int(target_id))
            .order_by(RegistryMapping.id)
        )
        return list(self.session.scalars(statement))

    def stats(self, source_system: str | None = None) -> dict[str, int]:
        statement = select(RegistryMapping.entity_type, func.count(RegistryMapping.id)).group_by(
            RegistryMapping.entity_type
        )
        if source_system:
            statement = statement.where(RegistryMapping.source_system == source_system)
        return {entity_type: count for entity_type, count in self.session.execute(statement).all()}

    def preload(self, source_system: str, entity_type: str) -> int:
        """Warm the cache with every mapping of one entity type."""
        rows = self.session.execute(
            select(RegistryMapping.source_id, RegistryMapping.target_id).where(
                RegistryMapping.source_system == source_system,
                RegistryMapping.entity_type == entity_type,
            )
        ).all()
        for source_id, target_id in rows:
            self._cache[(source_system, entity_type, source_id)] = target_id
        return len(rows)

    def clear_cache(self) -> None:
        self._cache.clear()
