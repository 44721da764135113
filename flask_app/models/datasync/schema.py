"""
SQLAlchemy models backing the synchronization core.

``RegistryMapping`` and ``DeltaState`` live in the destination database and are
the durable record of cross-system identity and pull progress.
``ChangeRecord`` lives on the ``source`` bind: the source system appends and
coalesces rows there, the destination only reads pending rows and retires them.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..base import BaseModel, db, utcnow


class ChangeAction(str, enum.Enum):
    """Mutation kinds recorded by the source-side change tracker."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def coerce(cls, value: "ChangeAction | str") -> "ChangeAction":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported change action '{value}'.") from exc


class SyncStatus(int, enum.Enum):
    """Completion flag of a change-tracker row (stored as 0/1)."""

    PENDING = 0
    COMPLETED = 1


class RegistryMapping(BaseModel):
    """Maps a source identifier to the destination identifier it was imported as."""

    __tablename__ = "datasync_entity_registry"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    source_system: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    source_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    target_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    external_ref: Mapped[str | None] = mapped_column(
        db.String(255),
        nullable=True,
        comment="Alternate lookup key such as email, SKU or increment id. Not unique.",
    )
    synced_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "source_system",
            "entity_type",
            "source_id",
            name="uq_datasync_registry_source",
        ),
        Index("idx_datasync_registry_target", "entity_type", "target_id"),
        Index("idx_datasync_registry_external_ref", "external_ref"),
        Index("idx_datasync_registry_synced_at", "synced_at"),
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "source_system": self.source_system,
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "external_ref": self.external_ref,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "metadata": self.metadata_json,
        }


class DeltaState(BaseModel):
    """High-water mark of the last pull-based sync for a source/entity pair."""

    __tablename__ = "datasync_delta_state"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    source_system: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    adapter_code: Mapped[str] = mapped_column(db.String(50), nullable=False, default="csv")
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_entity_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    last_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    sync_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    config_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("source_system", "entity_type", name="uq_datasync_delta_source_entity"),
    )

    def clear_progress(self) -> None:
        """Forget progress while keeping the identity of the row."""

        self.last_sync_at = None
        self.last_entity_id = None
        self.last_updated_at = None
        self.last_error = None
        self.sync_count = 0
        self.error_count = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "source_system": self.source_system,
            "entity_type": self.entity_type,
            "adapter_code": self.adapter_code,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_entity_id": self.last_entity_id,
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
            "sync_count": self.sync_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "config_hash": self.config_hash,
        }


class ChangeRecord(db.Model):
    """One coalesced mutation event written by the source system."""

    __tablename__ = "datasync_change_tracker"
    __bind_key__ = "source"

    tracker_id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    action: Mapped[ChangeAction] = mapped_column(
        Enum(
            ChangeAction,
            name="datasync_change_action_enum",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
            native_enum=False,
            length=10,
        ),
        nullable=False,
        default=ChangeAction.UPDATE,
    )
    created_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    sync_completed: Mapped[int] = mapped_column(
        db.SmallInteger,
        nullable=False,
        default=SyncStatus.PENDING.value,
    )

    __table_args__ = (
        UniqueConstraint(
            "entity_type",
            "entity_id",
            "sync_completed",
            name="uq_datasync_tracker_entity_status",
        ),
        Index("idx_datasync_tracker_status_type", "sync_completed", "entity_type"),
        Index("idx_datasync_tracker_entity", "entity_type", "entity_id"),
        Index("idx_datasync_tracker_created_at", "created_at"),
    )

    @property
    def is_pending(self) -> bool:
        return self.sync_completed == SyncStatus.PENDING.value

    def __repr__(self):
        return f"<ChangeRecord {self.tracker_id} {self.entity_type}#{self.entity_id} {self.action}>"
