"""
Entity handler contract and shared value coercion.

The engine decorates every raw record with metadata keys before a handler
sees it:

``_source_system``
    source system tag of the run.
``_adapter``
    adapter code.
``_on_duplicate``
    duplicate policy of the run.
``_entity_options``
    free-form per-entity options.
``_existing_id`` / ``_action``
    destination id and ``update``/``merge`` when a duplicate was found.
``_original_<field>``
    the source value of a foreign key rewritten through the registry.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, ClassVar, Mapping

from sqlalchemy.orm import Session

from flask_app.models import db

from ..adapters.base import parse_datetime

if TYPE_CHECKING:  # pragma: no cover
    from ..identity import IdentityRegistry

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_MERGE = "merge"


@dataclass(frozen=True)
class ForeignKey:
    """A field holding a source identifier of another entity type."""

    entity_type: str
    required: bool = True

    @classmethod
    def coerce(cls, value: "ForeignKey | str | Mapping[str, Any]") -> "ForeignKey":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(entity_type=value)
        return cls(entity_type=str(value["entity_type"]), required=bool(value.get("required", True)))


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def clean_string(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def optional_string(value: Any) -> str | None:
    cleaned = clean_string(value)
    return cleaned or None


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def parse_decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    if is_empty(value):
        return default
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default


def parse_int(value: Any, default: int | None = None) -> int | None:
    if is_empty(value):
        return default
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def parse_date(value: Any) -> date | None:
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


def parse_json_list(value: Any) -> list:
    """Accept lists or JSON-encoded lists; anything else becomes an empty list."""
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value.strip().startswith("["):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return []
        return decoded if isinstance(decoded, list) else []
    return []


def parse_json_object(value: Any) -> dict | None:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def json_safe(value: Any) -> Any:
    """Make nested source values storable in JSON columns."""
    if isinstance(value, dict):
        return {str(key): json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(item) for item in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class FieldWriter:
    """
    Assigns values to a model instance.

    New rows take every value. In merge mode an existing row keeps its value
    whenever the incoming one is empty; update mode always overwrites.
    """

    def __init__(self, instance: Any, *, is_new: bool, merge: bool) -> None:
        self.instance = instance
        self.is_new = is_new
        self.merge = merge

    def set(self, field: str, value: Any) -> None:
        if not self.is_new and self.merge and is_empty(value):
            return
        setattr(self.instance, field, value)

    def set_if_present(self, record: Mapping[str, Any], field: str, value: Any, source_field: str | None = None) -> None:
        if (source_field or field) in record:
            self.set(field, value)


class EntityHandler(ABC):
    """Validates, deduplicates and persists one entity type."""

    entity_type: ClassVar[str]
    label: ClassVar[str]
    required_fields: ClassVar[tuple[str, ...]] = ()
    foreign_key_fields: ClassVar[Mapping[str, ForeignKey | str | Mapping[str, Any]]] = {}
    external_ref_field: ClassVar[str | None] = None

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session

    def foreign_keys(self) -> dict[str, ForeignKey]:
        return {field: ForeignKey.coerce(config) for field, config in self.foreign_key_fields.items()}

    def validate(self, record: Mapping[str, Any]) -> list[str]:
        """Handler-specific checks beyond required fields."""
        return []

    def find_existing(self, record: Mapping[str, Any]) -> int | None:
        return None

    @abstractmethod
    def import_record(self, record: dict[str, Any], registry: "IdentityRegistry") -> int:
        """Persist one record (create, update or merge) and return the destination id."""

    def external_ref(self, record: Mapping[str, Any]) -> str | None:
        if "_external_ref" in record:
            return optional_string(record["_external_ref"])
        if self.external_ref_field is None:
            return None
        return optional_string(record.get(self.external_ref_field))

    def finalize_batch(self, registry: "IdentityRegistry") -> None:
        """Resolve relationships that need every row of the batch to exist."""

    # -- helpers ---------------------------------------------------------

    @staticmethod
    def action(record: Mapping[str, Any]) -> str:
        return str(record.get("_action") or ACTION_CREATE)

    @staticmethod
    def existing_id(record: Mapping[str, Any]) -> int | None:
        return parse_int(record.get("_existing_id"))

    @staticmethod
    def source_system(record: Mapping[str, Any]) -> str:
        return str(record.get("_source_system") or "import")

    @staticmethod
    def source_id(record: Mapping[str, Any]) -> int | None:
        return parse_int(record.get("entity_id"))

    @staticmethod
    def entity_options(record: Mapping[str, Any]) -> Mapping[str, Any]:
        options = record.get("_entity_options")
        return options if isinstance(options, Mapping) else {}

    @staticmethod
    def store_id(record: Mapping[str, Any], default: int = 1) -> int:
        for key in ("target_store_id", "store_id"):
            value = parse_int(record.get(key))
            if value is not None:
                return value
        return default

    @staticmethod
    def website_id(record: Mapping[str, Any], default: int = 1) -> int:
        for key in ("target_website_id", "website_id"):
            value = parse_int(record.get(key))
            if value is not None:
                return value
        return default

    def writer(self, instance: Any, record: Mapping[str, Any], *, is_new: bool) -> FieldWriter:
        return FieldWriter(instance, is_new=is_new, merge=self.action(record) == ACTION_MERGE)

    def load_or_new(self, model: type, record: Mapping[str, Any]) -> tuple[Any, bool]:
        existing_id = self.existing_id(record)
        if existing_id is not None:
            instance = self.session.get(model, existing_id)
            if instance is not None:
                return instance, False
        instance = model()
        self.session.add(instance)
        return instance, True
