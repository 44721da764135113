"""
Source adapter contract and shared filter handling.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timezone
from typing import Any, ClassVar, Iterable, Iterator, Mapping

from ..constants import HANDLED_ENTITY_TYPES
from ..errors import ConfigurationError

# Source column carrying the ledger identifier when it is not ``entity_id``.
SOURCE_ID_FIELDS: dict[str, str] = {
    "stock": "product_id",
    "newsletter": "subscriber_id",
    "product_attribute": "attribute_id",
    "cms_page": "page_id",
    "cms_block": "block_id",
}


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO strings, ``YYYY-MM-DD`` dates and unix timestamps; naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    else:
        text = str(value).strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise ConfigurationError(f"Invalid date filter '{value}'. Use YYYY-MM-DD.") from exc


def _split(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, Iterable):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value)]


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Expected an integer filter value, got '{value}'.") from exc


@dataclass(frozen=True)
class SyncFilters:
    """Normalised restrictions applied by every adapter."""

    date_from: date | None = None
    date_to: date | None = None
    id_from: int | None = None
    id_to: int | None = None
    entity_ids: tuple[int, ...] | None = None
    increment_ids: tuple[str, ...] | None = None
    limit: int | None = None
    offset: int = 0
    store_id: tuple[int, ...] | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw: "SyncFilters | Mapping[str, Any] | None") -> "SyncFilters":
        if isinstance(raw, cls):
            return raw
        raw = dict(raw or {})
        entity_ids = _split(raw.pop("entity_ids", None))
        increment_ids = _split(raw.pop("increment_ids", None))
        store_ids = _split(raw.pop("store_id", None))
        try:
            entity_id_values = tuple(int(value) for value in entity_ids)
            store_id_values = tuple(int(value) for value in store_ids)
        except ValueError as exc:
            raise ConfigurationError(f"Identifier filters must be integers: {exc}") from exc
        return cls(
            date_from=_parse_date(raw.pop("date_from", None)),
            date_to=_parse_date(raw.pop("date_to", None)),
            id_from=_optional_int(raw.pop("id_from", None)),
            id_to=_optional_int(raw.pop("id_to", None)),
            entity_ids=entity_id_values or None,
            increment_ids=tuple(increment_ids) or None,
            limit=_optional_int(raw.pop("limit", None)),
            offset=_optional_int(raw.pop("offset", None)) or 0,
            store_id=store_id_values or None,
            extra={key: value for key, value in raw.items() if value is not None},
        )

    def with_entity_ids(self, entity_ids: Iterable[int]) -> "SyncFilters":
        return replace(self, entity_ids=tuple(sorted({int(entity_id) for entity_id in entity_ids})))

    @property
    def date_from_bound(self) -> datetime | None:
        if self.date_from is None:
            return None
        return datetime.combine(self.date_from, time.min, tzinfo=timezone.utc)

    @property
    def date_to_bound(self) -> datetime | None:
        """End of the ``date_to`` day, inclusive."""
        if self.date_to is None:
            return None
        return datetime.combine(self.date_to, time.max, tzinfo=timezone.utc)

    def matches(self, record: Mapping[str, Any], *, id_field: str = "entity_id", date_field: str = "created_at") -> bool:
        """In-memory filter used by adapters that cannot push filters down."""
        raw_id = record.get(id_field)
        if raw_id not in (None, ""):
            try:
                record_id = int(raw_id)
            except (TypeError, ValueError):
                record_id = None
            if record_id is not None:
                if self.id_from is not None and record_id < self.id_from:
                    return False
                if self.id_to is not None and record_id > self.id_to:
                    return False
                if self.entity_ids is not None and record_id not in self.entity_ids:
                    return False
        elif self.entity_ids is not None:
            return False

        if self.increment_ids is not None and str(record.get("increment_id", "")) not in self.increment_ids:
            return False

        record_date = parse_datetime(record.get(date_field))
        if record_date is not None:
            if self.date_from_bound is not None and record_date < self.date_from_bound:
                return False
            if self.date_to_bound is not None and record_date > self.date_to_bound:
                return False

        if self.store_id is not None and record.get("store_id") not in (None, ""):
            try:
                if int(record["store_id"]) not in self.store_id:
                    return False
            except (TypeError, ValueError):
                return False

        for key, expected in self.extra.items():
            if key in record and str(record[key]) != str(expected):
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "id_from": self.id_from,
            "id_to": self.id_to,
            "entity_ids": list(self.entity_ids) if self.entity_ids is not None else None,
            "increment_ids": list(self.increment_ids) if self.increment_ids is not None else None,
            "limit": self.limit,
            "offset": self.offset,
            "store_id": list(self.store_id) if self.store_id is not None else None,
            "extra": dict(self.extra),
        }


class SourceAdapter(ABC):
    """Reads raw source records as plain dictionaries."""

    code: ClassVar[str]
    label: ClassVar[str]
    supported_entities: ClassVar[tuple[str, ...]] = HANDLED_ENTITY_TYPES

    def __init__(self) -> None:
        self.options: dict[str, Any] = {}
        self._configured = False

    def configure(self, **options: Any) -> "SourceAdapter":
        self.options.update({key: value for key, value in options.items() if value is not None})
        self._configured = True
        return self

    def _ensure_configured(self) -> None:
        if not self._configured:
            raise ConfigurationError(f"Adapter {self.code} not configured. Call configure() first.")

    def supports(self, entity_type: str) -> bool:
        return entity_type in self.supported_entities

    @abstractmethod
    def validate(self) -> bool:
        """Check that the source is reachable; raise ``ConnectionFailed`` or ``ConfigurationError`` if not."""

    @abstractmethod
    def read(self, entity_type: str, filters: SyncFilters | None = None) -> Iterator[dict[str, Any]]:
        """Lazily yield raw records; the sequence is not restartable."""

    def count(self, entity_type: str, filters: SyncFilters | None = None) -> int | None:
        return None

    @abstractmethod
    def existing_ids(self, entity_type: str, ids: Iterable[int]) -> set[int]:
        """Return the subset of ``ids`` that still exist at the source."""

    def close(self) -> None:
        """Release connections held for the run."""

    def info(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "label": self.label,
            "configured": self._configured,
            "supported_entities": list(self.supported_entities),
        }
