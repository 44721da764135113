"""
Typed adapter registry.

Adapter codes map to descriptors carrying a factory so configuration can be
validated at start-up before any adapter is constructed.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence, Tuple

from ..errors import AdapterNotFound
from .base import SOURCE_ID_FIELDS, SourceAdapter, SyncFilters, parse_datetime
from .csv_file import CSVAdapter
from .database import DatabaseAdapter, build_source_url


@dataclass(frozen=True)
class AdapterDescriptor:
    """Metadata and factory for one source adapter."""

    name: str
    title: str
    factory: Callable[[], SourceAdapter]
    summary: str | None = None


def get_adapter_registry() -> Mapping[str, AdapterDescriptor]:
    return OrderedDict(
        (
            (
                "csv",
                AdapterDescriptor(
                    name="csv",
                    title="CSV File",
                    factory=CSVAdapter,
                    summary="Read one entity type from a CSV export.",
                ),
            ),
            (
                "database",
                AdapterDescriptor(
                    name="database",
                    title="Source Database",
                    factory=DatabaseAdapter,
                    summary="Read the source store's tables directly.",
                ),
            ),
        )
    )


def resolve_adapters(
    configured: Sequence[str],
    registry: Mapping[str, AdapterDescriptor] | None = None,
) -> Tuple[AdapterDescriptor, ...]:
    """
    Map configured adapter codes to registry descriptors, raising on unknowns.
    """
    registry = registry or get_adapter_registry()
    unknown = sorted({adapter for adapter in configured if adapter not in registry})
    if unknown:
        raise AdapterNotFound(", ".join(unknown), tuple(registry.keys()))
    return tuple(registry[adapter] for adapter in configured)


def create_adapter(
    code: str,
    *,
    allowed: Iterable[str] | None = None,
    **options: Any,
) -> SourceAdapter:
    """Instantiate and configure an adapter by code."""
    registry = get_adapter_registry()
    allowed_codes = tuple(allowed) if allowed is not None else tuple(registry.keys())
    descriptor = registry.get(code)
    if descriptor is None or code not in allowed_codes:
        raise AdapterNotFound(code, allowed_codes)
    adapter = descriptor.factory()
    adapter.configure(**options)
    return adapter


__all__ = [
    "AdapterDescriptor",
    "CSVAdapter",
    "DatabaseAdapter",
    "SOURCE_ID_FIELDS",
    "SourceAdapter",
    "SyncFilters",
    "build_source_url",
    "create_adapter",
    "get_adapter_registry",
    "parse_datetime",
    "resolve_adapters",
]
