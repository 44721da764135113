"""CSV file adapter.

One file holds one entity type. Headers are cleaned of the UTF-8 BOM and
surrounding whitespace; blank rows and rows whose column count does not match
the header are skipped.
"""

from __future__ import annotations

import csv
import logging
import os
from pathlib import Path
from typing import IO, Any, Iterable, Iterator

from ..errors import ConfigurationError, PermissionDenied, SourceFileNotFound, ValidationFailed
from .base import SOURCE_ID_FIELDS, SourceAdapter, SyncFilters

logger = logging.getLogger(__name__)


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff").strip()


def _row_is_blank(row: list[str]) -> bool:
    return all(value.strip() == "" for value in row)


class CSVAdapter(SourceAdapter):
    code = "csv"
    label = "CSV File"

    @property
    def file_path(self) -> str:
        return str(self.options.get("file_path") or self.options.get("source") or "")

    @property
    def delimiter(self) -> str:
        return str(self.options.get("delimiter", ","))

    def _open(self) -> IO[str]:
        return open(self.file_path, "r", encoding=self.options.get("encoding", "utf-8"), newline="")

    def validate(self) -> bool:
        self._ensure_configured()
        if not self.file_path:
            raise ConfigurationError("No CSV file path configured. Pass --file.")
        if not os.path.exists(self.file_path):
            raise SourceFileNotFound(self.file_path)
        if not os.access(self.file_path, os.R_OK):
            raise PermissionDenied(f"File not readable: {self.file_path}", context={"path": self.file_path})
        with self._open() as handle:
            headers = next(csv.reader(handle, delimiter=self.delimiter), None)
        if not headers or not any(_sanitize_header(header) for header in headers):
            raise ValidationFailed("csv", self.file_path, [f"Cannot read headers from {self.file_path}"])
        return True

    def _iter_rows(self, entity_type: str) -> Iterator[dict[str, Any]]:
        id_field = SOURCE_ID_FIELDS.get(entity_type)
        with self._open() as handle:
            reader = csv.reader(handle, delimiter=self.delimiter)
            raw_headers = next(reader, None)
            if raw_headers is None:
                raise ValidationFailed(entity_type, self.file_path, ["Cannot read headers"])
            headers = [_sanitize_header(header) for header in raw_headers]

            for row_number, row in enumerate(reader, start=1):
                if _row_is_blank(row):
                    continue
                if len(row) != len(headers):
                    logger.warning(
                        "CSV row %s has mismatched column count, skipping",
                        row_number,
                        extra={"datasync_expected_columns": len(headers), "datasync_columns": len(row)},
                    )
                    continue
                record: dict[str, Any] = dict(zip(headers, row))
                record["_csv_row"] = row_number
                if record.get("entity_id") in (None, ""):
                    fallback = record.get(id_field) if id_field else None
                    record["entity_id"] = fallback if fallback not in (None, "") else row_number
                yield record

    def read(self, entity_type: str, filters: SyncFilters | None = None) -> Iterator[dict[str, Any]]:
        self._ensure_configured()
        if not os.path.exists(self.file_path):
            raise SourceFileNotFound(self.file_path)
        filters = SyncFilters.from_mapping(filters)
        skipped = 0
        yielded = 0
        for record in self._iter_rows(entity_type):
            if filters.offset and skipped < filters.offset:
                skipped += 1
                continue
            if not filters.matches(record):
                continue
            if filters.limit is not None and yielded >= filters.limit:
                break
            yield record
            yielded += 1

    def count(self, entity_type: str, filters: SyncFilters | None = None) -> int | None:
        if not os.path.exists(self.file_path):
            return None
        return sum(1 for _ in self._iter_rows(entity_type))

    def existing_ids(self, entity_type: str, ids: Iterable[int]) -> set[int]:
        wanted = {int(value) for value in ids}
        if not wanted:
            return set()
        found: set[int] = set()
        for record in self._iter_rows(entity_type):
            try:
                record_id = int(record["entity_id"])
            except (TypeError, ValueError):
                continue
            if record_id in wanted:
                found.add(record_id)
        return found

    def info(self) -> dict[str, Any]:
        payload = super().info()
        path = Path(self.file_path) if self.file_path else None
        payload.update(
            {
                "file_path": self.file_path,
                "delimiter": self.delimiter,
                "file_exists": bool(path and path.exists()),
                "file_size": path.stat().st_size if path and path.exists() else None,
            }
        )
        return payload
