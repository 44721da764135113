"""
Exception hierarchy for the synchronization core.

Every error carries a stable numeric ``code`` so CLI output, task payloads and
logs can be correlated without parsing messages.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

CODE_GENERAL = 1000
CODE_ADAPTER_NOT_FOUND = 1001
CODE_ENTITY_NOT_FOUND = 1002
CODE_CONNECTION_FAILED = 1003
CODE_VALIDATION_FAILED = 1004
CODE_IMPORT_FAILED = 1005
CODE_FK_RESOLUTION_FAILED = 1006
CODE_CONFIGURATION_ERROR = 1007
CODE_FILE_NOT_FOUND = 1008
CODE_PERMISSION_DENIED = 1009
CODE_DUPLICATE_ENTITY = 1010

_SENSITIVE_KEYS = {"password", "pass", "db_pass", "secret", "api_secret", "api_key", "token"}
_URL_PASSWORD = re.compile(r"(://[^:/@\s]+:)([^@\s]+)(@)")


class DataSyncError(Exception):
    """Base exception for DataSync failures."""

    code = CODE_GENERAL

    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "error_type": type(self).__name__, "message": self.message, "context": self.context}


class ConfigurationError(DataSyncError):
    """Raised before any mutation when the run is misconfigured."""

    code = CODE_CONFIGURATION_ERROR


class AdapterNotFound(ConfigurationError):
    code = CODE_ADAPTER_NOT_FOUND

    def __init__(self, adapter_code: str, available: tuple[str, ...] = ()) -> None:
        message = f"Adapter '{adapter_code}' is not registered."
        if available:
            message += f" Available adapters: {', '.join(available)}."
        super().__init__(message, context={"adapter": adapter_code})
        self.adapter_code = adapter_code


class EntityNotSupported(ConfigurationError):
    code = CODE_ENTITY_NOT_FOUND

    def __init__(self, entity_type: str, *, owner: str | None = None) -> None:
        if owner:
            message = f"{owner} does not support entity type: {entity_type}"
        else:
            message = f"Unknown entity type: {entity_type}"
        super().__init__(message, context={"entity_type": entity_type})
        self.entity_type = entity_type


class ConnectionFailed(DataSyncError):
    """Raised when a source or destination connection cannot be used; fatal for the run."""

    code = CODE_CONNECTION_FAILED

    def __init__(self, message: str, *, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(scrub_secrets(message), context=_scrub_context(context))


class ValidationFailed(DataSyncError):
    code = CODE_VALIDATION_FAILED

    def __init__(self, entity_type: str, source_id: Any, errors: list[str] | tuple[str, ...]) -> None:
        joined = "; ".join(errors)
        super().__init__(
            f"Validation failed for {entity_type} #{source_id}: {joined}",
            context={"entity_type": entity_type, "source_id": source_id},
        )
        self.errors = tuple(errors)


class ImportFailed(DataSyncError):
    code = CODE_IMPORT_FAILED

    def __init__(self, entity_type: str, source_id: Any, source_system: str, reason: str) -> None:
        super().__init__(
            f"Failed to import {entity_type} #{source_id} from {source_system}: {reason}",
            context={"entity_type": entity_type, "source_id": source_id, "source_system": source_system},
        )


class ForeignKeyResolutionFailed(DataSyncError):
    code = CODE_FK_RESOLUTION_FAILED

    def __init__(self, entity_type: str, field: str, source_id: Any, source_system: str, target_type: str) -> None:
        super().__init__(
            f"Cannot resolve {field} for {entity_type}: {target_type} #{source_id} from {source_system} "
            "has not been synced yet.",
            context={
                "entity_type": entity_type,
                "field": field,
                "source_id": source_id,
                "source_system": source_system,
                "target_type": target_type,
            },
        )
        self.field = field
        self.target_type = target_type


class SourceFileNotFound(ConfigurationError):
    code = CODE_FILE_NOT_FOUND

    def __init__(self, path: str) -> None:
        super().__init__(f"Source file not found: {path}", context={"path": path})
        self.path = path


class PermissionDenied(DataSyncError):
    code = CODE_PERMISSION_DENIED


class DuplicateEntity(DataSyncError):
    code = CODE_DUPLICATE_ENTITY

    def __init__(self, entity_type: str, source_id: Any, existing_id: int) -> None:
        super().__init__(
            f"Duplicate {entity_type} found: source #{source_id} already exists as #{existing_id}. "
            "Use --on-duplicate update|skip|merge to handle duplicates.",
            context={"entity_type": entity_type, "source_id": source_id, "existing_id": existing_id},
        )
        self.existing_id = existing_id


def scrub_secrets(text: str) -> str:
    """Mask passwords embedded in connection URLs."""
    return _URL_PASSWORD.sub(r"\1***\3", text)


def _scrub_context(context: Mapping[str, Any] | None) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in (context or {}).items():
        if key.lower() in _SENSITIVE_KEYS:
            continue
        cleaned[key] = scrub_secrets(value) if isinstance(value, str) else value
    return cleaned
