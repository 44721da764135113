"""
Builds adapters, engines and incremental services from Flask configuration.

Shared by the CLI and the Celery tasks so both run with identical settings.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from dotenv import dotenv_values
from flask import Flask
from sqlalchemy.orm import Session

from flask_app.utils.datasync import get_completion_chunk_size, get_datasync_adapters, get_source_system

from .adapters import DatabaseAdapter, SourceAdapter, create_adapter
from .errors import ConfigurationError
from .incremental import IncrementalReport, IncrementalService
from .ledger import ChangeLedger
from .lock import SyncLock

logger = logging.getLogger(__name__)

# Keys read from the env file when no explicit database credentials are given.
ENV_FILE_KEYS = {
    "host": "DATASYNC_LIVE_HOST",
    "database": "DATASYNC_LIVE_DB",
    "username": "DATASYNC_LIVE_USER",
    "password": "DATASYNC_LIVE_PASS",
}


@dataclass(frozen=True)
class SourceCredentials:
    host: str | None = None
    database: str | None = None
    username: str | None = None
    password: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.database and self.username)

    @property
    def is_empty(self) -> bool:
        return not any((self.host, self.database, self.username, self.password))

    def as_options(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "database": self.database,
            "username": self.username,
            "password": self.password,
        }


def load_source_credentials(app: Flask, overrides: Mapping[str, str | None] | None = None) -> SourceCredentials:
    """
    Explicit credentials win per field; missing ones fall back to the env file.

    Returns empty credentials when neither is provided, meaning the configured
    ``source`` bind is used.
    """
    values = {key: (overrides or {}).get(key) for key in ENV_FILE_KEYS}
    if not all(values[key] for key in ("database", "username")):
        env_file = app.config.get("DATASYNC_ENV_FILE")
        if env_file and os.path.exists(env_file):
            file_values = dotenv_values(env_file)
            for key, env_key in ENV_FILE_KEYS.items():
                if not values[key]:
                    values[key] = file_values.get(env_key) or None
    credentials = SourceCredentials(**values)
    if not credentials.is_empty and not credentials.is_complete:
        raise ConfigurationError(
            "Database credentials incomplete. Provide --db-name and --db-user, "
            f"or set {ENV_FILE_KEYS['database']} and {ENV_FILE_KEYS['username']} in the env file."
        )
    return credentials


def build_adapter(app: Flask, code: str, **options: Any) -> SourceAdapter:
    """Adapter restricted to the codes enabled in ``DATASYNC_ADAPTERS``."""
    return create_adapter(code, allowed=get_datasync_adapters(app), **options)


def build_incremental_adapter(app: Flask, credentials: SourceCredentials) -> DatabaseAdapter:
    options = credentials.as_options() if credentials.is_complete else {}
    adapter = build_adapter(app, DatabaseAdapter.code, **options)
    if not isinstance(adapter, DatabaseAdapter):
        raise ConfigurationError("Incremental sync requires the database adapter.")
    return adapter


def build_lock(app: Flask, command: str = "incremental") -> SyncLock:
    return SyncLock(app.config["DATASYNC_LOCK_PATH"], command=command)


def run_incremental(
    app: Flask,
    *,
    entity_type: str | None = None,
    limit: int | None = None,
    mark_completed: bool = False,
    dry_run: bool = False,
    stock_mode: str = "include",
    use_lock: bool = True,
    credentials: Mapping[str, str | None] | None = None,
    progress_callback: Callable[[str], None] | None = None,
    verbose: bool = False,
) -> IncrementalReport:
    """
    One locked incremental run.

    With explicit credentials the ledger is read and retired through the same
    database the records are read from; otherwise both use the ``source`` bind.
    """
    source_credentials = load_source_credentials(app, credentials)
    adapter = build_incremental_adapter(app, source_credentials)
    ledger_session: Session | None = None
    try:
        ledger = None
        if source_credentials.is_complete:
            ledger_session = Session(bind=adapter.engine)
            ledger = ChangeLedger(ledger_session)
        service = IncrementalService(
            adapter,
            source_system=get_source_system(app),
            on_duplicate=app.config.get("DATASYNC_INCREMENTAL_ON_DUPLICATE", "merge"),
            ledger=ledger,
            progress_callback=progress_callback,
            verbose=verbose,
            chunk_size=get_completion_chunk_size(app),
        )
        return service.run_locked(
            build_lock(app) if use_lock else None,
            entity_type=entity_type,
            limit=limit,
            mark_completed=mark_completed,
            dry_run=dry_run,
            stock_mode=stock_mode,
        )
    finally:
        if ledger_session is not None:
            ledger_session.close()
        adapter.close()
