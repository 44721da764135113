"""
DataSync feature package.

``init_datasync`` validates the adapter and handler registries at start-up,
records state in ``app.extensions['datasync']`` and registers the
``flask datasync`` command group.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import Flask

from flask_app.utils.datasync import get_datasync_adapters, is_datasync_enabled

from .adapters import AdapterDescriptor, get_adapter_registry, resolve_adapters
from .celery_app import ensure_celery_app, get_celery_app
from .cli import datasync_cli, get_disabled_datasync_group
from .engine import SyncEngine
from .handlers import get_handler_registry, validate_handler_registry
from .incremental import IncrementalReport, IncrementalService
from .result import RecordOutcome, RecordResult, SyncResult

DATASYNC_EXTENSION_KEY = "datasync"

__all__ = [
    "DATASYNC_EXTENSION_KEY",
    "IncrementalReport",
    "IncrementalService",
    "RecordOutcome",
    "RecordResult",
    "SyncEngine",
    "SyncResult",
    "get_celery_app",
    "init_datasync",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        DATASYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_adapters": (),
            "active_adapters": (),
            "handlers": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the command group matching the flag state."""
    command_name = datasync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(datasync_cli)
    else:
        app.cli.add_command(get_disabled_datasync_group())


def init_datasync(app: Flask) -> None:
    """
    Validate registries and mount the CLI based on configuration.

    Unknown adapter codes or a handler registry that does not cover every
    dispatched entity type raise before the app starts serving.
    """
    enabled = is_datasync_enabled(app)
    configured_adapters: Tuple[str, ...] = get_datasync_adapters(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_adapters": configured_adapters,
            "worker_enabled": bool(app.config.get("DATASYNC_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        state["active_adapters"] = ()
        state["handlers"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("DataSync disabled via DATASYNC_ENABLED flag; skipping registration.")
        return

    active_descriptors: Iterable[AdapterDescriptor] = resolve_adapters(configured_adapters, get_adapter_registry())
    state["active_adapters"] = tuple(active_descriptors)

    handler_registry = get_handler_registry()
    validate_handler_registry(handler_registry)
    state["handlers"] = tuple(handler_registry.keys())

    if state["worker_enabled"]:
        ensure_celery_app(app, state)
    _set_cli(app, enabled=True)

    adapter_names = ", ".join(descriptor.name for descriptor in state["active_adapters"]) or "none"
    app.logger.info("DataSync enabled with adapters: %s", adapter_names)
