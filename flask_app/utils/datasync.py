"""
Utility helpers for DataSync configuration checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_datasync_enabled(app=None) -> bool:
    """Return True when the DataSync feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("DATASYNC_ENABLED", False))


def get_datasync_adapters(app=None) -> Tuple[str, ...]:
    """Return the configured adapter codes."""
    config = _get_config(app)
    adapters: Iterable[str] = config.get("DATASYNC_ADAPTERS", ())
    return tuple(adapters)


def get_source_system(app=None) -> str:
    config = _get_config(app)
    return config.get("DATASYNC_SOURCE_SYSTEM") or "live"


def get_completion_chunk_size(app=None) -> int:
    config = _get_config(app)
    return int(config.get("DATASYNC_COMPLETION_CHUNK_SIZE") or 500)
