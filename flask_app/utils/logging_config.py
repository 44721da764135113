"""
Logging setup for the Flask app, the CLI and the worker.

Structured ``extra`` payloads whose keys start with ``datasync_`` are appended
to each line as ``key=value`` pairs.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from flask import Flask

EXTRA_PREFIX = "datasync_"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_FILENAME = "datasync.log"

_MANAGED_ATTR = "_datasync_managed"


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        pairs = [
            f"{key[len(EXTRA_PREFIX):]}={value}"
            for key, value in sorted(record.__dict__.items())
            if key.startswith(EXTRA_PREFIX) and value is not None
        ]
        if pairs:
            message = f"{message} | {' '.join(pairs)}"
        return message


def _resolve_level(value) -> int:
    if isinstance(value, int):
        return value
    return getattr(logging, str(value or "INFO").upper(), logging.INFO)


def setup_logging(app: Flask) -> logging.Logger:
    """Attach console and optional rotating file handlers to the root logger."""
    level = _resolve_level(app.config.get("LOG_LEVEL", "INFO"))
    formatter = StructuredFormatter(LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Re-running setup (tests create several apps) replaces our handlers only.
    for handler in list(root_logger.handlers):
        if getattr(handler, _MANAGED_ATTR, False):
            root_logger.removeHandler(handler)
            handler.close()

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        setattr(console, _MANAGED_ATTR, True)
        root_logger.addHandler(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        if not os.path.isabs(log_dir):
            log_dir = os.path.join(os.path.dirname(app.root_path), log_dir)
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILENAME),
            maxBytes=app.config.get("LOG_FILE_MAX_BYTES", 10485760),
            backupCount=app.config.get("LOG_FILE_BACKUP_COUNT", 10),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        setattr(file_handler, _MANAGED_ATTR, True)
        root_logger.addHandler(file_handler)

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    app.logger.setLevel(level)
    return logging.getLogger("flask_app")
