"""
Single-holder advisory lock for incremental runs.

The lock is an ``flock`` on a fixed file, so the kernel drops it when the
holding process exits for any reason. The file body carries holder metadata
that a blocked run reads to report who holds the lock and for how long.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from . import metrics
from .errors import CODE_GENERAL, DataSyncError

logger = logging.getLogger(__name__)


def format_age(seconds: float | None) -> str:
    if seconds is None:
        return "unknown"
    seconds = max(0, int(seconds))
    if seconds > 3600:
        return f"{seconds // 3600}h{(seconds % 3600) // 60}m"
    return f"{seconds // 60}m{seconds % 60}s"


class LockUnavailable(DataSyncError):
    """Another run holds the lock."""

    code = CODE_GENERAL

    def __init__(self, path: str, holder: dict[str, Any] | None, age_seconds: float | None) -> None:
        self.path = path
        self.holder = holder or {}
        self.age_seconds = age_seconds
        self.age = format_age(age_seconds)
        pid = self.holder.get("pid", "unknown")
        super().__init__(
            f"Another incremental sync is already running (pid {pid}, running for {self.age}). Lock file: {path}",
            context={"lock_path": path, "holder": self.holder, "age": self.age},
        )


class SyncLock:
    """Non-blocking exclusive lock usable as a context manager."""

    def __init__(self, path: str | os.PathLike[str], command: str | None = None) -> None:
        self.path = Path(path)
        self.command = command or " ".join(sys.argv)
        self._handle: IO[str] | None = None

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def acquire(self) -> "SyncLock":
        if self._handle is not None:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            metrics.record_lock_contention()
            raise LockUnavailable(str(self.path), self.holder(), self.age_seconds()) from None

        handle.seek(0)
        handle.truncate()
        json.dump(
            {
                "pid": os.getpid(),
                "started_at": datetime.now(timezone.utc).isoformat(),
                "command": self.command,
            },
            handle,
        )
        handle.flush()
        os.utime(self.path, None)
        self._handle = handle
        logger.info("Acquired sync lock", extra={"datasync_lock_path": str(self.path)})
        return self

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            handle.seek(0)
            handle.truncate()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def holder(self) -> dict[str, Any] | None:
        """Metadata written by the current holder, if readable."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError:
            return None
        if not raw.strip():
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    def age_seconds(self) -> float | None:
        try:
            return max(0.0, time.time() - self.path.stat().st_mtime)
        except OSError:
            return None

    def __enter__(self) -> "SyncLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
