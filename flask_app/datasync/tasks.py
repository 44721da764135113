"""
DataSync Celery tasks.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from .runtime import run_incremental

logger = logging.getLogger(__name__)


@shared_task(name="datasync.healthcheck", bind=True)
def datasync_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask datasync worker ping``."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="datasync.incremental", bind=True)
def incremental_sync(
    self,
    *,
    entity_type: str | None = None,
    limit: int | None = None,
    mark_completed: bool = False,
    dry_run: bool = False,
    stock_mode: str = "include",
    use_lock: bool = True,
) -> dict[str, Any]:
    """Run one incremental sync inside the worker and return the report payload."""
    logger.info(
        "Incremental sync task started",
        extra={
            "datasync_task_id": self.request.id,
            "datasync_entity_type": entity_type,
            "datasync_dry_run": dry_run,
        },
    )
    report = run_incremental(
        current_app._get_current_object(),
        entity_type=entity_type,
        limit=limit,
        mark_completed=mark_completed,
        dry_run=dry_run,
        stock_mode=stock_mode,
        use_lock=use_lock,
    )
    payload = report.to_dict()
    payload["task_id"] = self.request.id
    return payload
