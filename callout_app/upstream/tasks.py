"""
Celery tasks for the upstream reconciler.

``upstream.sync_one`` is the unit of work fanned out by
``UpstreamRefreshService.refresh_async``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from celery import shared_task

from callout_app.models.base import db
from callout_app.upstream.celery_app import REFRESH_TASK_NAME, SYNC_ONE_TASK_NAME
from callout_app.upstream.pipeline.refresh import UpstreamRefreshService

logger = logging.getLogger(__name__)


@shared_task(name="upstream.healthcheck", bind=True)
def upstream_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by worker health checks."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name=REFRESH_TASK_NAME, bind=True)
def refresh_task(self, *, force: bool = False) -> dict[str, Any]:
    """Run a full synchronous pass inside the worker."""
    try:
        summary = UpstreamRefreshService().refresh(force=force)
    except Exception:
        db.session.rollback()
        logger.exception("Upstream refresh task failed", extra={"upstream_force": force})
        raise
    return summary.to_dict()


@shared_task(name=SYNC_ONE_TASK_NAME, bind=True)
def sync_one_task(self, *, record_type: str, identifier: str | None = None, force: bool = False) -> dict[str, Any]:
    try:
        return UpstreamRefreshService().sync_one(record_type, identifier, force=force)
    except Exception:
        db.session.rollback()
        logger.exception(
            "Upstream sync unit failed",
            extra={"upstream_type": record_type, "upstream_identifier": identifier},
        )
        raise
