"""
Celery wiring for the upstream reconciler.

A full pass (``upstream.refresh``) and the units it fans out
(``upstream.sync_one``) share the ``upstream`` queue. A unit reconciles one
record, so it runs under a much shorter time limit than a full pass.

``UPSTREAM_REFRESH_INTERVAL`` (seconds) adds a beat entry running the full
pass periodically; 0 leaves the trigger to an external scheduler. Without a
broker URL the worker falls back to a SQLite transport in the instance folder.
"""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "upstream"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
EXTENSION_KEY = "upstream"
REFRESH_SCHEDULE_NAME = "upstream-periodic-refresh"

REFRESH_TASK_NAME = "upstream.refresh"
SYNC_ONE_TASK_NAME = "upstream.sync_one"


def _transport_urls(app: Flask) -> tuple[str, str]:
    """(broker_url, result_backend), each defaulting to the SQLite transport."""
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    sqlite_path = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not sqlite_path.is_absolute():
        sqlite_path = Path(app.instance_path) / sqlite_path
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)

    # Celery expects forward slashes even on Windows.
    location = sqlite_path.as_posix()
    return broker_url or f"sqla+sqlite:///{location}", result_backend or f"db+sqlite:///{location}"


def _unit_limits(app: Flask) -> dict[str, int]:
    return {
        "time_limit": int(app.config.get("UPSTREAM_UNIT_TIME_LIMIT", 120)),
        "soft_time_limit": int(app.config.get("UPSTREAM_UNIT_SOFT_TIME_LIMIT", 90)),
    }


def build_beat_schedule(app: Flask) -> dict[str, dict[str, Any]]:
    """Periodic full pass, or nothing when ``UPSTREAM_REFRESH_INTERVAL`` is 0."""
    interval = int(app.config.get("UPSTREAM_REFRESH_INTERVAL", 0) or 0)
    if interval <= 0:
        return {}
    return {
        REFRESH_SCHEDULE_NAME: {
            "task": REFRESH_TASK_NAME,
            "schedule": timedelta(seconds=interval),
            "kwargs": {"force": False},
            "options": {"queue": DEFAULT_QUEUE_NAME},
        }
    }


def _load_extra_conf(app: Flask) -> Mapping[str, Any] | None:
    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            extra_conf = json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return None
    return extra_conf or None


def create_celery_app(app: Flask) -> Celery:
    broker_url, result_backend = _transport_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("callout_app.upstream.tasks",),
    )
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_routes={"upstream.*": {"queue": DEFAULT_QUEUE_NAME}},
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("UPSTREAM_TASK_TIME_LIMIT", 15 * 60),
        task_soft_time_limit=app.config.get("UPSTREAM_TASK_SOFT_TIME_LIMIT", 12 * 60),
        task_annotations={SYNC_ONE_TASK_NAME: _unit_limits(app)},
        beat_schedule=build_beat_schedule(app),
        worker_hijack_root_logger=False,
    )

    extra_conf = _load_extra_conf(app)
    if extra_conf:
        celery_app.conf.update(extra_conf)

    app.logger.info(
        "Upstream worker configured",
        extra={
            "upstream_celery_broker_url": broker_url,
            "upstream_celery_result_backend": result_backend,
            "upstream_celery_extra_conf": extra_conf,
            "upstream_refresh_scheduled": bool(celery_app.conf.beat_schedule),
        },
    )

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Return (and cache) the Celery instance inside the upstream extension state."""
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """Celery instance of ``app``, created on demand when upstream sync is enabled."""
    state: dict[str, Any] | None = app.extensions.get(EXTENSION_KEY)  # type: ignore[arg-type]
    if not state:
        return None
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None and state.get("enabled"):
        celery_app = ensure_celery_app(app, state)
    return celery_app
