"""
Upstream reconciliation feature package.

Mounts the ``flask upstream`` CLI and the Celery worker when
``UPSTREAM_SYNC_ENABLED`` is set, and stays inert otherwise.
"""

from __future__ import annotations

from flask import Flask

from callout_app.utils.upstream import get_upstream_settings, is_upstream_sync_enabled

from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import get_disabled_upstream_group, upstream_cli
from .pipeline.refresh import UpstreamRefreshService

__all__ = [
    "init_upstream_sync",
    "EXTENSION_KEY",
    "get_celery_app",
    "UpstreamRefreshService",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "settings": None,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = upstream_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(upstream_cli)
    else:
        app.cli.add_command(get_disabled_upstream_group())


def init_upstream_sync(app: Flask) -> None:
    """
    Conditionally mount the upstream CLI and Celery worker based on configuration.

    State is kept in ``app.extensions['upstream']`` for the CLI and tasks.
    """
    enabled = is_upstream_sync_enabled(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "worker_enabled": bool(app.config.get("UPSTREAM_WORKER_ENABLED", False)),
            "settings": get_upstream_settings(app),
        }
    )

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Upstream sync disabled via UPSTREAM_SYNC_ENABLED flag; skipping registration.")
        return

    ensure_celery_app(app, state)
    _set_cli(app, enabled=True)
    app.logger.info("Upstream sync enabled for platform %s", state["settings"].platform)
