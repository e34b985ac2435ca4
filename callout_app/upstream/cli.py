"""
``flask upstream`` commands: run passes, queue them, inspect the cache.
"""

from __future__ import annotations

import json
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from callout_app.models.base import db
from callout_app.upstream.celery_app import DEFAULT_QUEUE_NAME, EXTENSION_KEY, SYNC_ONE_TASK_NAME, get_celery_app
from callout_app.upstream.pipeline.curator import UnknownUpstreamType, UpstreamCacheCurator, UpstreamRecordNotFound
from callout_app.upstream.pipeline.outcomes import ReconcileCounters
from callout_app.upstream.pipeline.refresh import RefreshSummary, UpstreamRefreshService
from callout_app.utils.upstream import is_upstream_sync_enabled


@click.group(name="upstream", invoke_without_command=True)
@click.pass_context
def upstream_cli(ctx):
    """
    Upstream reconciliation commands.

    Prints the cache status when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_upstream_sync_enabled(app):
        raise click.ClickException(
            "Upstream sync is disabled via UPSTREAM_SYNC_ENABLED=false. Enable it to run upstream commands."
        )
    if ctx.invoked_subcommand is None:
        ctx.invoke(upstream_status)


def get_disabled_upstream_group() -> click.Group:
    """Return a minimal command group telling the operator upstream sync is disabled."""

    @click.group(name="upstream", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Upstream commands are unavailable because UPSTREAM_SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Upstream Celery app is unavailable. Ensure UPSTREAM_SYNC_ENABLED=true and the "
            "upstream package initialises before running worker commands."
        )
    return celery_app


def _format_counters(label: str, counters: ReconcileCounters) -> list[str]:
    outcomes = ", ".join(f"{key}={value}" for key, value in sorted(counters.outcomes.items())) or "none"
    return [f"  {label:<18}: {outcomes} (failed_records={counters.failed_records})"]


def _format_summary(summary: RefreshSummary) -> str:
    lines = [f"Upstream refresh completed (force={summary.force})."]
    lines.extend(_format_counters("structures", summary.structures))
    lines.extend(_format_counters("parent_structures", summary.parent_structures))
    lines.extend(_format_counters("volunteers", summary.volunteers))
    return "\n".join(lines)


@upstream_cli.command("refresh")
@click.option("--force", is_flag=True, help="Re-apply every record even when timestamps match.")
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary after completion.")
def upstream_refresh(force: bool, summary_json: bool):
    """Run a full reconciliation pass in this process."""
    try:
        summary = UpstreamRefreshService().refresh(force=force)
    except Exception as exc:
        db.session.rollback()
        raise click.ClickException(f"Upstream refresh failed: {exc}") from exc

    click.echo(_format_summary(summary))
    if summary_json:
        click.echo(json.dumps(summary.to_dict(), indent=2, sort_keys=True))


@upstream_cli.command("refresh-async")
@click.option("--force", is_flag=True, help="Re-apply every record even when timestamps match.")
@click.pass_context
def upstream_refresh_async(ctx, force: bool):
    """Queue one sync unit per cached record plus the finalisation units."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    def _dispatch(unit):
        return celery_app.send_task(SYNC_ONE_TASK_NAME, kwargs=dict(unit))

    try:
        dispatched = UpstreamRefreshService().refresh_async(force=force, dispatch=_dispatch)
    except Exception as exc:
        raise click.ClickException(f"Failed to enqueue upstream refresh: {exc}") from exc

    app.logger.info("Upstream refresh queued via CLI", extra={"upstream_units": dispatched, "upstream_force": force})
    click.echo(json.dumps({"status": "queued", "units": dispatched, "force": force}))


@upstream_cli.command("sync-one")
@click.argument("record_type")
@click.argument("identifier", required=False)
@click.option("--force", is_flag=True, help="Re-apply the record even when timestamps match.")
def upstream_sync_one(record_type: str, identifier: Optional[str], force: bool):
    """
    Reconcile a single cached record, or run a finalisation unit.

    RECORD_TYPE is 'structure' or 'volunteer' (IDENTIFIER required), or one of
    'parent_structures', 'sync_structures', 'sync_volunteers'.
    """
    try:
        result = UpstreamRefreshService().sync_one(record_type, identifier, force=force)
    except (UnknownUpstreamType, UpstreamRecordNotFound) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result, sort_keys=True))


@upstream_cli.command("status")
def upstream_status():
    """Show cached record counts per type."""
    counts = UpstreamCacheCurator().count_records()
    for record_type, values in counts.items():
        click.echo(
            f"{record_type:<10} enabled={values['enabled']} disabled={values['disabled']} expired={values['expired']}"
        )


@upstream_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the upstream background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get(EXTENSION_KEY, {})
    if not state.get("worker_enabled") and not app.config.get("UPSTREAM_WORKER_ENABLED"):
        click.echo(
            "Warning: UPSTREAM_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get(EXTENSION_KEY)
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting upstream worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("upstream.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'upstream.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
