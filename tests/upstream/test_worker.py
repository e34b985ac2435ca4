import json
from datetime import timedelta
from typing import Any, Dict
from unittest.mock import Mock, patch

import pytest
from flask import Flask

from callout_app.models import Structure, db
from callout_app.upstream import get_celery_app, init_upstream_sync
from callout_app.upstream.celery_app import DEFAULT_QUEUE_NAME, REFRESH_SCHEDULE_NAME, SYNC_ONE_TASK_NAME
from callout_app.upstream.tasks import refresh_task, sync_one_task


def build_upstream_app(**overrides) -> Flask:
    """Minimal Flask app with upstream sync enabled, for worker wiring tests."""
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(SECRET_KEY="test-secret", TESTING=True, UPSTREAM_SYNC_ENABLED=True)
    app.config.update(overrides)
    init_upstream_sync(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_upstream_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert "upstream.sync_one" in celery_app.tasks


def test_units_get_short_limits_and_upstream_route(tmp_path):
    app = build_upstream_app(
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        UPSTREAM_TASK_TIME_LIMIT=600,
        UPSTREAM_UNIT_TIME_LIMIT=30,
        UPSTREAM_UNIT_SOFT_TIME_LIMIT=20,
    )

    conf = get_celery_app(app).conf
    assert conf.task_time_limit == 600
    assert conf.task_annotations[SYNC_ONE_TASK_NAME] == {"time_limit": 30, "soft_time_limit": 20}
    assert conf.task_routes == {"upstream.*": {"queue": DEFAULT_QUEUE_NAME}}
    assert conf.beat_schedule == {}


def test_refresh_interval_schedules_full_pass(tmp_path):
    app = build_upstream_app(
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        UPSTREAM_REFRESH_INTERVAL=900,
    )

    entry = get_celery_app(app).conf.beat_schedule[REFRESH_SCHEDULE_NAME]
    assert entry["task"] == "upstream.refresh"
    assert entry["schedule"] == timedelta(minutes=15)
    assert entry["kwargs"] == {"force": False}
    assert entry["options"] == {"queue": DEFAULT_QUEUE_NAME}


def test_celery_config_json_string_is_applied(tmp_path):
    app = build_upstream_app(
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG='{"task_time_limit": 42}',
    )

    assert get_celery_app(app).conf.task_time_limit == 42


def test_disabled_sync_has_no_celery():
    app = Flask(__name__)
    app.config.update(SECRET_KEY="test-secret", TESTING=True, UPSTREAM_SYNC_ENABLED=False)
    init_upstream_sync(app)

    assert get_celery_app(app) is None
    result = app.test_cli_runner().invoke(args=["upstream"])
    assert result.exit_code != 0
    assert "UPSTREAM_SYNC_ENABLED=false" in result.output


def test_worker_ping_cli(tmp_path):
    app = build_upstream_app(
        UPSTREAM_WORKER_ENABLED=True,
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
    )

    result = app.test_cli_runner().invoke(args=["upstream", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch, tmp_path):
    app = build_upstream_app(
        UPSTREAM_WORKER_ENABLED=True,
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
    )
    celery_app = get_celery_app(app)
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    result = app.test_cli_runner().invoke(
        args=["upstream", "worker", "run", "--loglevel", "debug", "--concurrency", "2", "--pool", "solo"]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        DEFAULT_QUEUE_NAME,
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]
    assert app.extensions["upstream"]["worker_enabled"] is True


def test_refresh_task_runs_full_pass(upstream_cache):
    upstream_cache.structure("S1", roster=["V100"])
    upstream_cache.volunteer("V100")

    payload = refresh_task.run(force=False)

    assert payload["structures"]["created"] == 1
    assert payload["volunteers"]["created"] == 1


def test_sync_one_task(upstream_cache):
    upstream_cache.structure("S1")

    payload = sync_one_task.run(record_type="structure", identifier="S1")

    assert payload == {"unit": "structure", "identifier": "S1", "outcome": "created"}
    assert db.session.query(Structure).filter_by(external_id="S1").one()


def test_sync_one_task_reraises_and_rolls_back(app):
    with patch("callout_app.upstream.tasks.db.session.rollback") as rollback:
        with pytest.raises(LookupError):
            sync_one_task.run(record_type="volunteer", identifier="missing")

    rollback.assert_called_once()


def test_refresh_task_reraises(app):
    service = Mock()
    service.return_value.refresh.side_effect = RuntimeError("store down")

    with patch("callout_app.upstream.tasks.UpstreamRefreshService", service):
        with pytest.raises(RuntimeError):
            refresh_task.run(force=True)
