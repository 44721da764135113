import json
from typing import Any, Dict

from prometheus_client import REGISTRY

from flask_app.datasync import get_celery_app
from flask_app.datasync.celery_app import DEFAULT_QUEUE_NAME, create_celery_app
from flask_app.datasync.ledger import ChangeLedger
from flask_app.datasync.lock import LockUnavailable, SyncLock
from flask_app.models import db

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def _enable_worker(app, **overrides):
    app.config.update({"DATASYNC_WORKER_ENABLED": True, "CELERY_CONFIG": EAGER, **overrides})
    app.extensions["datasync"]["celery_app"] = None
    return get_celery_app(app)


def test_celery_defaults_to_sqlite_transport(app, tmp_path):
    sqlite_path = tmp_path / "worker" / "custom.sqlite"
    app.config["CELERY_SQLITE_PATH"] = str(sqlite_path)

    celery_app = create_celery_app(app)

    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert sqlite_path.parent.is_dir()


def test_explicit_broker_urls_win(app):
    app.config.update(
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
        CELERY_CONFIG='{"task_time_limit": 30}',
    )

    celery_app = create_celery_app(app)

    assert celery_app.conf.broker_url == "redis://localhost:6379/0"
    assert celery_app.conf.result_backend == "redis://localhost:6379/1"
    assert celery_app.conf.task_time_limit == 30


def test_worker_ping_cli(app):
    _enable_worker(app)

    result = app.test_cli_runner().invoke(args=["datasync", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(app, monkeypatch):
    celery_app = _enable_worker(app)
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    result = app.test_cli_runner().invoke(
        args=["datasync", "worker", "run", "--loglevel", "debug", "--pool", "solo", "--queues", "sync"]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == ["worker", "--loglevel", "debug", "-Q", "sync", "--pool", "solo"]
    assert app.extensions["datasync"]["worker_enabled"] is True


def test_incremental_task_runs_inside_app_context(app):
    celery_app = _enable_worker(app)
    ChangeLedger(db.session).record_change("wishlist", 3, "update")

    result = celery_app.tasks["datasync.incremental"].apply_async(kwargs={"mark_completed": True, "use_lock": False})
    payload = result.get(timeout=5)

    assert payload["pending"] == {"wishlist": 1}
    assert payload["exit_code"] == 0
    assert payload["task_id"] == result.id


def test_lock_contention_is_counted(tmp_path):
    before = REGISTRY.get_sample_value("datasync_lock_contention_total") or 0.0
    path = tmp_path / "sync.lock"

    with SyncLock(path):
        try:
            SyncLock(path).acquire()
        except LockUnavailable:
            pass

    assert REGISTRY.get_sample_value("datasync_lock_contention_total") == before + 1
