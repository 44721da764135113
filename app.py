# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.validation import validate_and_exit  # noqa: E402
from flask_app.datasync import init_datasync  # noqa: E402
from flask_app.datasync.ledger import ChangeLedger  # noqa: E402
from flask_app.models import db  # noqa: E402
from flask_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

_CONFIGS = {
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def _configure_sqlite_connection_factory(*, enable_foreign_keys: bool):
    """Return a connection hook applying concurrency-friendly pragmas."""

    def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)

    return _configure_sqlite_connection


def _configure_sqlite_engines(app: Flask) -> None:
    for engine in db.engines.values():
        if not engine.url.drivername.startswith("sqlite"):
            continue
        if getattr(engine, "_sqlite_pragmas_configured", False):
            continue
        pragma_hook = _configure_sqlite_connection_factory(enable_foreign_keys=not app.config.get("TESTING", False))
        event.listen(engine, "connect", pragma_hook)
        engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]


def create_app(overrides=None):
    """Build the Flask app for ``FLASK_ENV``; ``overrides`` are applied last."""
    flask_env = os.environ.get("FLASK_ENV", "development")
    if flask_env == "production":
        validate_and_exit(flask_env)

    app = Flask(__name__)
    app.config.from_object(_CONFIGS.get(flask_env, DevelopmentConfig))
    if overrides:
        app.config.update(overrides)

    db.init_app(app)
    setup_logging(app)
    init_datasync(app)

    with app.app_context():
        _configure_sqlite_engines(app)
        # Create the database tables only if not in testing mode
        if not app.config.get("TESTING", False):
            db.create_all()

    @app.route("/health")
    def health():
        """Liveness plus the pending ledger backlog."""
        try:
            pending = ChangeLedger(db.session).pending_counts()
        except Exception as exc:
            db.session.rollback()
            logger.warning("Health check could not read the change ledger: %s", exc)
            return jsonify({"status": "degraded", "error": str(exc)}), 503
        return jsonify({"status": "ok", "pending": pending, "pending_total": sum(pending.values())})

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
