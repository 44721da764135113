# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so TestingConfig is selected
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import create_app  # noqa: E402
from flask_app.models import db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create a Flask app backed by temporary SQLite files for both binds."""
    destination_db = tmp_path / "destination.db"
    source_db = tmp_path / "source.db"
    flask_app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{destination_db.as_posix()}",
            "SQLALCHEMY_BINDS": {"source": f"sqlite:///{source_db.as_posix()}"},
            "SQLALCHEMY_ECHO": False,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": True,
            "LOG_LEVEL": "DEBUG",
            "DATASYNC_ENABLED": True,
            "DATASYNC_ADAPTERS": ("csv", "database"),
            "DATASYNC_SOURCE_SYSTEM": "live",
            "DATASYNC_LOCK_PATH": str(tmp_path / "locks" / "datasync_incremental.lock"),
            "DATASYNC_ENV_FILE": str(tmp_path / ".env.local"),
            "DATASYNC_WORKER_ENABLED": False,
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
        }
    )

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
        for engine in db.engines.values():
            engine.dispose()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()
