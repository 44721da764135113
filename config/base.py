# config.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_adapter_list(value):
    """
    Parse a comma-separated adapter list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized adapter identifiers.
    """
    if not value:
        return ()

    seen = set()
    adapters = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        adapters.append(item)
    return tuple(adapters)


def _parse_positive_int(value, default):
    try:
        parsed = int(value) if value is not None else default
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _project_root():
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _sqlite_uri(filename):
    instance_path = os.path.join(_project_root(), "instance")
    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)
    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path = os.path.join(instance_path, filename).replace("\\", "/")
    return f"sqlite:///{db_path}"


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")
    if not SECRET_KEY and _is_production:
        raise ValueError("SECRET_KEY environment variable is required in production.")
    if not SECRET_KEY:
        SECRET_KEY = "dev-secret-key-change-in-production"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # DataSync configuration
    DATASYNC_ENABLED = _coerce_bool(os.environ.get("DATASYNC_ENABLED"), default=True)
    DATASYNC_ADAPTERS = _parse_adapter_list(os.environ.get("DATASYNC_ADAPTERS", "csv,database"))

    if DATASYNC_ENABLED and not DATASYNC_ADAPTERS:
        raise ValueError("DATASYNC_ENABLED is true but DATASYNC_ADAPTERS is empty. Provide at least one adapter name.")

    DATASYNC_SOURCE_SYSTEM = os.environ.get("DATASYNC_SOURCE_SYSTEM", "live")
    DATASYNC_SOURCE_DATABASE_URL = os.environ.get("DATASYNC_SOURCE_DATABASE_URL")
    DATASYNC_LOCK_PATH = os.environ.get(
        "DATASYNC_LOCK_PATH",
        os.path.join(_project_root(), "var", "locks", "datasync_incremental.lock"),
    )
    DATASYNC_ENV_FILE = os.environ.get("DATASYNC_ENV_FILE", os.path.join(_project_root(), ".env.local"))
    DATASYNC_COMPLETION_CHUNK_SIZE = _parse_positive_int(os.environ.get("DATASYNC_COMPLETION_CHUNK_SIZE"), 500)
    DATASYNC_PROGRESS_INTERVAL = _parse_positive_int(os.environ.get("DATASYNC_PROGRESS_INTERVAL"), 100)
    DATASYNC_INCREMENTAL_ON_DUPLICATE = os.environ.get("DATASYNC_INCREMENTAL_ON_DUPLICATE", "merge")

    DATASYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("DATASYNC_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    DATASYNC_TASK_TIME_LIMIT = _parse_positive_int(os.environ.get("DATASYNC_TASK_TIME_LIMIT"), 60 * 60)

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = _parse_positive_int(os.environ.get("LOG_FILE_MAX_BYTES"), 10485760)
    LOG_FILE_BACKUP_COUNT = _parse_positive_int(os.environ.get("LOG_FILE_BACKUP_COUNT"), 10)
    ENABLE_FILE_LOGGING = _coerce_bool(os.environ.get("ENABLE_FILE_LOGGING"), default=False)
    ENABLE_CONSOLE_LOGGING = _coerce_bool(os.environ.get("ENABLE_CONSOLE_LOGGING"), default=True)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", _sqlite_uri("datasync_dev.db"))
    SQLALCHEMY_BINDS = {
        "source": os.environ.get("DATASYNC_SOURCE_DATABASE_URL", _sqlite_uri("datasync_source_dev.db")),
    }
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_BINDS = {"source": "sqlite:///:memory:"}
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    ENABLE_FILE_LOGGING = False


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_BINDS = {"source": os.environ.get("DATASYNC_SOURCE_DATABASE_URL")}
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
