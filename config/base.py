# config/base.py
import os
from datetime import timedelta


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


def _parse_list(value, *, lower=True):
    """
    Parse a comma-separated list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized identifiers.
    """
    if not value:
        return ()

    seen = set()
    items = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if lower:
            item = item.lower()
        if not item or item in seen:
            continue
        seen.add(item)
        items.append(item)
    return tuple(items)


def _parse_int(value, default, *, minimum=0):
    try:
        return max(minimum, int(value))
    except (TypeError, ValueError):
        return default


class Config:
    # SECRET_KEY must be set via environment variable for security
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "This is insecure and should not be used in production.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Upstream reconciliation
    UPSTREAM_SYNC_ENABLED = _coerce_bool(os.environ.get("UPSTREAM_SYNC_ENABLED"), default=False)
    UPSTREAM_WORKER_ENABLED = _coerce_bool(os.environ.get("UPSTREAM_WORKER_ENABLED"), default=False)
    UPSTREAM_PLATFORM = os.environ.get("UPSTREAM_PLATFORM", "fr").strip().lower() or "fr"
    UPSTREAM_PHONE_LOCALE = os.environ.get("UPSTREAM_PHONE_LOCALE", "FR").strip().upper() or "FR"
    UPSTREAM_ADMIN_BADGE = os.environ.get("UPSTREAM_ADMIN_BADGE", "RTMR").strip()
    UPSTREAM_ORGANIZATIONAL_EMAIL_DOMAINS = _parse_list(
        os.environ.get("UPSTREAM_ORGANIZATIONAL_EMAIL_DOMAINS", "croix-rouge.fr")
    )
    UPSTREAM_MINOR_AGE = _parse_int(os.environ.get("UPSTREAM_MINOR_AGE"), 18)
    UPSTREAM_TRAINING_VALIDITY_MONTHS = _parse_int(os.environ.get("UPSTREAM_TRAINING_VALIDITY_MONTHS"), 6)

    # Task dispatch
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    UPSTREAM_TASK_TIME_LIMIT = _parse_int(os.environ.get("UPSTREAM_TASK_TIME_LIMIT"), 15 * 60, minimum=1)
    UPSTREAM_TASK_SOFT_TIME_LIMIT = _parse_int(os.environ.get("UPSTREAM_TASK_SOFT_TIME_LIMIT"), 12 * 60, minimum=1)
    UPSTREAM_UNIT_TIME_LIMIT = _parse_int(os.environ.get("UPSTREAM_UNIT_TIME_LIMIT"), 120, minimum=1)
    UPSTREAM_UNIT_SOFT_TIME_LIMIT = _parse_int(os.environ.get("UPSTREAM_UNIT_SOFT_TIME_LIMIT"), 90, minimum=1)
    # Seconds between scheduled full passes; 0 disables the beat entry
    UPSTREAM_REFRESH_INTERVAL = _parse_int(os.environ.get("UPSTREAM_REFRESH_INTERVAL"), 0)

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # Windows needs forward slashes in the SQLite URI
    db_path = os.path.join(instance_path, "callout_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True
