# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from callout_app.models import db  # noqa: E402
from callout_app.upstream import EXTENSION_KEY, init_upstream_sync  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    import uuid

    # Create a unique temporary database file for each test
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")

    try:
        flask_app.config.update(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SQLALCHEMY_ECHO": False,
                "SECRET_KEY": "test-secret-key-for-testing-only",
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": True,
                "LOG_LEVEL": "DEBUG",
                "UPSTREAM_SYNC_ENABLED": True,
                "UPSTREAM_WORKER_ENABLED": False,
                "UPSTREAM_PLATFORM": "fr",
                "UPSTREAM_PHONE_LOCALE": "FR",
                "UPSTREAM_ADMIN_BADGE": "RTMR",
                "UPSTREAM_ORGANIZATIONAL_EMAIL_DOMAINS": ("croix-rouge.fr",),
                "UPSTREAM_MINOR_AGE": 18,
                "UPSTREAM_TRAINING_VALIDITY_MONTHS": 6,
                "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
                "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
            }
        )

        # Re-initialize logging with updated config to pick up LOG_LEVEL=DEBUG
        from callout_app.utils.logging_config import setup_logging

        setup_logging(flask_app)

        # Fresh Celery app per test so the eager config applies
        flask_app.extensions.pop(EXTENSION_KEY, None)
        init_upstream_sync(flask_app)

        with flask_app.app_context():
            # Drop any existing tables to ensure clean state
            db.drop_all()
            db.create_all()
            yield flask_app
            # Clean up: remove all data and drop tables
            db.session.remove()
            db.drop_all()
    finally:
        # Always close and remove the temporary database file, even on error
        try:
            os.close(db_fd)
        except OSError:
            pass
        try:
            if os.path.exists(temp_db):
                os.unlink(temp_db)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    # Safety measure in case conftest imports happen in unexpected order
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
