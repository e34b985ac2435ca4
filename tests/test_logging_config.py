import json
import logging

from callout_app.utils.logging_config import JSONFormatter, ReadableFormatter, setup_logging


def _record(**extra):
    record = logging.LogRecord("callout.test", logging.INFO, __file__, 10, "hello %s", ("world",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    payload = json.loads(JSONFormatter().format(_record(upstream_identifier="S1")))

    assert payload["message"] == "hello world"
    assert payload["logger"] == "callout.test"
    assert payload["upstream_identifier"] == "S1"


def test_readable_formatter_appends_extra_fields():
    line = ReadableFormatter().format(_record(upstream_outcome="created"))

    assert "INFO" in line
    assert "hello world" in line
    assert '"upstream_outcome": "created"' in line


def test_setup_logging_is_reentrant(app):
    setup_logging(app)
    setup_logging(app)

    handlers = [handler for handler in logging.getLogger().handlers if getattr(handler, "_callout_handler", False)]
    assert len(handlers) == 1
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
