"""
Logging setup for the Flask app.

- ``LOG_FORMAT=json``: one JSON object per line, carrying ``extra=`` fields
- ``LOG_FORMAT=text``: human-readable lines
- Optional rotating file handler under ``LOG_DIR``
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

# Attributes every LogRecord carries; anything else came from ``extra=``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}

_NOISY_LOGGERS = ("sqlalchemy.engine", "celery.worker.strategy", "urllib3", "werkzeug")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key, value in vars(record).items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            log_entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Human-readable formatter appending ``extra=`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now().strftime("%d/%m/%Y %H:%M:%S")
        base = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if extras:
            base += f" ({json.dumps(extras, ensure_ascii=False, default=str)})"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def setup_logging(app):
    """
    Configure root logging from the app config.

    Safe to call repeatedly; handlers installed by a previous call are replaced.
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = JSONFormatter() if app.config.get("LOG_FORMAT", "json") == "json" else ReadableFormatter()

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_callout_handler", False):
            root.removeHandler(handler)
            handler.close()

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        console.setLevel(level)
        console._callout_handler = True
        root.addHandler(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "callout.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(level)
        file_handler._callout_handler = True
        root.addHandler(file_handler)

    root.setLevel(level)
    app.logger.setLevel(level)

    if not app.config.get("SQLALCHEMY_ECHO", False):
        for noisy in _NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    if not app.config.get("TESTING", False):
        app.logger.info("Logging configured: level=%s format=%s", level_name, app.config.get("LOG_FORMAT", "json"))
