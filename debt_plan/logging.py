"""Structured logging configuration for debt-plan.

Modules log through ``get_logger(__name__)``. Structured fields go in
``extra={"extra": {...}}``; the JSON formatter merges them into the
record, the standard formatter ignores them.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

STANDARD_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
STANDARD_DATEFMT = "%Y-%m-%d %H:%M:%S"

# HTTP client, ORM and dev server chatter
_QUIET_LOGGERS = ("urllib3", "sqlalchemy", "werkzeug")


def setup_logging(level: str = "INFO", format_type: str = "standard") -> None:
    """Send debt-plan logs to stderr.

    Parameters
    ----------
    level : str
        Log level name; unknown names fall back to INFO.
    format_type : str
        "standard" for one line per record, "json" for one JSON object.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    if format_type == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(fmt=STANDARD_FORMAT, datefmt=STANDARD_DATEFMT)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers[:] = [handler]

    logging.getLogger("debt_plan").setLevel(log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with the structured ``extra`` fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra"):
            log_data.update(record.extra)
        # Decimals and dates in extra fields
        return json.dumps(log_data, default=str)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
