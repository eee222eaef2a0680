"""Logging setup for the API process and the job worker.

Both entry points call ``init_logging`` once at startup. Output goes to
stderr so container runtimes collect it; ``LOG_JSON`` switches to one JSON
object per line.
"""

import json
import logging
import sys
from typing import Optional

from config.settings import settings


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def init_logging(level: Optional[str] = None,
                 log_json: Optional[bool] = None) -> None:
    """Configure the ``helpdesk_ai`` logger hierarchy."""
    level_name = (level or settings.LOG_LEVEL).upper()
    use_json = settings.LOG_JSON if log_json is None else log_json

    app_logger = logging.getLogger("helpdesk_ai")
    app_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_get_formatter(use_json))
    app_logger.addHandler(handler)
    app_logger.setLevel(getattr(logging, level_name, logging.INFO))
    app_logger.propagate = False
