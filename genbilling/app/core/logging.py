"""JSON log lines on stdout for the API process."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .config import settings

# Correlation attributes passed via ``extra=`` and promoted to top-level keys
CONTEXT_FIELDS = ("job_id", "account_id")

QUIET_LOGGERS = ("urllib3", "google", "google.auth", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    """One JSON object per record; ``extra={"data": ...}`` stays structured."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        data = getattr(record, "data", None)
        if data is not None:
            entry["data"] = data
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def resolve_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level: str | None = None) -> logging.Logger:
    """Route the root logger through :class:`JSONFormatter` at ``GEN_LOG_LEVEL``."""
    root = logging.getLogger()
    root.setLevel(resolve_level(level or settings.log_level))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    # Replaces uvicorn's handlers instead of stacking a second one
    root.handlers = [handler]

    logging.getLogger("uvicorn.access").disabled = True
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
