# backend/leasehold/logging_config.py
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .config import settings
from .middleware.request_id import get_request_id

# Fields services pass through `extra=` that are lifted into the JSON line.
STRUCTURED_EXTRAS = (
    "user_id",
    "agreement_id",
    "property_id",
    "job_id",
    "job_type",
    "batch",
    "event_type",
    "event_id",
    # access log (middleware/structured_logging.py)
    "method",
    "path",
    "status_code",
    "latency_ms",
)

# Loggers that would otherwise echo request URLs (gateway tokens, webhook bodies).
_QUIET_LOGGERS = ("httpx", "httpcore", "celery.app.trace")


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, env, message, correlation id, extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "env": settings.app_env,
            "message": record.getMessage(),
        }

        rid = get_request_id()
        if rid:
            payload["request_id"] = rid

        for k in STRUCTURED_EXTRAS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> None:
    level = (settings.log_level or "INFO").upper()

    root = logging.getLogger()
    root.setLevel(level)

    # uvicorn reload and celery worker init both install handlers of their own
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel("WARNING")
    logging.getLogger("sqlalchemy.engine").setLevel((settings.sql_log_level or "WARNING").upper())
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel("WARNING")
