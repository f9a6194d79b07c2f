"""JSON log formatter for log aggregation.

Activate by setting ``API_STRUCTURED_LOGGING=true`` (or
``PROVISIONING_STRUCTURED_LOGGING=true`` for the worker).  Each record is
emitted as one line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "provisioning_engine.cloner.template_cloner",
        "message": "Clone job ... completed",
        "request": { ... },          // from RequestLoggingMiddleware
        "exc_info": "Traceback ..."  // only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Extra attributes copied into the payload when a caller supplies them.
_CONTEXT_FIELDS: tuple[str, ...] = ("request", "tenant_id", "job_id", "binding_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def install_json_logging(level: int = logging.INFO) -> None:
    """Replace the root handlers with one JSON-formatting stream handler."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
