"""JSON log formatter.

Emits each log record as a single-line JSON object so log aggregators
can index fields without regex parsing.  Activate by setting
``ARDINE_STRUCTURED_LOGGING=true``.

Tenant context is lifted to the top level so every line can be
filtered by team or caller, whichever logger emitted it.  Services
attach it with ``extra={"team_id": ..., "user_id": ...}``; the access
logger carries it inside its ``request`` payload.

Output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "ardine_api.access",
        "message": "request completed",
        "correlation_id": "...",     // when known
        "team_id": "...",            // when known
        "user_id": "...",            // when known
        "entity": {"invoice_id": "..."},  // domain ids passed via ``extra``
        "request": { ... },          // present when emitted by RequestLoggingMiddleware
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Lifted from ``extra`` or, failing that, from the access ``request`` payload.
CONTEXT_FIELDS: tuple[str, ...] = ("correlation_id", "team_id", "user_id")

# Domain identifiers grouped under ``entity`` when passed via ``extra``.
ENTITY_FIELDS: tuple[str, ...] = ("client_id", "project_id", "time_entry_id", "invoice_id", "invoice_number")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON with tenant context."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_data = getattr(record, "request", None)
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is None and isinstance(request_data, dict):
                value = request_data.get(field)
            if value is not None:
                payload[field] = value

        entity = {field: getattr(record, field) for field in ENTITY_FIELDS if getattr(record, field, None) is not None}
        if entity:
            payload["entity"] = entity

        if request_data is not None:
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_json_logging(level: int = logging.INFO) -> None:
    """Replace root handlers with a single JSON ``StreamHandler``."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
