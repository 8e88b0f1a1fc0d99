from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "correlation_id"}

# Fields copied from `extra=` into the JSON line; anything else stays out of the log.
_KNOWN_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "submission_id",
        "profile_id",
        "user_id",
        "identity_id",
        "from_status",
        "to_status",
        "resolution",
        "resolved_by",
        "already_existed",
        "identity_deleted",
        "stage",
        "last_completed_stage",
        "count",
        "event_name",
        "surface",
        "route_group",
        "retry_after_seconds",
        "error",
    }
)

# Temporary login credentials are shown to the admin once and must never reach a log sink.
_SECRET_FIELDS = frozenset({"credential", "temporary_credential", "password", "service_key"})
_REDACTED = "[redacted]"
_MAX_ERROR_LENGTH = 500


def _current_correlation_id(record: logging.LogRecord) -> str | None:
    return getattr(record, "correlation_id", None) or get_correlation_id()


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _current_correlation_id(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    record.correlation_id = _current_correlation_id(record)
    return record


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _BASE_RECORD_KEYS or key.startswith("_"):
            continue
        if key in _SECRET_FIELDS:
            fields[key] = _REDACTED
        elif key in _KNOWN_FIELDS:
            fields[key] = value
    error_value = fields.get("error")
    if isinstance(error_value, str):
        fields["error"] = error_value[:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_studio_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    # Uvicorn installs its own handlers; route its access log through ours instead.
    logging.getLogger("uvicorn.access").handlers.clear()
    logging.getLogger("uvicorn.access").propagate = True
    root_logger._studio_configured = True  # type: ignore[attr-defined]
