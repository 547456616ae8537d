from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from salespipe.context import get_correlation_id

SERVICE_NAME = "salespipe-api"

HTTP_FIELDS = frozenset({"method", "path", "status_code", "duration_ms"})
CRM_FIELDS = frozenset(
    {
        "opportunity_id",
        "pipeline_id",
        "stage_id",
        "activity_id",
        "error_code",
        "event_name",
        "event_id",
        "error",
    }
)
_ALLOWED_FIELDS = HTTP_FIELDS | CRM_FIELDS
_MAX_ERROR_LENGTH = 500

# Replaced by salespipe.request and by the JSON handler respectively.
_QUIETED_LOGGERS = {"uvicorn.access": logging.WARNING, "sqlalchemy.engine": logging.WARNING}

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _level(name: str | None, fallback: int) -> int:
    if not name:
        return fallback
    return logging.getLevelNamesMapping().get(name.upper(), fallback)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; only whitelisted ``extra`` keys reach ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        fields = {key: getattr(record, key) for key in _ALLOWED_FIELDS if hasattr(record, key)}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "service": SERVICE_NAME,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging() -> None:
    """JSON to stdout on the root logger.

    ``LOG_LEVEL`` sets the root level; ``SALESPIPE_LOG_LEVEL`` raises or lowers
    the service's own ``salespipe.*`` loggers independently.
    """
    root_logger = logging.getLogger()
    if getattr(root_logger, "_salespipe_configured", False):
        return

    root_level = _level(os.getenv("LOG_LEVEL"), logging.INFO)
    service_level = _level(os.getenv("SALESPIPE_LOG_LEVEL"), root_level)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger.handlers.clear()
    root_logger.setLevel(root_level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)

    logging.getLogger("salespipe").setLevel(service_level)
    for name, level in _QUIETED_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    root_logger._salespipe_configured = True  # type: ignore[attr-defined]
