from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from solarcrm.context import get_correlation_id
from solarcrm.core.config import get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "lead_id",
    "step_id",
    "action",
    "actor_role",
    "user_id",
    "outcome",
    "error",
    "event_name",
)
MAX_ERROR_LENGTH = 500


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def extract_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Known structured extras on a record, in a stable order, with long errors clipped."""
    fields: dict[str, Any] = {}
    for key in _KNOWN_FIELDS:
        if key in _BASE_RECORD_KEYS:
            continue
        value = getattr(record, key, None)
        if value is None:
            continue
        if key == "error" and isinstance(value, str):
            value = value[:MAX_ERROR_LENGTH]
        fields[key] = value
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        fields = extract_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload["fields"] = fields
        return json.dumps(payload, default=str)


class ConsoleLogFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger msg key=value ...`` for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")
        parts = [stamp, f"{record.levelname:<7}", record.name, record.getMessage()]
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            parts.append(f"correlation_id={correlation_id}")
        parts.extend(f"{key}={value}" for key, value in extract_fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_solarcrm_configured", False):
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    formatter: logging.Formatter = ConsoleLogFormatter() if settings.log_format.lower() == "console" else JsonLogFormatter()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._solarcrm_configured = True  # type: ignore[attr-defined]
