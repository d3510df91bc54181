"""Log formatters for JSON and console output."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from vibler.logging.context import get_log_context


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        # Error records
        "error_code",
        "error_kind",
        "error_message",
        "error_type",
        "severity",
        "status",
        "retryable",
        "error_context",
        "cause_type",
        "cause",
        # Retry tracking
        "attempt",
        "max_attempts",
        "delay_ms",
        # Circuit breaker
        "circuit_name",
        "circuit_state",
        "previous_state",
        "failure_ratio",
        "samples",
        "retry_after",
        # API tracking
        "http_status",
        "duration_ms",
        "user_agent",
    ]

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "ts": utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Inject context variables; explicit extras win
        for key, value in get_log_context().items():
            explicit = getattr(record, key, None)
            if explicit is not None:
                log_entry[key] = explicit
            elif value:
                log_entry[key] = value

        # Add source location for DEBUG/ERROR
        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter.

    Includes request context when available.
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]
        if ctx["dependency"]:
            parts.append(f"[{ctx['dependency']}]")

        prefix = " - ".join(parts)

        request_id = getattr(record, "request_id", None) or ctx["request_id"]
        if request_id:
            return f"{prefix} - [{request_id[:8]}] {record.getMessage()}"

        return f"{prefix} - {record.getMessage()}"
