"""
Conversion of classified errors into HTTP responses and log records.

The response body shape is {"error": str, "code": str, "details"?: dict}.
INTERNAL failures never carry their cause, context or raw message to the
caller; kinds that expose details return their context so clients can fix
the request (e.g. which field failed validation). Upstream URLs stay in the
log record only. Messages, details and log records are passed through
credential redaction.
"""

import logging
from typing import Any, Dict, Mapping, NamedTuple, Optional

from aiohttp import web

from vibler.errors.classifier import classify
from vibler.errors.exceptions import KIND_SPECS, ClassifiedError, ErrorKind
from vibler.logging.formatters import utc_timestamp
from vibler.logging.utilities import log_with_context
from vibler.security import sanitize_error_message, sanitize_value

MAX_CAUSE_LENGTH = 500

# Context keys kept out of response details
PRIVATE_CONTEXT_KEYS = frozenset({"url", "error_type"})


class ErrorResponse(NamedTuple):
    """Transport-level error: HTTP status plus JSON-serializable body."""

    status: int
    body: Dict[str, Any]

    def to_json_response(
        self, headers: Optional[Mapping[str, str]] = None
    ) -> web.Response:
        return web.json_response(self.body, status=self.status, headers=headers)


def _ensure_classified(error: BaseException) -> ClassifiedError:
    if isinstance(error, ClassifiedError):
        return error
    return classify(error)


def to_response(error: BaseException) -> ErrorResponse:
    """
    Build the HTTP response for a failure.

    Args:
        error: ClassifiedError, or any exception (classified first)

    Returns:
        ErrorResponse with status and body
    """
    classified = _ensure_classified(error)
    body: Dict[str, Any] = {
        "error": sanitize_error_message(classified.public_message),
        "code": classified.code,
    }

    if classified.kind != ErrorKind.INTERNAL and KIND_SPECS[classified.kind].expose_details:
        details = {
            key: value
            for key, value in classified.context.items()
            if key not in PRIVATE_CONTEXT_KEYS
        }
        if details:
            body["details"] = sanitize_value(details)

    return ErrorResponse(status=classified.status_code, body=body)


def to_log_record(error: BaseException) -> Dict[str, Any]:
    """
    Build the structured log record for a failure.

    Log records keep the internal context and cause; they never leave the
    server, but credentials are still redacted.
    """
    classified = _ensure_classified(error)
    record: Dict[str, Any] = {
        "timestamp": utc_timestamp(),
        "severity": classified.severity.value,
        "code": classified.code,
        "kind": classified.kind.value,
        "message": sanitize_error_message(classified.message),
        "status": classified.status_code,
        "retryable": classified.retryable,
        "context": sanitize_value(dict(classified.context)),
    }

    if classified.cause is not None:
        record["cause_type"] = type(classified.cause).__name__
        record["cause"] = sanitize_error_message(
            str(classified.cause), max_length=MAX_CAUSE_LENGTH
        )

    return record


def log_classified_error(
    logger: logging.Logger,
    error: BaseException,
    msg: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """
    Emit the log record for a failure at the level its severity maps to.

    Tracebacks are attached for ERROR and CRITICAL severities.

    Returns:
        The record that was logged
    """
    classified = _ensure_classified(error)
    record = to_log_record(classified)
    level = classified.severity.log_level
    message = sanitize_error_message(msg or classified.message)

    fields: Dict[str, Any] = {
        "error_code": record["code"],
        "error_kind": record["kind"],
        "error_message": record["message"],
        "severity": record["severity"],
        "status": record["status"],
        "retryable": record["retryable"],
    }
    if record["context"]:
        fields["error_context"] = record["context"]
    if "cause" in record:
        fields["cause_type"] = record["cause_type"]
        fields["cause"] = record["cause"]
    fields.update(extra)

    if level >= logging.ERROR:
        # exc_info must reach logger.log directly, not through extra
        logger.log(
            level,
            message,
            exc_info=classified.cause or classified,
            extra=fields,
        )
    else:
        log_with_context(logger, level, message, **fields)

    return record
