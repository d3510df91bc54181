"""
Error classification and exception hierarchy.

Provides:
- ErrorKind and Severity enums
- ClassifiedError hierarchy for typed exceptions
- Classification utilities for raw upstream failures
- Formatting into HTTP responses and log records
"""

from vibler.errors.classifier import (
    ClassificationRule,
    ErrorClassifier,
    PROVIDER_CODES,
    build_error,
    classify,
    classify_http_status,
    classify_upstream_status,
)
from vibler.errors.exceptions import (
    # Enums
    ErrorKind,
    Severity,
    # Base classes
    ClassifiedError,
    UpstreamResponseError,
    # Client errors
    ValidationError,
    UnauthorizedError,
    ForbiddenError,
    NotFoundError,
    ConflictError,
    # Transient errors
    RateLimitedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    CircuitOpenError,
    # Internal errors
    InternalError,
    ConfigurationError,
    # Lookups
    KIND_SPECS,
    is_retryable,
    severity_for,
    status_for,
)
from vibler.errors.formatter import (
    ErrorResponse,
    log_classified_error,
    to_log_record,
    to_response,
)

__all__ = [
    # Enums
    "ErrorKind",
    "Severity",
    # Base classes
    "ClassifiedError",
    "UpstreamResponseError",
    # Client errors
    "ValidationError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    # Transient errors
    "RateLimitedError",
    "UpstreamTimeoutError",
    "UpstreamUnavailableError",
    "CircuitOpenError",
    # Internal errors
    "InternalError",
    "ConfigurationError",
    # Lookups
    "KIND_SPECS",
    "is_retryable",
    "severity_for",
    "status_for",
    # Classification
    "ClassificationRule",
    "ErrorClassifier",
    "PROVIDER_CODES",
    "build_error",
    "classify",
    "classify_http_status",
    "classify_upstream_status",
    # Formatting
    "ErrorResponse",
    "log_classified_error",
    "to_log_record",
    "to_response",
]
