"""
Error taxonomy and exception hierarchy for Vibler.

Provides:
- ErrorKind enum: closed set of failure kinds
- Severity enum for log routing
- ClassifiedError hierarchy (one subclass per kind)
- Pure lookups from kind to status, severity, code and retryability
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class ErrorKind(Enum):
    """
    Classification of failures for retry and transport decisions.

    Kinds:
        VALIDATION: Caller sent bad input (400)
        UNAUTHORIZED: Missing or invalid credentials (401)
        FORBIDDEN: Authenticated but not allowed (403)
        NOT_FOUND: Resource does not exist (404)
        CONFLICT: Duplicate record or version conflict (409)
        RATE_LIMITED: Throttled by us or by a dependency (429)
        UPSTREAM_TIMEOUT: Dependency did not answer in time (504)
        UPSTREAM_UNAVAILABLE: Dependency down or unreachable (503)
        INTERNAL: Anything unrecognized (500)
    """

    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INTERNAL = "internal"


class Severity(Enum):
    """Severity of a classified error, mapped onto stdlib log levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def log_level(self) -> int:
        return _SEVERITY_LEVELS[self]


_SEVERITY_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class KindSpec:
    """Fixed defaults for one ErrorKind."""

    status: int
    severity: Severity
    code: str
    retryable: bool
    # Whether context may be returned to the client as response details
    expose_details: bool
    public_message: str


KIND_SPECS = MappingProxyType(
    {
        ErrorKind.VALIDATION: KindSpec(
            400,
            Severity.INFO,
            "VALIDATION_ERROR",
            False,
            True,
            "The provided data is invalid. Please check your input and try again.",
        ),
        ErrorKind.UNAUTHORIZED: KindSpec(
            401,
            Severity.WARNING,
            "UNAUTHORIZED",
            False,
            False,
            "Authentication required. Please log in and try again.",
        ),
        ErrorKind.FORBIDDEN: KindSpec(
            403,
            Severity.WARNING,
            "FORBIDDEN",
            False,
            False,
            "You do not have permission to perform this action.",
        ),
        ErrorKind.NOT_FOUND: KindSpec(
            404,
            Severity.INFO,
            "RECORD_NOT_FOUND",
            False,
            True,
            "The requested resource was not found.",
        ),
        ErrorKind.CONFLICT: KindSpec(
            409,
            Severity.INFO,
            "DUPLICATE_RECORD",
            False,
            True,
            "The resource already exists or was modified concurrently.",
        ),
        ErrorKind.RATE_LIMITED: KindSpec(
            429,
            Severity.WARNING,
            "RATE_LIMITED",
            True,
            True,
            "Too many requests. Please try again later.",
        ),
        ErrorKind.UPSTREAM_TIMEOUT: KindSpec(
            504,
            Severity.ERROR,
            "PROCESSING_TIMEOUT",
            True,
            False,
            "Request timed out. Please try again.",
        ),
        ErrorKind.UPSTREAM_UNAVAILABLE: KindSpec(
            503,
            Severity.ERROR,
            "SERVICE_UNAVAILABLE",
            True,
            False,
            "Service is temporarily unavailable. Please try again later.",
        ),
        ErrorKind.INTERNAL: KindSpec(
            500,
            Severity.CRITICAL,
            "INTERNAL_SERVER_ERROR",
            False,
            False,
            "An unexpected error occurred. Our team has been notified.",
        ),
    }
)


def is_retryable(kind: ErrorKind) -> bool:
    """Whether failures of this kind are worth retrying."""
    return KIND_SPECS[kind].retryable


def status_for(kind: ErrorKind) -> int:
    """Default HTTP status for a kind."""
    return KIND_SPECS[kind].status


def severity_for(kind: ErrorKind) -> Severity:
    """Default severity for a kind."""
    return KIND_SPECS[kind].severity


class ClassifiedError(Exception):
    """
    Base exception for all classified failures.

    Instances are immutable once constructed: every attribute is a read-only
    property and context is a read-only copy of the mapping passed in.

    Attributes:
        kind: ErrorKind of the failure
        code: Stable identifier sent to clients (kind default if omitted)
        message: Human-readable description
        cause: Underlying exception when wrapping
        context: Diagnostic metadata
        status_code: HTTP status (kind default unless overridden)
        retryable: Derived from kind unless explicitly marked
    """

    default_kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[Mapping[str, Any]] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        kind: Optional[ErrorKind] = None,
    ):
        super().__init__(message)
        kind = kind or self.default_kind
        spec = KIND_SPECS[kind]
        self._kind = kind
        self._message = message
        self._cause = cause
        self._context = MappingProxyType(dict(context or {}))
        self._code = code or spec.code
        self._status_code = status_code or spec.status
        self._retryable = spec.retryable if retryable is None else retryable
        self._timestamp = datetime.now(timezone.utc)

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def cause(self) -> Optional[BaseException]:
        return self._cause

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def code(self) -> str:
        return self._code

    @property
    def status_code(self) -> int:
        return self._status_code

    @property
    def retryable(self) -> bool:
        return self._retryable

    @property
    def severity(self) -> Severity:
        return KIND_SPECS[self._kind].severity

    @property
    def timestamp(self) -> datetime:
        return self._timestamp

    @property
    def public_message(self) -> str:
        """Message safe to show a caller of the HTTP boundary."""
        if self._kind == ErrorKind.INTERNAL:
            return KIND_SPECS[ErrorKind.INTERNAL].public_message
        return self._message

    def __str__(self) -> str:
        parts = [self._message]
        if self._cause is not None:
            parts.append(f"Caused by: {self._cause}")
        return " | ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self._kind.value!r}, "
            f"code={self._code!r}, message={self._message!r})"
        )


# =============================================================================
# Client Errors (Don't Retry)
# =============================================================================


class ValidationError(ClassifiedError):
    """Request data failed validation (400)."""

    default_kind = ErrorKind.VALIDATION


class UnauthorizedError(ClassifiedError):
    """Missing, invalid or expired credentials (401)."""

    default_kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(ClassifiedError):
    """Access denied (403) - permissions issue, not auth."""

    default_kind = ErrorKind.FORBIDDEN


class NotFoundError(ClassifiedError):
    """Resource not found (404)."""

    default_kind = ErrorKind.NOT_FOUND


class ConflictError(ClassifiedError):
    """Duplicate record or concurrent modification (409)."""

    default_kind = ErrorKind.CONFLICT


# =============================================================================
# Transient Errors (Retry With Backoff)
# =============================================================================


class RateLimitedError(ClassifiedError):
    """Rate limited (429) - should back off."""

    default_kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Mapping[str, Any]] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        if retry_after is not None:
            context = {**(context or {}), "retry_after": retry_after}
        super().__init__(message, cause, context, code, status_code, retryable)
        self._retry_after = retry_after

    @property
    def retry_after(self) -> Optional[float]:
        """Seconds the dependency asked us to wait, if provided."""
        return self._retry_after


class UpstreamTimeoutError(ClassifiedError):
    """Dependency did not answer in time."""

    default_kind = ErrorKind.UPSTREAM_TIMEOUT


class UpstreamUnavailableError(ClassifiedError):
    """Dependency down, unreachable or answering with 5xx."""

    default_kind = ErrorKind.UPSTREAM_UNAVAILABLE


# =============================================================================
# Internal Errors
# =============================================================================


class InternalError(ClassifiedError):
    """Unrecognized failure; never exposes details to callers."""

    default_kind = ErrorKind.INTERNAL


class ConfigurationError(InternalError):
    """Invalid retry policy, breaker or application configuration."""

    def __init__(self, message: str, context: Optional[Mapping[str, Any]] = None):
        super().__init__(message, context=context, code="CONFIGURATION_ERROR")


# =============================================================================
# Circuit Breaker Errors
# =============================================================================


class CircuitOpenError(UpstreamUnavailableError):
    """
    Circuit breaker is open, rejecting calls without attempting them.

    Marked non-retryable so a retry loop stops at the first rejection
    instead of sleeping through its remaining attempts.
    """

    def __init__(self, circuit_name: str, retry_after: float):
        super().__init__(
            f"Circuit '{circuit_name}' is open",
            context={
                "circuit_name": circuit_name,
                "retry_after": round(retry_after, 3),
            },
            code="CIRCUIT_OPEN",
            retryable=False,
        )
        self._circuit_name = circuit_name
        self._retry_after = retry_after

    @property
    def circuit_name(self) -> str:
        return self._circuit_name

    @property
    def retry_after(self) -> float:
        """Seconds until the breaker admits a trial call."""
        return self._retry_after


# =============================================================================
# Upstream Response Variant
# =============================================================================


class UpstreamResponseError(Exception):
    """
    Non-success answer from a downstream service.

    Dependency adapters (database client, LLM client) raise this tagged
    variant so the classifier matches on explicit fields instead of probing
    SDK-specific exception attributes.

    Attributes:
        service: Dependency name (e.g. "supabase", "openai")
        status: HTTP status of the response, if any
        provider_code: Provider error code (e.g. "23505", "rate_limit_exceeded")
        retry_after: Seconds from a Retry-After header, if any
    """

    def __init__(
        self,
        service: str,
        message: str,
        status: Optional[int] = None,
        provider_code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.service = service
        self.message = message
        self.status = status
        self.provider_code = provider_code
        self.retry_after = retry_after
