"""
Error classification for raw failures from downstream calls.

Maps database client, LLM client, aiohttp and generic Python failures onto
one ErrorKind through an ordered list of rules. The first matching rule
wins; anything no rule recognizes is INTERNAL and non-retryable.

Usage:
    classifier = ErrorClassifier()
    try:
        await call_openai()
    except Exception as e:
        raise classifier.classify(e) from e
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

import aiohttp
import pydantic
from aiohttp import web

from vibler.errors.exceptions import (
    ClassifiedError,
    ConflictError,
    ErrorKind,
    ForbiddenError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    UpstreamResponseError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    ValidationError,
)

_KIND_CLASSES = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.UNAUTHORIZED: UnauthorizedError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.UPSTREAM_TIMEOUT: UpstreamTimeoutError,
    ErrorKind.UPSTREAM_UNAVAILABLE: UpstreamUnavailableError,
    ErrorKind.INTERNAL: InternalError,
}


@dataclass(frozen=True)
class ProviderCode:
    """Classification for one provider-specific error code."""

    kind: ErrorKind
    code: Optional[str] = None
    retryable: Optional[bool] = None


# Provider error codes checked before the HTTP status.
# Postgres/PostgREST codes come from the hosted database client,
# the rest from the LLM provider.
PROVIDER_CODES: Mapping[str, ProviderCode] = {
    "PGRST116": ProviderCode(ErrorKind.NOT_FOUND),
    "23505": ProviderCode(ErrorKind.CONFLICT),
    "23502": ProviderCode(ErrorKind.VALIDATION, "CONSTRAINT_VIOLATION"),
    "23503": ProviderCode(ErrorKind.VALIDATION, "CONSTRAINT_VIOLATION"),
    "23514": ProviderCode(ErrorKind.VALIDATION, "CONSTRAINT_VIOLATION"),
    "22P02": ProviderCode(ErrorKind.VALIDATION, "INVALID_FORMAT"),
    "42501": ProviderCode(ErrorKind.FORBIDDEN, "INSUFFICIENT_PERMISSIONS"),
    "PGRST301": ProviderCode(ErrorKind.UNAUTHORIZED, "TOKEN_EXPIRED"),
    "57014": ProviderCode(ErrorKind.UPSTREAM_TIMEOUT),
    "rate_limit_exceeded": ProviderCode(ErrorKind.RATE_LIMITED, "OPENAI_RATE_LIMIT"),
    "insufficient_quota": ProviderCode(
        ErrorKind.RATE_LIMITED, "OPENAI_QUOTA_EXCEEDED", retryable=False
    ),
    "context_length_exceeded": ProviderCode(
        ErrorKind.VALIDATION, "OPENAI_INVALID_REQUEST"
    ),
    "invalid_api_key": ProviderCode(ErrorKind.INTERNAL, "CONFIGURATION_ERROR"),
}


def classify_http_status(status_code: int) -> ErrorKind:
    """
    Classify HTTP status code into error kind.

    Args:
        status_code: HTTP response status

    Returns:
        Appropriate ErrorKind
    """
    if status_code in (400, 405, 410, 413, 415, 422):
        return ErrorKind.VALIDATION

    if status_code == 401:
        return ErrorKind.UNAUTHORIZED

    if status_code == 403:
        return ErrorKind.FORBIDDEN

    if status_code == 404:
        return ErrorKind.NOT_FOUND

    if status_code == 409:
        return ErrorKind.CONFLICT

    if status_code in (408, 504):
        return ErrorKind.UPSTREAM_TIMEOUT

    if status_code == 429:
        return ErrorKind.RATE_LIMITED

    if 400 <= status_code < 500:
        return ErrorKind.VALIDATION  # Other 4xx

    if status_code == 500:
        return ErrorKind.INTERNAL

    if 500 < status_code < 600:
        return ErrorKind.UPSTREAM_UNAVAILABLE  # 502, 503 and other 5xx

    return ErrorKind.INTERNAL


def classify_upstream_status(status_code: int) -> ErrorKind:
    """
    Classify the HTTP status of a response from a dependency.

    Same as classify_http_status except that a 500 from a dependency is a
    transient downstream failure, not an error in this service.
    """
    if status_code == 500:
        return ErrorKind.UPSTREAM_UNAVAILABLE
    return classify_http_status(status_code)


def build_error(
    kind: ErrorKind,
    message: str,
    cause: Optional[BaseException] = None,
    context: Optional[Mapping[str, Any]] = None,
    code: Optional[str] = None,
    retryable: Optional[bool] = None,
    retry_after: Optional[float] = None,
    status_code: Optional[int] = None,
) -> ClassifiedError:
    """
    Instantiate the ClassifiedError subclass for a kind.

    status_code overrides the kind's default status (e.g. 405 stays 405).
    """
    if kind == ErrorKind.RATE_LIMITED:
        return RateLimitedError(
            message,
            retry_after=retry_after,
            cause=cause,
            context=context,
            code=code,
            status_code=status_code,
            retryable=retryable,
        )
    error_class = _KIND_CLASSES[kind]
    return error_class(
        message,
        cause=cause,
        context=context,
        code=code,
        status_code=status_code,
        retryable=retryable,
    )


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None  # HTTP-date form is not honored


# =============================================================================
# Rules
# =============================================================================

Matcher = Callable[[BaseException], bool]
Builder = Callable[[BaseException], ClassifiedError]


@dataclass(frozen=True)
class ClassificationRule:
    """One ordered classification rule: if `matches`, `build` the error."""

    name: str
    matches: Matcher
    build: Builder


def _is_type(*types: type) -> Matcher:
    return lambda exc: isinstance(exc, types)


def _from_pydantic(exc: BaseException) -> ClassifiedError:
    assert isinstance(exc, pydantic.ValidationError)
    fields = [
        {
            "loc": ".".join(str(part) for part in err.get("loc", ())),
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]
    return ValidationError(
        "Request validation failed",
        cause=exc,
        context={"fields": fields},
        code="SCHEMA_VALIDATION_FAILED",
    )


def _from_json_decode(exc: BaseException) -> ClassifiedError:
    assert isinstance(exc, json.JSONDecodeError)
    return ValidationError(
        "Invalid JSON in request body",
        cause=exc,
        context={"line": exc.lineno, "column": exc.colno},
        code="INVALID_FORMAT",
    )


def _from_upstream_response(exc: BaseException) -> ClassifiedError:
    assert isinstance(exc, UpstreamResponseError)
    context: Dict[str, Any] = {"service": exc.service}
    if exc.status is not None:
        context["status"] = exc.status
    if exc.provider_code:
        context["provider_code"] = exc.provider_code

    provider = PROVIDER_CODES.get(exc.provider_code or "")
    if provider is not None:
        return build_error(
            provider.kind,
            exc.message,
            cause=exc,
            context=context,
            code=provider.code,
            retryable=provider.retryable,
            retry_after=exc.retry_after,
        )

    if exc.status is not None:
        kind = classify_upstream_status(exc.status)
    else:
        kind = ErrorKind.UPSTREAM_UNAVAILABLE
    return build_error(
        kind, exc.message, cause=exc, context=context, retry_after=exc.retry_after
    )


def _from_client_response(exc: BaseException) -> ClassifiedError:
    assert isinstance(exc, aiohttp.ClientResponseError)
    retry_after = None
    if exc.headers is not None:
        retry_after = _parse_retry_after(exc.headers.get("Retry-After"))
    context: Dict[str, Any] = {"status": exc.status}
    if exc.request_info is not None:
        context["url"] = str(exc.request_info.real_url.with_query(None))
    return build_error(
        classify_upstream_status(exc.status),
        exc.message or f"HTTP {exc.status}",
        cause=exc,
        context=context,
        retry_after=retry_after,
    )


def _from_http_exception(exc: BaseException) -> ClassifiedError:
    assert isinstance(exc, web.HTTPException)
    return build_error(
        classify_http_status(exc.status),
        exc.text or exc.reason,
        cause=exc,
        context={"status": exc.status},
        status_code=exc.status,
    )


def _timeout(exc: BaseException) -> ClassifiedError:
    return UpstreamTimeoutError(str(exc) or "Operation timed out", cause=exc)


def _unavailable(exc: BaseException) -> ClassifiedError:
    return UpstreamUnavailableError(str(exc) or type(exc).__name__, cause=exc)


# Message markers for errors raised by SDKs we have no explicit rule for
_MARKERS: Tuple[Tuple[ErrorKind, Tuple[str, ...]], ...] = (
    (ErrorKind.RATE_LIMITED, ("429", "rate limit", "throttl", "too many requests")),
    (ErrorKind.UPSTREAM_TIMEOUT, ("timeout", "timed out")),
    (
        ErrorKind.UPSTREAM_UNAVAILABLE,
        (
            "service unavailable",
            "connection refused",
            "connection reset",
            "connection aborted",
            "network",
            "502",
            "503",
            "504",
        ),
    ),
)


def _marker_kind(exc: BaseException) -> Optional[ErrorKind]:
    text = f"{type(exc).__name__} {exc}".lower()
    for kind, markers in _MARKERS:
        if any(marker in text for marker in markers):
            return kind
    return None


def _from_markers(exc: BaseException) -> ClassifiedError:
    kind = _marker_kind(exc) or ErrorKind.INTERNAL
    return build_error(kind, str(exc) or type(exc).__name__, cause=exc)


def _internal(exc: BaseException) -> ClassifiedError:
    return InternalError(
        str(exc) or type(exc).__name__,
        cause=exc,
        context={"error_type": type(exc).__name__},
    )


DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule("pydantic", _is_type(pydantic.ValidationError), _from_pydantic),
    ClassificationRule("json", _is_type(json.JSONDecodeError), _from_json_decode),
    ClassificationRule(
        "upstream_response", _is_type(UpstreamResponseError), _from_upstream_response
    ),
    ClassificationRule(
        "aiohttp_response", _is_type(aiohttp.ClientResponseError), _from_client_response
    ),
    ClassificationRule(
        "http_exception",
        lambda exc: isinstance(exc, web.HTTPException) and exc.status >= 400,
        _from_http_exception,
    ),
    ClassificationRule(
        "timeout",
        _is_type(asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError),
        _timeout,
    ),
    ClassificationRule(
        "connection",
        _is_type(aiohttp.ClientConnectionError, ConnectionError),
        _unavailable,
    ),
    ClassificationRule(
        "markers", lambda exc: _marker_kind(exc) is not None, _from_markers
    ),
)


class ErrorClassifier:
    """
    Ordered, total classification of raw failures.

    Extra rules are evaluated before the defaults, so callers can teach the
    classifier about a new SDK without editing this module.
    """

    def __init__(self, extra_rules: Iterable[ClassificationRule] = ()):
        self.rules: Tuple[ClassificationRule, ...] = tuple(extra_rules) + DEFAULT_RULES

    def classify(self, exc: BaseException) -> ClassifiedError:
        """
        Classify an exception into a ClassifiedError.

        Args:
            exc: Exception to classify

        Returns:
            The exception itself if already classified, otherwise a new
            ClassifiedError wrapping it as cause
        """
        if isinstance(exc, ClassifiedError):
            return exc

        for rule in self.rules:
            if rule.matches(exc):
                return rule.build(exc)

        return _internal(exc)

    def kind_of(self, exc: BaseException) -> ErrorKind:
        """Shorthand for classify(exc).kind."""
        return self.classify(exc).kind


_default_classifier = ErrorClassifier()


def classify(exc: BaseException) -> ClassifiedError:
    """Classify with the default rule set."""
    return _default_classifier.classify(exc)
