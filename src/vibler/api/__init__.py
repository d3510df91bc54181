"""
HTTP boundary for the Vibler service.

Provides the aiohttp application factory, the error middleware that turns
exceptions into JSON error responses, per-client rate limiting, and request
body validation.
"""

from vibler.api.app import build_executor, build_rate_limiter, create_app
from vibler.api.keys import CONFIG_KEY, EXECUTOR_KEY, RATE_LIMITER_KEY
from vibler.api.middleware import REQUEST_ID_HEADER, error_middleware, validate_body
from vibler.api.rate_limit import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    client_key,
    rate_limit_middleware,
)

__all__ = [
    "CONFIG_KEY",
    "EXECUTOR_KEY",
    "FixedWindowRateLimiter",
    "RATE_LIMITER_KEY",
    "RateLimitDecision",
    "REQUEST_ID_HEADER",
    "build_executor",
    "build_rate_limiter",
    "client_key",
    "create_app",
    "error_middleware",
    "rate_limit_middleware",
    "validate_body",
]
