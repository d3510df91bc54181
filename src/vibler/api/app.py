"""aiohttp application factory."""

import logging
import time
from typing import Optional

from aiohttp import web

from vibler.api import health
from vibler.api.keys import CONFIG_KEY, EXECUTOR_KEY, RATE_LIMITER_KEY, STARTED_AT_KEY
from vibler.api.middleware import error_middleware
from vibler.api.rate_limit import FixedWindowRateLimiter, rate_limit_middleware
from vibler.config import AppConfig
from vibler.errors.exceptions import ConfigurationError
from vibler.logging.utilities import log_with_context
from vibler.resilience.executor import ResilientExecutor

logger = logging.getLogger(__name__)


def build_executor(config: AppConfig) -> ResilientExecutor:
    """Executor with retry policies and breaker settings from config."""
    return ResilientExecutor(
        default_policy=config.retry_policy(),
        policies=config.dependency_policies(),
        circuit_config=config.circuit_config(),
        circuit_configs=config.dependency_circuit_configs(),
    )


def build_rate_limiter(config: AppConfig) -> Optional[FixedWindowRateLimiter]:
    """Request limiter from config, or None when rate limiting is disabled."""
    if not config.rate_limit.enabled:
        return None
    return FixedWindowRateLimiter(
        max_requests=config.rate_limit.max_requests,
        window_seconds=config.rate_limit.window_seconds,
    )


def create_app(
    config: Optional[AppConfig] = None,
    executor: Optional[ResilientExecutor] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        config: Service configuration (defaults plus env overrides if omitted)
        executor: Pre-built executor, e.g. with a test clock or sleep
        rate_limiter: Pre-built limiter; enables rate limiting regardless of
            config.rate_limit.enabled

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    config = config or AppConfig()
    errors = config.validate()
    if errors:
        raise ConfigurationError("Invalid configuration", {"errors": errors})

    rate_limiter = rate_limiter or build_rate_limiter(config)

    # error_middleware is outermost so rate limit rejections become 429s
    middlewares = [error_middleware]
    if rate_limiter is not None:
        middlewares.append(rate_limit_middleware(rate_limiter))

    app = web.Application(middlewares=middlewares)
    app[CONFIG_KEY] = config
    app[EXECUTOR_KEY] = executor or build_executor(config)
    app[STARTED_AT_KEY] = time.monotonic()
    if rate_limiter is not None:
        app[RATE_LIMITER_KEY] = rate_limiter

    app.router.add_get("/health", health.health)
    app.router.add_get("/metrics", health.metrics)

    log_with_context(
        logger,
        logging.DEBUG,
        "Application created",
        max_attempts=config.retry.max_attempts,
    )
    return app
