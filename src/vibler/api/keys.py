"""Typed application keys shared by the API modules."""

from aiohttp import web

from vibler.api.rate_limit import FixedWindowRateLimiter
from vibler.config import AppConfig
from vibler.resilience.executor import ResilientExecutor

CONFIG_KEY = web.AppKey("config", AppConfig)
EXECUTOR_KEY = web.AppKey("executor", ResilientExecutor)
STARTED_AT_KEY = web.AppKey("started_at", float)
RATE_LIMITER_KEY = web.AppKey("rate_limiter", FixedWindowRateLimiter)
