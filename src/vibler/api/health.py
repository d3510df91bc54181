"""
Health and metrics HTTP endpoints.

/health reports "ok", or "degraded" while any circuit is open, together
with per-dependency breaker diagnostics. /metrics serves Prometheus text.
"""

import time

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from vibler.api.keys import CONFIG_KEY, EXECUTOR_KEY, STARTED_AT_KEY
from vibler.logging.formatters import utc_timestamp


async def health(request: web.Request) -> web.Response:
    """Service status plus circuit breaker diagnostics."""
    app = request.app
    circuits = app[EXECUTOR_KEY].registry.snapshot()
    open_circuits = sorted(
        name for name, info in circuits.items() if info["state"] == "open"
    )

    return web.json_response(
        {
            "status": "degraded" if open_circuits else "ok",
            "timestamp": utc_timestamp(),
            "uptime_seconds": int(time.monotonic() - app[STARTED_AT_KEY]),
            "environment": app[CONFIG_KEY].environment,
            "open_circuits": open_circuits,
            "circuits": circuits,
        }
    )


async def metrics(request: web.Request) -> web.Response:
    """Prometheus exposition of the default registry."""
    return web.Response(
        body=generate_latest(REGISTRY),
        headers={"Content-Type": CONTENT_TYPE_LATEST},
    )
