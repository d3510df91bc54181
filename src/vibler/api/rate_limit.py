"""
Per-client fixed-window rate limiting for the HTTP API.

Each client key gets max_requests per window. The window starts at the
key's first request and resets once it has elapsed. Rejections raise
RateLimitedError, which error_middleware turns into a 429 with Retry-After,
so this middleware must sit inside error_middleware.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Collection, Dict, Optional

from aiohttp import web

from vibler.errors.exceptions import ConfigurationError, RateLimitedError

Clock = Callable[[], float]
KeyFunc = Callable[[web.Request], str]
Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# Paths never counted against a client
DEFAULT_EXEMPT_PATHS = frozenset({"/health", "/metrics"})

# Expired windows are swept once the store grows past this
MAX_TRACKED_KEYS = 10_000


def client_key(request: web.Request) -> str:
    """First X-Forwarded-For address, else the peer address."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote or "anonymous"


@dataclass
class _Window:
    count: int
    resets_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one check against the limiter."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: float


class FixedWindowRateLimiter:
    """
    In-process request counter per client key.

    Counts are lost on restart and not shared between processes.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Clock = time.monotonic,
    ):
        if max_requests < 1:
            raise ConfigurationError(
                "max_requests must be >= 1", {"max_requests": max_requests}
            )
        if window_seconds <= 0:
            raise ConfigurationError(
                "window_seconds must be positive", {"window_seconds": window_seconds}
            )
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateLimitDecision:
        """Count a request for key and decide whether it may proceed."""
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)

            if window is None or now >= window.resets_at:
                if len(self._windows) >= MAX_TRACKED_KEYS:
                    self._sweep(now)
                window = _Window(count=0, resets_at=now + self.window_seconds)
                self._windows[key] = window

            if window.count >= self.max_requests:
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    retry_after=window.resets_at - now,
                )

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - window.count,
                retry_after=0.0,
            )

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key."""
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now >= w.resets_at]
        for key in expired:
            del self._windows[key]


def rate_limit_middleware(
    limiter: FixedWindowRateLimiter,
    key_func: KeyFunc = client_key,
    exempt_paths: Collection[str] = DEFAULT_EXEMPT_PATHS,
):
    """
    Build an aiohttp middleware enforcing limiter per client key.

    Allowed responses carry X-RateLimit-Limit and X-RateLimit-Remaining.

    Raises:
        RateLimitedError: Client exhausted its window (retry_after set to
            the seconds until the window resets)
    """

    @web.middleware
    async def middleware(
        request: web.Request, handler: Handler
    ) -> web.StreamResponse:
        if request.path in exempt_paths:
            return await handler(request)

        key = key_func(request)
        decision = limiter.hit(key)
        if not decision.allowed:
            raise RateLimitedError(
                "Rate limit exceeded",
                retry_after=math.ceil(decision.retry_after),
                context={"limit": decision.limit},
                code="RATE_LIMIT_EXCEEDED",
            )

        response = await handler(request)
        if not response.prepared:
            response.headers["X-RateLimit-Limit"] = str(decision.limit)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response

    return middleware
