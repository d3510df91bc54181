"""
Retry with exponential backoff for asynchronous operations.

Only failures whose classified kind is retryable are retried; everything
else propagates on first occurrence. The policy does not log: attempts are
reported to an optional observer so callers decide how to record them.

Usage:
    # Decorator style
    @with_retry(LLM_RETRY)
    async def generate_funnel(prompt: str) -> dict:
        ...

    # Direct style
    result = await execute_with_retry(lambda: fetch_profile(user_id), DEFAULT_RETRY)
"""

import asyncio
import random
from dataclasses import dataclass
from functools import wraps
from typing import Awaitable, Callable, Optional, TypeVar

from vibler.errors.classifier import ErrorClassifier
from vibler.errors.exceptions import ClassifiedError, ConfigurationError, ErrorKind

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff configuration.

    Delay before retrying after attempt n:
        min(max_delay, base_delay * backoff_multiplier ** (n - 1))
    With jitter, scaled by a uniform factor in [1 - jitter_ratio, 1 + jitter_ratio]
    and capped at max_delay again.

    All delays in seconds.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.2

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ConfigurationError("max_attempts must be an integer")
        if self.max_attempts < 1:
            raise ConfigurationError(
                "max_attempts must be >= 1", {"max_attempts": self.max_attempts}
            )
        if self.base_delay <= 0:
            raise ConfigurationError(
                "base_delay must be positive", {"base_delay": self.base_delay}
            )
        if self.max_delay <= 0:
            raise ConfigurationError(
                "max_delay must be positive", {"max_delay": self.max_delay}
            )
        if self.base_delay > self.max_delay:
            raise ConfigurationError(
                "base_delay must not exceed max_delay",
                {"base_delay": self.base_delay, "max_delay": self.max_delay},
            )
        if self.backoff_multiplier <= 1:
            raise ConfigurationError(
                "backoff_multiplier must be > 1",
                {"backoff_multiplier": self.backoff_multiplier},
            )
        if not 0 <= self.jitter_ratio < 1:
            raise ConfigurationError(
                "jitter_ratio must be in [0, 1)", {"jitter_ratio": self.jitter_ratio}
            )

    def backoff_delay(self, attempt: int) -> float:
        """Un-jittered delay after the given (1-based) failed attempt."""
        exponent = max(0, attempt - 1)
        try:
            delay = self.base_delay * (self.backoff_multiplier**exponent)
        except OverflowError:
            return self.max_delay
        return min(self.max_delay, delay)

    def compute_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt, jittered when enabled."""
        delay = self.backoff_delay(attempt)
        if self.jitter and self.jitter_ratio > 0:
            factor = random.uniform(1 - self.jitter_ratio, 1 + self.jitter_ratio)
            delay = min(self.max_delay, delay * factor)
        return delay


# Default for database and generic upstream calls
DEFAULT_RETRY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0)

# LLM calls: slower to recover, worth one extra attempt
LLM_RETRY = RetryPolicy(max_attempts=4, base_delay=2.0, max_delay=30.0)

# Single attempt, for callers that must not retry
NO_RETRY = RetryPolicy(max_attempts=1)


@dataclass(frozen=True)
class RetryAttempt:
    """One retry observation, reported before the backoff sleep."""

    attempt: int
    delay: float
    kind: ErrorKind
    error: ClassifiedError
    max_attempts: int


RetryObserver = Callable[[RetryAttempt], None]


async def execute_with_retry(
    operation: Operation[T],
    policy: RetryPolicy = DEFAULT_RETRY,
    *,
    classifier: Optional[ErrorClassifier] = None,
    observer: Optional[RetryObserver] = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Run an async operation, retrying classified transient failures.

    Args:
        operation: Zero-argument callable returning an awaitable
        policy: Backoff configuration
        classifier: Error classifier (default rule set if omitted)
        observer: Called with a RetryAttempt before each backoff sleep
        sleep: Awaitable sleep used for backoff

    Returns:
        The operation's result

    Raises:
        ClassifiedError: The first non-retryable failure, or the last
            failure once max_attempts is reached
    """
    classifier = classifier or ErrorClassifier()
    attempt = 1

    while True:
        try:
            return await operation()
        except Exception as e:
            classified = classifier.classify(e)

            if not classified.retryable or attempt >= policy.max_attempts:
                if classified is e:
                    raise
                raise classified from e

            delay = policy.compute_delay(attempt)
            if observer is not None:
                observer(
                    RetryAttempt(
                        attempt=attempt,
                        delay=delay,
                        kind=classified.kind,
                        error=classified,
                        max_attempts=policy.max_attempts,
                    )
                )

        await sleep(delay)
        attempt += 1


def with_retry(
    policy: RetryPolicy = DEFAULT_RETRY,
    observer: Optional[RetryObserver] = None,
    classifier: Optional[ErrorClassifier] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator to retry an async function per a RetryPolicy.

    Usage:
        @with_retry(LLM_RETRY)
        async def generate_strategy(brief: dict) -> dict:
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await execute_with_retry(
                lambda: func(*args, **kwargs),
                policy,
                classifier=classifier,
                observer=observer,
            )

        return wrapper

    return decorator
