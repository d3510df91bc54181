"""
Shared fixtures for Vibler tests.

Provides:
- A manually advanced clock for circuit breaker timing
- A recording sleep so retry backoff never waits on the wall clock
"""

from typing import List

import pytest

from vibler.logging.context import clear_log_context


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(autouse=True)
def reset_log_context():
    """Keep request-scoped log context from leaking between tests."""
    clear_log_context()
    yield
    clear_log_context()
