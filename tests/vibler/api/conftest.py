"""Fixtures for the HTTP boundary tests."""

import pytest

from vibler.config import AppConfig
from vibler.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from vibler.resilience.executor import ResilientExecutor
from vibler.resilience.retry import RetryPolicy


@pytest.fixture
def config(monkeypatch) -> AppConfig:
    monkeypatch.delenv("VIBLER_ENV", raising=False)
    return AppConfig()


@pytest.fixture
def executor(clock, sleep) -> ResilientExecutor:
    registry = CircuitBreakerRegistry(
        default_config=CircuitBreakerConfig(min_samples=2, cooldown_seconds=30),
        clock=clock,
    )
    return ResilientExecutor(
        registry=registry,
        default_policy=RetryPolicy(max_attempts=3, base_delay=0.1, jitter=False),
        sleep=sleep,
    )
