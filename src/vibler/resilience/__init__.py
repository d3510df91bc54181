"""
Resilience patterns for calls to external dependencies.

Provides:
- RetryPolicy and execute_with_retry for exponential backoff
- CircuitBreaker and CircuitBreakerRegistry for fast-fail on sustained failures
- ResilientExecutor combining both per named dependency
- with_timeout for per-attempt deadlines
"""

from vibler.resilience.circuit_breaker import (
    DEFAULT_COUNTED_KINDS,
    DEPENDENCY_CIRCUIT_CONFIGS,
    OPENAI_CIRCUIT_CONFIG,
    SUPABASE_CIRCUIT_CONFIG,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStats,
    circuit_protected,
)
from vibler.resilience.executor import ResilientExecutor
from vibler.resilience.retry import (
    DEFAULT_RETRY,
    LLM_RETRY,
    NO_RETRY,
    RetryAttempt,
    RetryPolicy,
    execute_with_retry,
    with_retry,
)
from vibler.resilience.timeout import with_timeout

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStats",
    "DEFAULT_COUNTED_KINDS",
    "DEPENDENCY_CIRCUIT_CONFIGS",
    "OPENAI_CIRCUIT_CONFIG",
    "SUPABASE_CIRCUIT_CONFIG",
    "circuit_protected",
    # Retry
    "RetryPolicy",
    "RetryAttempt",
    "DEFAULT_RETRY",
    "LLM_RETRY",
    "NO_RETRY",
    "execute_with_retry",
    "with_retry",
    # Composition
    "ResilientExecutor",
    "with_timeout",
]
