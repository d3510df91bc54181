"""
Composition of retry policy and circuit breaker per named dependency.

Each attempt of the retry loop re-enters the dependency's breaker, so an
open breaker ends the loop at once (CircuitOpenError is not retryable).
Retry attempts, exhaustion and breaker transitions are logged and recorded
as Prometheus metrics.

Usage:
    executor = ResilientExecutor(policies={"openai": LLM_RETRY})
    icp = await executor.call("openai", lambda: client.generate(prompt))
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from vibler import metrics
from vibler.errors.classifier import ErrorClassifier
from vibler.errors.exceptions import ClassifiedError
from vibler.logging.context import log_context
from vibler.logging.utilities import log_exception, log_with_context
from vibler.resilience.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from vibler.resilience.retry import (
    DEFAULT_RETRY,
    RetryAttempt,
    RetryObserver,
    RetryPolicy,
    Sleep,
    execute_with_retry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _on_state_change(name: str, old: CircuitState, new: CircuitState) -> None:
    metrics.update_circuit_breaker_state(name, new.value)


class ResilientExecutor:
    """
    Runs dependency calls through retry and circuit breaker.

    Owns the breaker registry unless one is injected; circuit_configs sets
    breaker settings per dependency for an owned registry. Policies are
    looked up per dependency, falling back to the default policy.
    """

    def __init__(
        self,
        registry: Optional[CircuitBreakerRegistry] = None,
        default_policy: RetryPolicy = DEFAULT_RETRY,
        policies: Optional[Mapping[str, RetryPolicy]] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        circuit_configs: Optional[Mapping[str, CircuitBreakerConfig]] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.classifier = classifier or ErrorClassifier()
        if registry is None:
            registry = CircuitBreakerRegistry(
                default_config=circuit_config or CircuitBreakerConfig(),
                configs=dict(circuit_configs or {}),
                on_state_change=_on_state_change,
                on_rejected=metrics.record_circuit_rejection,
                classifier=self.classifier,
            )
        self.registry = registry
        self.default_policy = default_policy
        self._policies: Dict[str, RetryPolicy] = dict(policies or {})
        self._sleep = sleep

    def register_policy(self, dependency: str, policy: RetryPolicy) -> None:
        """Set the retry policy used for a dependency."""
        self._policies[dependency] = policy

    def policy_for(self, dependency: str) -> RetryPolicy:
        return self._policies.get(dependency, self.default_policy)

    def _observer(self, dependency: str) -> RetryObserver:
        def observe(attempt: RetryAttempt) -> None:
            metrics.record_retry_attempt(dependency, attempt.kind.value)
            log_with_context(
                logger,
                logging.WARNING,
                f"Retrying {dependency} after failed attempt",
                attempt=attempt.attempt,
                max_attempts=attempt.max_attempts,
                delay_ms=round(attempt.delay * 1000, 1),
                error_kind=attempt.kind.value,
                error_code=attempt.error.code,
                error_message=attempt.error.message,
            )

        return observe

    async def call(
        self,
        dependency: str,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        """
        Call a dependency with retry and circuit breaker protection.

        Args:
            dependency: Dependency name (breaker key)
            operation: Zero-argument callable returning an awaitable
            policy: Retry policy override for this call

        Raises:
            ClassifiedError: Non-retryable failure, exhausted retries, or
                CircuitOpenError when the breaker rejects the call
        """
        policy = policy or self.policy_for(dependency)
        with log_context(dependency=dependency):
            return await self._call(dependency, operation, policy)

    async def _call(
        self,
        dependency: str,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
    ) -> T:
        try:
            return await execute_with_retry(
                lambda: self.registry.guard(dependency, operation),
                policy,
                classifier=self.classifier,
                observer=self._observer(dependency),
                sleep=self._sleep,
            )
        except ClassifiedError as e:
            if e.retryable and policy.max_attempts > 1:
                metrics.record_retry_exhausted(dependency, e.kind.value)
                log_exception(
                    logger,
                    e,
                    f"{dependency} call failed after {policy.max_attempts} attempts",
                    level=logging.WARNING,
                    include_traceback=False,
                    max_attempts=policy.max_attempts,
                )
            raise
