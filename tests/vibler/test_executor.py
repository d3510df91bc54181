"""Tests for retry and circuit breaker composition."""

import logging

import pytest

from vibler.errors import (
    CircuitOpenError,
    RateLimitedError,
    UpstreamResponseError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    ValidationError,
)
from vibler.resilience.circuit_breaker import (
    OPENAI_CIRCUIT_CONFIG,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from vibler.resilience.executor import ResilientExecutor
from vibler.resilience.retry import RetryPolicy

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.1, jitter=False)


class CountingOperation:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def registry(clock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(
        default_config=CircuitBreakerConfig(min_samples=2, cooldown_seconds=30),
        clock=clock,
    )


@pytest.fixture
def executor(registry, sleep) -> ResilientExecutor:
    return ResilientExecutor(registry=registry, default_policy=FAST_RETRY, sleep=sleep)


class TestResilientExecutor:
    """ResilientExecutor.call."""

    @pytest.mark.asyncio
    async def test_success_passes_through(self, executor):
        operation = CountingOperation([])
        assert await executor.call("supabase", operation) == "ok"
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, executor, sleep):
        operation = CountingOperation([UpstreamTimeoutError("slow")], result="profile")

        assert await executor.call("supabase", operation) == "profile"
        assert operation.calls == 2
        assert sleep.delays == pytest.approx([0.1])

    @pytest.mark.asyncio
    async def test_upstream_server_error_is_retried(self, executor, sleep):
        """A 500 answered by the provider is transient, not a local bug."""
        operation = CountingOperation(
            [UpstreamResponseError("openai", "server_error", status=500)],
            result="icp",
        )

        assert await executor.call("openai", operation) == "icp"
        assert operation.calls == 2
        assert sleep.delays == pytest.approx([0.1])

    @pytest.mark.asyncio
    async def test_open_breaker_ends_retry_loop(self, executor, registry, sleep):
        """Two counted failures open the breaker; the third attempt is rejected."""
        operation = CountingOperation(
            [UpstreamUnavailableError("down") for _ in range(5)]
        )

        with pytest.raises(CircuitOpenError):
            await executor.call("supabase", operation)

        assert operation.calls == 2
        assert len(sleep.delays) == 2
        assert registry.get("supabase").state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_without_sleeping(self, executor, sleep):
        breaker = executor.registry.get("openai")
        for _ in range(2):
            with pytest.raises(UpstreamUnavailableError):
                await breaker.guard(CountingOperation([UpstreamUnavailableError("x")]))

        operation = CountingOperation([])
        with pytest.raises(CircuitOpenError):
            await executor.call("openai", operation)

        assert operation.calls == 0
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_non_retryable_not_retried(self, executor):
        operation = CountingOperation([ValidationError("bad brief")])

        with pytest.raises(ValidationError):
            await executor.call("openai", operation)

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_per_dependency_policy(self, executor, sleep):
        executor.register_policy("openai", RetryPolicy(max_attempts=1))
        operation = CountingOperation([RateLimitedError("slow down")])

        with pytest.raises(RateLimitedError):
            await executor.call("openai", operation)

        assert operation.calls == 1
        assert executor.policy_for("openai").max_attempts == 1
        assert executor.policy_for("supabase") is FAST_RETRY

    @pytest.mark.asyncio
    async def test_call_policy_override(self, executor):
        operation = CountingOperation([UpstreamTimeoutError("slow")] * 3)
        # Separate breaker so the window does not open mid-test
        executor.registry.get("llm", CircuitBreakerConfig(min_samples=10))

        with pytest.raises(UpstreamTimeoutError):
            await executor.call(
                "llm", operation, policy=RetryPolicy(max_attempts=2, jitter=False)
            )

        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_logs_retry_attempts(self, executor, caplog):
        operation = CountingOperation([UpstreamTimeoutError("slow")])

        with caplog.at_level(logging.WARNING, logger="vibler.resilience.executor"):
            await executor.call("supabase", operation)

        retries = [r for r in caplog.records if r.getMessage().startswith("Retrying")]
        assert len(retries) == 1
        assert retries[0].attempt == 1
        assert retries[0].delay_ms == 100.0
        assert retries[0].error_kind == "upstream_timeout"

    @pytest.mark.asyncio
    async def test_logs_exhaustion(self, sleep, clock, caplog):
        registry = CircuitBreakerRegistry(
            default_config=CircuitBreakerConfig(min_samples=50), clock=clock
        )
        executor = ResilientExecutor(
            registry=registry, default_policy=FAST_RETRY, sleep=sleep
        )
        operation = CountingOperation([UpstreamTimeoutError("slow")] * 3)

        with caplog.at_level(logging.WARNING, logger="vibler.resilience.executor"):
            with pytest.raises(UpstreamTimeoutError):
                await executor.call("supabase", operation)

        messages = [r.getMessage() for r in caplog.records]
        assert "supabase call failed after 3 attempts" in messages

    def test_default_registry_is_owned(self):
        executor = ResilientExecutor()
        assert isinstance(executor.registry, CircuitBreakerRegistry)
        assert len(executor.registry) == 0

    def test_owned_registry_uses_dependency_configs(self):
        executor = ResilientExecutor(
            circuit_config=CircuitBreakerConfig(cooldown_seconds=10),
            circuit_configs={"openai": OPENAI_CIRCUIT_CONFIG},
        )
        assert executor.registry.get("openai").config is OPENAI_CIRCUIT_CONFIG
        assert executor.registry.get("stripe").config.cooldown_seconds == 10
