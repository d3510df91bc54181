"""
Circuit breaker pattern for resilience against failing dependencies.

Protects against scenarios like:
- LLM provider outages or sustained rate limiting
- Hosted database unreachable
- Upstream timeouts piling up behind slow requests

States:
- CLOSED: Normal operation, calls pass through and outcomes are recorded
- OPEN: Failing, calls rejected immediately (fast-fail)
- HALF_OPEN: Testing recovery, exactly one trial call allowed

The breaker opens on the failure ratio over a rolling window of recent
outcomes, and only once the window holds a minimum number of samples.

Usage:
    registry = CircuitBreakerRegistry()

    # Manual style
    profile = await registry.guard("supabase", lambda: fetch_profile(user_id))

    # Decorator style
    @circuit_protected(registry, "openai")
    async def generate_icp(brief: dict) -> dict:
        ...
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from types import MappingProxyType
from typing import (
    Awaitable,
    Callable,
    Deque,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)

from vibler.errors.classifier import ErrorClassifier
from vibler.errors.exceptions import CircuitOpenError, ConfigurationError, ErrorKind
from vibler.logging.utilities import log_exception, log_with_context

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting calls
    HALF_OPEN = "half_open"  # Testing recovery


StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]
RejectedCallback = Callable[[str], None]

# Kinds that say something about the dependency's health.
# Validation, auth, not-found and conflict failures mean it answered.
DEFAULT_COUNTED_KINDS: FrozenSet[ErrorKind] = frozenset(
    {
        ErrorKind.RATE_LIMITED,
        ErrorKind.UPSTREAM_TIMEOUT,
        ErrorKind.UPSTREAM_UNAVAILABLE,
        ErrorKind.INTERNAL,
    }
)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    # Failure ratio within the window that opens the circuit
    failure_ratio_threshold: float = 0.5

    # Samples required before the ratio is evaluated
    min_samples: int = 5

    # Outcomes older than this are dropped from the window
    window_seconds: float = 60.0

    # Hard cap on samples kept in the window
    window_max_samples: int = 100

    # Seconds to wait in open state before the trial call
    cooldown_seconds: float = 30.0

    # Error kinds that count as failures
    counted_kinds: FrozenSet[ErrorKind] = DEFAULT_COUNTED_KINDS

    def __post_init__(self) -> None:
        if not 0 < self.failure_ratio_threshold <= 1:
            raise ConfigurationError(
                "failure_ratio_threshold must be in (0, 1]",
                {"failure_ratio_threshold": self.failure_ratio_threshold},
            )
        if self.min_samples < 1:
            raise ConfigurationError(
                "min_samples must be >= 1", {"min_samples": self.min_samples}
            )
        if self.window_seconds <= 0:
            raise ConfigurationError(
                "window_seconds must be positive",
                {"window_seconds": self.window_seconds},
            )
        if self.window_max_samples < self.min_samples:
            raise ConfigurationError(
                "window_max_samples must be >= min_samples",
                {
                    "window_max_samples": self.window_max_samples,
                    "min_samples": self.min_samples,
                },
            )
        if self.cooldown_seconds <= 0:
            raise ConfigurationError(
                "cooldown_seconds must be positive",
                {"cooldown_seconds": self.cooldown_seconds},
            )


# LLM provider
# - Slow calls, failures are usually provider-wide
# - 60s cooldown: rate limit windows are per minute
OPENAI_CIRCUIT_CONFIG = CircuitBreakerConfig(
    failure_ratio_threshold=0.5,
    min_samples=5,
    window_seconds=120.0,
    cooldown_seconds=60.0,
)

# Hosted database
# - Many fast calls, open only on a clear majority of failures
SUPABASE_CIRCUIT_CONFIG = CircuitBreakerConfig(
    failure_ratio_threshold=0.6,
    min_samples=10,
    window_seconds=60.0,
    cooldown_seconds=15.0,
)

# Applied by the application to these dependencies unless configured otherwise
DEPENDENCY_CIRCUIT_CONFIGS: Mapping[str, CircuitBreakerConfig] = MappingProxyType(
    {
        "openai": OPENAI_CIRCUIT_CONFIG,
        "supabase": SUPABASE_CIRCUIT_CONFIG,
    }
)


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    last_state_change_time: Optional[float] = None
    current_state: str = "closed"
    window_samples: int = 0
    window_failures: int = 0

    @property
    def failure_ratio(self) -> float:
        if self.window_samples == 0:
            return 0.0
        return self.window_failures / self.window_samples


class CircuitBreaker:
    """
    Circuit breaker over a rolling window of outcomes.

    Window updates and state transitions are serialized by one lock per
    breaker. The lock is never held while the guarded operation runs.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        on_state_change: Optional[StateChangeCallback] = None,
        on_rejected: Optional[RejectedCallback] = None,
        classifier: Optional[ErrorClassifier] = None,
        clock: Clock = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.on_state_change = on_state_change
        self.on_rejected = on_rejected
        self._classifier = classifier or ErrorClassifier()
        self._clock = clock

        self._state = CircuitState.CLOSED
        # (timestamp, failed) pairs, oldest first
        self._window: Deque[Tuple[float, bool]] = deque(
            maxlen=self.config.window_max_samples
        )
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

        self._stats = CircuitStats()
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        """Current circuit state (may transition on access)."""
        with self._lock:
            self._check_state_transition()
            return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def stats(self) -> CircuitStats:
        """Get copy of current statistics."""
        with self._lock:
            self._check_state_transition()
            samples, failures = self._window_counts()
            return CircuitStats(
                total_calls=self._stats.total_calls,
                successful_calls=self._stats.successful_calls,
                failed_calls=self._stats.failed_calls,
                rejected_calls=self._stats.rejected_calls,
                state_changes=self._stats.state_changes,
                last_failure_time=self._stats.last_failure_time,
                last_success_time=self._stats.last_success_time,
                last_state_change_time=self._stats.last_state_change_time,
                current_state=self._state.value,
                window_samples=samples,
                window_failures=failures,
            )

    # -------------------------------------------------------------------------
    # Internal state handling (called under lock)
    # -------------------------------------------------------------------------

    def _prune_window(self) -> None:
        cutoff = self._clock() - self.config.window_seconds
        while self._window and self._window[0][0] <= cutoff:
            self._window.popleft()

    def _window_counts(self) -> Tuple[int, int]:
        self._prune_window()
        failures = sum(1 for _, failed in self._window if failed)
        return len(self._window), failures

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self.config.cooldown_seconds:
                log_with_context(
                    logger,
                    logging.DEBUG,
                    "Circuit breaker cooldown elapsed, transitioning to half-open",
                    circuit_name=self.name,
                    duration_ms=round(elapsed * 1000, 2),
                )
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return

        now = self._clock()
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change_time = now
        self._stats.current_state = new_state.value
        self._trial_in_flight = False

        if new_state == CircuitState.CLOSED:
            self._window.clear()
            self._opened_at = None
            log_with_context(
                logger,
                logging.INFO,
                "Circuit closed",
                circuit_name=self.name,
                circuit_state="closed",
                previous_state=old_state.value,
            )
        elif new_state == CircuitState.HALF_OPEN:
            log_with_context(
                logger,
                logging.INFO,
                "Circuit half-open",
                circuit_name=self.name,
                circuit_state="half_open",
                previous_state=old_state.value,
            )
        elif new_state == CircuitState.OPEN:
            self._opened_at = now
            samples, failures = self._window_counts()
            log_with_context(
                logger,
                logging.WARNING,
                "Circuit open",
                circuit_name=self.name,
                circuit_state="open",
                previous_state=old_state.value,
                samples=samples,
                failure_ratio=round(failures / samples, 3) if samples else None,
                retry_after=self.config.cooldown_seconds,
            )

        if self.on_state_change:
            try:
                self.on_state_change(self.name, old_state, new_state)
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    "Error in circuit state change callback",
                    circuit_name=self.name,
                    level=logging.WARNING,
                    include_traceback=False,
                )

    def _admit(self) -> Tuple[bool, bool]:
        """Decide whether a call may run. Returns (admitted, is_trial)."""
        self._check_state_transition()

        if self._state == CircuitState.CLOSED:
            return True, False

        if self._state == CircuitState.OPEN:
            return False, False

        # HALF_OPEN: exactly one trial call at a time
        if not self._trial_in_flight:
            self._trial_in_flight = True
            return True, True

        return False, False

    def _get_retry_after(self) -> float:
        """Seconds until the circuit admits a trial call."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self.config.cooldown_seconds - elapsed)

    def _record_success(self, is_trial: bool) -> None:
        self._stats.last_success_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            if is_trial:
                self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._window.append((self._clock(), False))

    def _record_failure(self, exc: Exception, is_trial: bool) -> None:
        self._stats.failed_calls += 1
        kind = self._classifier.kind_of(exc)

        if kind not in self.config.counted_kinds:
            log_with_context(
                logger,
                logging.DEBUG,
                "Circuit breaker failure not counted",
                circuit_name=self.name,
                circuit_state=self._state.value,
                error_kind=kind.value,
                error_type=type(exc).__name__,
            )
            self._record_success(is_trial)
            return

        self._stats.last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            if is_trial:
                log_with_context(
                    logger,
                    logging.DEBUG,
                    "Circuit breaker trial call failed",
                    circuit_name=self.name,
                    error_kind=kind.value,
                    error_type=type(exc).__name__,
                )
                self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            self._window.append((self._clock(), True))
            samples, failures = self._window_counts()
            log_with_context(
                logger,
                logging.DEBUG,
                "Circuit breaker failure recorded",
                circuit_name=self.name,
                circuit_state=self._state.value,
                error_kind=kind.value,
                error_type=type(exc).__name__,
                samples=samples,
                failure_ratio=round(failures / samples, 3),
            )
            if (
                samples >= self.config.min_samples
                and failures / samples >= self.config.failure_ratio_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def guard(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an async operation through the circuit breaker.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            Result of the operation

        Raises:
            CircuitOpenError: If the circuit rejects the call (not recorded
                in the window)
            Exception: Any exception from the operation, unchanged
        """
        with self._lock:
            self._stats.total_calls += 1
            admitted, is_trial = self._admit()
            if not admitted:
                self._stats.rejected_calls += 1
                retry_after = self._get_retry_after()

        if not admitted:
            if self.on_rejected:
                try:
                    self.on_rejected(self.name)
                except Exception as e:
                    log_exception(
                        logger,
                        e,
                        "Error in circuit rejection callback",
                        circuit_name=self.name,
                        level=logging.WARNING,
                        include_traceback=False,
                    )
            raise CircuitOpenError(self.name, retry_after)

        # Execute outside lock
        try:
            result = await operation()
        except Exception as e:
            with self._lock:
                self._record_failure(e, is_trial)
            raise
        except BaseException:
            # Cancelled: no outcome, but free the trial slot
            with self._lock:
                if is_trial:
                    self._trial_in_flight = False
            raise

        with self._lock:
            self._stats.successful_calls += 1
            self._record_success(is_trial)
        return result

    # Alias matching the decorator/manual naming used elsewhere
    call = guard

    def reset(self) -> None:
        """Manually reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._window.clear()
            self._opened_at = None
            self._trial_in_flight = False
            log_with_context(
                logger,
                logging.INFO,
                "Circuit manually reset",
                circuit_name=self.name,
            )

    def get_diagnostics(self) -> dict:
        """Get diagnostic info for health checks."""
        with self._lock:
            self._check_state_transition()
            samples, failures = self._window_counts()
            return {
                "name": self.name,
                "state": self._state.value,
                "window_samples": samples,
                "window_failures": failures,
                "failure_ratio": round(failures / samples, 3) if samples else 0.0,
                "retry_after": round(self._get_retry_after(), 3),
                "config": {
                    "failure_ratio_threshold": self.config.failure_ratio_threshold,
                    "min_samples": self.config.min_samples,
                    "window_seconds": self.config.window_seconds,
                    "cooldown_seconds": self.config.cooldown_seconds,
                },
                "stats": {
                    "total_calls": self._stats.total_calls,
                    "successful_calls": self._stats.successful_calls,
                    "failed_calls": self._stats.failed_calls,
                    "rejected_calls": self._stats.rejected_calls,
                    "state_changes": self._stats.state_changes,
                },
            }


# =============================================================================
# Circuit Breaker Registry
# =============================================================================


@dataclass
class CircuitBreakerRegistry:
    """
    Named circuit breakers, created lazily on first use.

    Owned by the application and injected where it is needed, so tests can
    build a fresh registry instead of sharing process-wide state.
    """

    default_config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    configs: Mapping[str, CircuitBreakerConfig] = field(default_factory=dict)
    on_state_change: Optional[StateChangeCallback] = None
    on_rejected: Optional[RejectedCallback] = None
    classifier: Optional[ErrorClassifier] = None
    clock: Clock = time.monotonic

    def __post_init__(self) -> None:
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ) -> CircuitBreaker:
        """
        Get or create a named circuit breaker.

        Args:
            name: Dependency name
            config: Configuration (only used on first creation; falls back
                to the per-name config, then the registry default)
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config or self.configs.get(name) or self.default_config,
                    on_state_change=self.on_state_change,
                    on_rejected=self.on_rejected,
                    classifier=self.classifier,
                    clock=self.clock,
                )
                self._breakers[name] = breaker
                log_with_context(
                    logger,
                    logging.DEBUG,
                    "Created circuit breaker",
                    circuit_name=name,
                )
            return breaker

    def peek(self, name: str) -> Optional[CircuitBreaker]:
        """Existing breaker for a name, without creating one."""
        with self._lock:
            return self._breakers.get(name)

    async def guard(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation through the breaker for a dependency."""
        return await self.get(name).guard(operation)

    @property
    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._breakers)

    def snapshot(self) -> Dict[str, dict]:
        """Diagnostics for every breaker, keyed by name."""
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.get_diagnostics() for breaker in breakers}

    def reset(self, name: Optional[str] = None) -> None:
        """Reset one breaker, or all of them."""
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            if name is None or breaker.name == name:
                breaker.reset()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)


def circuit_protected(
    registry: CircuitBreakerRegistry,
    name: str,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator to protect an async function with a named circuit breaker.

    Raises:
        CircuitOpenError: If circuit is open
        Exception: Any exception from the wrapped function

    Usage:
        @circuit_protected(registry, "openai")
        async def generate_creative(brief: dict) -> dict:
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await registry.guard(name, lambda: func(*args, **kwargs))

        return wrapper

    return decorator
