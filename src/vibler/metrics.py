"""
Prometheus metrics for the Vibler resilience layer.

Provides instrumentation for:
- Classified errors by kind and code
- Retry attempts per dependency
- Circuit breaker state, transitions and rejections
- API request latency
"""

from prometheus_client import Counter, Gauge, Histogram

errors_total = Counter(
    "vibler_errors_total",
    "Total number of classified errors",
    ["kind", "code"],
)

retry_attempts_total = Counter(
    "vibler_retry_attempts_total",
    "Total number of retries scheduled after a failed attempt",
    ["dependency", "kind"],
)

retry_exhausted_total = Counter(
    "vibler_retry_exhausted_total",
    "Total number of operations that failed after all attempts",
    ["dependency", "kind"],
)

circuit_breaker_state = Gauge(
    "vibler_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["dependency"],
)

circuit_breaker_transitions_total = Counter(
    "vibler_circuit_breaker_transitions_total",
    "Total number of circuit breaker state transitions",
    ["dependency", "to_state"],
)

circuit_breaker_rejections_total = Counter(
    "vibler_circuit_breaker_rejections_total",
    "Total number of calls rejected by an open circuit",
    ["dependency"],
)

api_request_duration_seconds = Histogram(
    "vibler_api_request_duration_seconds",
    "Time spent handling API requests",
    ["method", "status"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

_STATE_VALUES = {
    "closed": 0,
    "open": 1,
    "half_open": 2,
}


def record_error(kind: str, code: str) -> None:
    """Record one classified error."""
    errors_total.labels(kind=kind, code=code).inc()


def record_retry_attempt(dependency: str, kind: str) -> None:
    """Record a retry scheduled after a failed attempt."""
    retry_attempts_total.labels(dependency=dependency, kind=kind).inc()


def record_retry_exhausted(dependency: str, kind: str) -> None:
    """Record an operation that gave up."""
    retry_exhausted_total.labels(dependency=dependency, kind=kind).inc()


def update_circuit_breaker_state(dependency: str, state: str) -> None:
    """
    Update circuit breaker state gauge and transition counter.

    Args:
        dependency: Dependency name the breaker guards
        state: New circuit state value (closed, open, half_open)
    """
    circuit_breaker_state.labels(dependency=dependency).set(_STATE_VALUES[state])
    circuit_breaker_transitions_total.labels(
        dependency=dependency, to_state=state
    ).inc()


def record_circuit_rejection(dependency: str) -> None:
    """Record a call rejected by an open circuit."""
    circuit_breaker_rejections_total.labels(dependency=dependency).inc()


def observe_api_request(method: str, status: int, duration_seconds: float) -> None:
    """Record the latency of one API request."""
    api_request_duration_seconds.labels(method=method, status=str(status)).observe(
        duration_seconds
    )


__all__ = [
    "errors_total",
    "retry_attempts_total",
    "retry_exhausted_total",
    "circuit_breaker_state",
    "circuit_breaker_transitions_total",
    "circuit_breaker_rejections_total",
    "api_request_duration_seconds",
    "record_error",
    "record_retry_attempt",
    "record_retry_exhausted",
    "update_circuit_breaker_state",
    "record_circuit_rejection",
    "observe_api_request",
]
