"""Circuit breakers that fail fast while a protected resource is unhealthy.

State transitions:

* closed -> open when the failure threshold is reached
* open -> half-open once the timeout has passed since the last failure
* half-open -> closed when the success threshold is reached
* half-open -> open on any failure
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class CircuitState(Enum):
    """Current state of a circuit breaker."""

    CLOSED = 0
    OPEN = 1
    HALF_OPEN = 2

    def __str__(self) -> str:
        return _STATE_NAMES[self]


_STATE_NAMES = {
    CircuitState.CLOSED: "closed",
    CircuitState.OPEN: "open",
    CircuitState.HALF_OPEN: "half-open",
}


class CircuitOpenError(Exception):
    """Raised when the circuit refuses to run an operation."""

    def __init__(self, message: str = "circuit breaker is open") -> None:
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds and timing for a circuit breaker."""

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: timedelta = timedelta(seconds=30)
    half_open_requests: int = 3


def default_circuit_breaker_config() -> CircuitBreakerConfig:
    """Return defaults: 5 failures to open, 2 successes to close, 30 s timeout, 3 trial requests."""
    return CircuitBreakerConfig(
        failure_threshold=5,
        success_threshold=2,
        timeout=timedelta(seconds=30),
        half_open_requests=3,
    )


class CircuitBreaker:
    """Counts consecutive failures and blocks calls while the circuit is open."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None) -> None:
        self._config = config if config is not None else default_circuit_breaker_config()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_requests = 0
        self._last_failure = 0.0
        self._last_state_change = time.monotonic()

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def execute(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` if the circuit allows it and record its outcome.

        Raises CircuitOpenError without calling ``fn`` when the circuit is
        open or the half-open trial limit is used up. An exception raised by
        ``fn`` counts as a failure and propagates.
        """
        with self._lock:
            self._check_transition()
            if self._state is CircuitState.OPEN:
                raise CircuitOpenError("circuit breaker is open")
            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_requests >= self._config.half_open_requests:
                    raise CircuitOpenError("circuit breaker half-open limit reached")
                self._half_open_requests += 1

        try:
            result = fn()
        except BaseException:
            with self._lock:
                self._on_failure()
            raise
        with self._lock:
            self._on_success()
        return result

    def state(self) -> CircuitState:
        with self._lock:
            self._check_transition()
            return self._state

    def reset(self) -> None:
        """Force the circuit back to closed and clear all counters."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._successes = 0
            self._half_open_requests = 0
            self._last_state_change = time.monotonic()

    def _check_transition(self) -> None:
        if self._state is CircuitState.OPEN:
            elapsed = time.monotonic() - self._last_failure
            if elapsed >= self._config.timeout.total_seconds():
                self._transition_to(CircuitState.HALF_OPEN)

    def _on_success(self) -> None:
        if self._state is CircuitState.CLOSED:
            self._failures = 0
        elif self._state is CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self._config.success_threshold:
                self._transition_to(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._last_failure = time.monotonic()
        if self._state is CircuitState.CLOSED:
            self._failures += 1
            if self._failures >= self._config.failure_threshold:
                self._transition_to(CircuitState.OPEN)
        elif self._state is CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        if self._state is new_state:
            return
        self._state = new_state
        self._last_state_change = time.monotonic()
        self._successes = 0
        self._half_open_requests = 0
        if new_state is not CircuitState.HALF_OPEN:
            self._failures = 0


class PerEndpointCircuitBreaker:
    """Keeps a separate circuit breaker per endpoint, all with the same config."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None) -> None:
        self._config = config if config is not None else default_circuit_breaker_config()
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def execute(self, endpoint: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` through the endpoint's breaker, creating it on first use."""
        return self._get_or_create(endpoint).execute(fn)

    def state(self, endpoint: str) -> CircuitState:
        """Return the endpoint's state; endpoints never seen are closed."""
        with self._lock:
            breaker = self._breakers.get(endpoint)
        return breaker.state() if breaker is not None else CircuitState.CLOSED

    def reset(self, endpoint: str) -> None:
        with self._lock:
            breaker = self._breakers.get(endpoint)
        if breaker is not None:
            breaker.reset()

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def _get_or_create(self, endpoint: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(endpoint)
            if breaker is None:
                breaker = CircuitBreaker(self._config)
                self._breakers[endpoint] = breaker
            return breaker


class NoopCircuitBreaker:
    """A breaker that always runs the operation and always reports closed."""

    def execute(self, fn: Callable[[], T]) -> T:
        return fn()

    def state(self) -> CircuitState:
        return CircuitState.CLOSED

    def reset(self) -> None:
        pass