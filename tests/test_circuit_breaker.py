import time
from datetime import timedelta

import pytest

from birbnest.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    NoopCircuitBreaker,
    PerEndpointCircuitBreaker,
    default_circuit_breaker_config,
)


class Boom(Exception):
    pass


def _fail():
    raise Boom("failure")


def _trip(cb, times):
    for _ in range(times):
        with pytest.raises(Boom):
            cb.execute(_fail)


def test_default_config_values():
    cfg = default_circuit_breaker_config()
    assert cfg.failure_threshold == 5
    assert cfg.success_threshold == 2
    assert cfg.timeout == timedelta(seconds=30)
    assert cfg.half_open_requests == 3


def test_state_names():
    cb = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=1, timeout=timedelta(milliseconds=50))
    )
    assert str(cb.state()) == "closed"
    _trip(cb, 1)
    assert str(cb.state()) == "open"
    time.sleep(0.08)
    assert str(cb.state()) == "half-open"


def test_closed_passes_result_through():
    cb = CircuitBreaker(default_circuit_breaker_config())
    assert cb.execute(lambda: "value") == "value"
    assert cb.state() is CircuitState.CLOSED


def test_opens_after_failure_threshold_and_blocks_calls():
    cb = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3))
    _trip(cb, 2)
    assert cb.state() is CircuitState.CLOSED
    _trip(cb, 1)
    assert cb.state() is CircuitState.OPEN

    calls = []
    with pytest.raises(CircuitOpenError) as info:
        cb.execute(lambda: calls.append(1))
    assert calls == []
    assert str(info.value) == "circuit breaker is open"


def test_success_resets_failure_count_when_closed():
    cb = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2))
    _trip(cb, 1)
    cb.execute(lambda: None)
    _trip(cb, 1)
    assert cb.state() is CircuitState.CLOSED


def test_half_open_after_timeout_then_closes_on_successes():
    cb = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=1, success_threshold=2, timeout=timedelta(0))
    )
    _trip(cb, 1)
    assert cb.state() is CircuitState.HALF_OPEN
    cb.execute(lambda: None)
    assert cb.state() is CircuitState.HALF_OPEN
    cb.execute(lambda: None)
    assert cb.state() is CircuitState.CLOSED


def test_failure_in_half_open_reopens():
    cb = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=1, timeout=timedelta(milliseconds=50))
    )
    _trip(cb, 1)
    assert cb.state() is CircuitState.OPEN
    time.sleep(0.08)
    assert cb.state() is CircuitState.HALF_OPEN
    _trip(cb, 1)
    assert cb.state() is CircuitState.OPEN


def test_half_open_request_limit():
    cb = CircuitBreaker(
        CircuitBreakerConfig(
            failure_threshold=1,
            success_threshold=2,
            timeout=timedelta(0),
            half_open_requests=1,
        )
    )
    _trip(cb, 1)
    assert cb.execute(lambda: 7) == 7
    with pytest.raises(CircuitOpenError) as info:
        cb.execute(lambda: 8)
    assert str(info.value) == "circuit breaker half-open limit reached"


def test_reset_closes_open_circuit():
    cb = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1))
    _trip(cb, 1)
    assert cb.state() is CircuitState.OPEN
    cb.reset()
    assert cb.state() is CircuitState.CLOSED
    assert cb.execute(lambda: "ok") == "ok"


def test_default_config_when_none_given():
    cb = CircuitBreaker(None)
    assert cb.config == default_circuit_breaker_config()


def test_per_endpoint_isolation():
    pecb = PerEndpointCircuitBreaker(CircuitBreakerConfig(failure_threshold=1))
    with pytest.raises(Boom):
        pecb.execute("/v1/cache/key123", _fail)
    assert pecb.state("/v1/cache/key123") is CircuitState.OPEN
    assert pecb.execute("/health", lambda: "healthy") == "healthy"
    assert pecb.state("/health") is CircuitState.CLOSED
    with pytest.raises(CircuitOpenError):
        pecb.execute("/v1/cache/key123", lambda: None)


def test_per_endpoint_unknown_is_closed():
    pecb = PerEndpointCircuitBreaker(default_circuit_breaker_config())
    assert pecb.state("/never-used") is CircuitState.CLOSED
    pecb.reset("/never-used")
    assert pecb.state("/never-used") is CircuitState.CLOSED


def test_per_endpoint_reset_and_reset_all():
    pecb = PerEndpointCircuitBreaker(CircuitBreakerConfig(failure_threshold=1))
    for endpoint in ("/a", "/b", "/c"):
        with pytest.raises(Boom):
            pecb.execute(endpoint, _fail)
    pecb.reset("/a")
    assert pecb.state("/a") is CircuitState.CLOSED
    assert pecb.state("/b") is CircuitState.OPEN
    pecb.reset_all()
    assert [pecb.state(e) for e in ("/a", "/b", "/c")] == [CircuitState.CLOSED] * 3


def test_noop_always_executes():
    cb = NoopCircuitBreaker()
    for _ in range(10):
        with pytest.raises(Boom):
            cb.execute(_fail)
    assert cb.state() is CircuitState.CLOSED
    assert cb.execute(lambda: "ran") == "ran"
    cb.reset()
    assert cb.state() is CircuitState.CLOSED