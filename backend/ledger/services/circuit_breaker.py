# backend/ledger/services/circuit_breaker.py
"""
Circuit breaker guarding calls to the market data provider.

When the provider keeps failing the gateway stops calling it for a while and
answers from the cache (or raises CircuitBreakerOpen, mapped to 503).

States:
    CLOSED    - calls pass through
    OPEN      - calls rejected until recovery_timeout has elapsed
    HALF_OPEN - a limited number of probe calls decide between the two

Usage:
    from ledger.services.circuit_breaker import market_data_breaker

    with market_data_breaker:
        rate = provider.get_rate("USD", "VND", day)
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ledger.services.constants import (
    CIRCUIT_BREAKER_FAILURE_THRESHOLD,
    CIRCUIT_BREAKER_FAILURE_WINDOW,
    CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
)

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """
    Raised instead of calling the protected service while the circuit is open.

    Attributes:
        breaker_name: Name of the circuit breaker
        time_remaining: Seconds until a probe call is allowed
    """

    def __init__(self, breaker_name: str, time_remaining: float) -> None:
        self.breaker_name = breaker_name
        self.time_remaining = time_remaining
        super().__init__(
            f"Circuit breaker '{breaker_name}' is open. "
            f"Retry in {time_remaining:.1f} seconds."
        )


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0


@dataclass
class CircuitBreaker:
    """
    Thread-safe circuit breaker used as a context manager.

    Attributes:
        name: Identifier used in logs and errors
        failure_threshold: Failures (inside failure_window) that open the circuit
        recovery_timeout: Seconds an open circuit waits before probing
        half_open_max_calls: Probe calls allowed while half-open
        failure_window: Sliding window in seconds (0 counts every failure)
        excluded_exceptions: Exceptions that do not count as failures
    """

    name: str
    failure_threshold: int = CIRCUIT_BREAKER_FAILURE_THRESHOLD
    recovery_timeout: float = CIRCUIT_BREAKER_RECOVERY_TIMEOUT
    half_open_max_calls: int = CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS
    failure_window: float = 0.0
    excluded_exceptions: tuple[type[Exception], ...] = field(default_factory=tuple)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failures: list[float] = field(default_factory=list, init=False)
    _opened_at: float = field(default=0.0, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)
    _stats: CircuitBreakerStats = field(default_factory=CircuitBreakerStats, init=False)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout cannot be negative")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be at least 1")

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        with self._lock:
            return CircuitBreakerStats(**vars(self._stats))

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def time_until_recovery(self) -> float:
        with self._lock:
            return max(0.0, self.recovery_timeout - (time.time() - self._opened_at))

    def _maybe_half_open(self) -> None:
        if self._state == CircuitState.OPEN and time.time() - self._opened_at >= self.recovery_timeout:
            self._set_state(CircuitState.HALF_OPEN)

    def _set_state(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.OPEN:
            self._opened_at = time.time()
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
        else:
            self._failures.clear()

        logger.info(f"CircuitBreaker '{self.name}': {old_state.value} -> {new_state.value}")

    def _on_success(self) -> None:
        self._stats.successful_calls += 1
        if self._state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        now = time.time()
        self._stats.failed_calls += 1

        if self._state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN)
            return

        self._failures.append(now)
        if self.failure_window > 0:
            cutoff = now - self.failure_window
            self._failures = [t for t in self._failures if t > cutoff]

        if len(self._failures) >= self.failure_threshold:
            self._set_state(CircuitState.OPEN)

    def __enter__(self) -> "CircuitBreaker":
        with self._lock:
            self._stats.total_calls += 1
            self._maybe_half_open()

            allowed = self._state == CircuitState.CLOSED
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                allowed = True

            if not allowed:
                self._stats.rejected_calls += 1
                raise CircuitBreakerOpen(self.name, self.time_until_recovery())

        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any) -> bool:
        with self._lock:
            if exc_val is None or (self.excluded_exceptions and isinstance(exc_val, self.excluded_exceptions)):
                self._on_success()
            else:
                self._on_failure()
        return False

    def reset(self) -> None:
        with self._lock:
            self._set_state(CircuitState.CLOSED)

    def force_open(self) -> None:
        with self._lock:
            self._set_state(CircuitState.OPEN)
            logger.warning(f"CircuitBreaker '{self.name}' manually opened")


# Shared by every gateway service talking to the market data provider
market_data_breaker = CircuitBreaker(
    name="market-data",
    failure_window=CIRCUIT_BREAKER_FAILURE_WINDOW,
)
