"""Circuit breakers guarding remote validation dependencies.

Key Responsibilities:
    - Track failures per dependency inside a rolling window
    - Reject requests while open, then admit exactly one half-open probe
    - Close and reset counters on a successful probe; reopen with a possibly
      longer cooldown on a failed one

Thread Safety:
    - Every breaker guards its state with a lock; the registry creates
      breakers lazily under its own lock
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from fhir_validation.config.settings import CircuitBreakerSettings
from fhir_validation.observability.metrics import set_circuit_state

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """Finite state machine for circuit breakers."""

    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


@dataclass(frozen=True, slots=True)
class CircuitBreakerState:
    """Point-in-time snapshot of a breaker."""

    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float | None
    next_retry_time: float | None


@dataclass(slots=True)
class CircuitBreaker:
    """Rolling-window circuit breaker with a single half-open probe."""

    name: str
    failure_threshold: int = 5
    window_seconds: float = 60.0
    cooldown_seconds: float = 30.0
    max_cooldown_seconds: float = 300.0
    cooldown_backoff_multiplier: float = 1.0
    clock: Callable[[], float] = time.time

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failures: deque[float] = field(default_factory=deque, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: float | None = field(default=None, init=False)
    _next_retry_time: float | None = field(default=None, init=False)
    _current_cooldown: float = field(default=0.0, init=False)
    _probe_in_flight: bool = field(default=False, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self._current_cooldown = self.cooldown_seconds

    def _transition(self, state: CircuitState) -> None:
        if self._state == state:
            return
        previous = self._state
        self._state = state
        logger.info(
            "circuit.transition",
            dependency=self.name,
            previous_state=previous.value,
            next_state=state.value,
            failure_count=len(self._failures),
        )
        set_circuit_state(self.name, previous.value, state.value)

    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._failures and self._failures[0] < horizon:
            self._failures.popleft()

    def _open(self, now: float) -> None:
        self._next_retry_time = now + self._current_cooldown
        self._probe_in_flight = False
        self._transition(CircuitState.OPEN)

    def allow_request(self) -> bool:
        """Return ``True`` when a call may proceed.

        An open breaker whose cooldown elapsed moves to half-open and admits
        the caller as its single probe. Further callers are rejected until the
        probe is reported through :meth:`record_success` or
        :meth:`record_failure`.
        """
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True
            now = self.clock()
            if self._state is CircuitState.OPEN:
                if self._next_retry_time is not None and now < self._next_retry_time:
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._probe_in_flight = True
                return True
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            self._success_count += 1
            if self._state is CircuitState.HALF_OPEN:
                self._failures.clear()
                self._next_retry_time = None
                self._current_cooldown = self.cooldown_seconds
                self._probe_in_flight = False
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            now = self.clock()
            self._last_failure_time = now
            if self._state is CircuitState.HALF_OPEN:
                self._failures.append(now)
                self._current_cooldown = min(
                    self.max_cooldown_seconds,
                    self._current_cooldown * self.cooldown_backoff_multiplier,
                )
                logger.warning(
                    "circuit.probe.failed",
                    dependency=self.name,
                    cooldown_seconds=self._current_cooldown,
                )
                self._open(now)
                return
            if self._state is CircuitState.OPEN:
                return
            self._failures.append(now)
            self._prune(now)
            logger.warning(
                "circuit.failure",
                dependency=self.name,
                failure_count=len(self._failures),
                threshold=self.failure_threshold,
            )
            if len(self._failures) >= self.failure_threshold:
                self._open(now)

    def release_half_open_slot(self) -> None:
        """Give back an unreported half-open call so the next caller is admitted."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN and self._probe_in_flight:
                self._probe_in_flight = False
                logger.info("circuit.half_open.released", dependency=self.name)

    def get_state(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                state=self._state,
                failure_count=len(self._failures),
                success_count=self._success_count,
                last_failure_time=self._last_failure_time,
                next_retry_time=self._next_retry_time,
            )

    def reset(self) -> None:
        """Force the breaker closed with all counters cleared."""
        with self._lock:
            self._failures.clear()
            self._success_count = 0
            self._last_failure_time = None
            self._next_retry_time = None
            self._current_cooldown = self.cooldown_seconds
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)


class CircuitBreakerRegistry:
    """Lazily created breakers keyed by dependency name."""

    def __init__(
        self,
        settings: CircuitBreakerSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or CircuitBreakerSettings()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=key,
                    failure_threshold=self._settings.failure_threshold,
                    window_seconds=self._settings.window_seconds,
                    cooldown_seconds=self._settings.cooldown_seconds,
                    max_cooldown_seconds=self._settings.max_cooldown_seconds,
                    cooldown_backoff_multiplier=self._settings.cooldown_backoff_multiplier,
                    clock=self._clock,
                )
                self._breakers[key] = breaker
            return breaker

    def allow_request(self, key: str) -> bool:
        return self.get(key).allow_request()

    def record_success(self, key: str) -> None:
        self.get(key).record_success()

    def record_failure(self, key: str) -> None:
        self.get(key).record_failure()

    def release_half_open_slot(self, key: str) -> None:
        self.get(key).release_half_open_slot()

    def get_state(self, key: str) -> CircuitBreakerState:
        return self.get(key).get_state()

    def reset(self, key: str | None = None) -> None:
        """Reset one breaker, or all of them when ``key`` is omitted."""
        with self._lock:
            targets = list(self._breakers.values()) if key is None else [self._breakers.get(key)]
        for breaker in targets:
            if breaker is not None:
                breaker.reset()

    def snapshot(self) -> dict[str, CircuitBreakerState]:
        with self._lock:
            breakers = dict(self._breakers)
        return {key: breaker.get_state() for key, breaker in breakers.items()}


__all__ = ["CircuitBreaker", "CircuitBreakerRegistry", "CircuitBreakerState", "CircuitState"]
