"""Retry and circuit breaker primitives."""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerState,
    CircuitState,
)
from .retry import RetryConfig, RetryEngine, RetryOutcome

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "CircuitState",
    "RetryConfig",
    "RetryEngine",
    "RetryOutcome",
]
