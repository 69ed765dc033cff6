"""Retry engine with per-attempt timeouts, exponential backoff, and jitter.

Key Responsibilities:
    - Run an async operation up to ``max_attempts`` times
    - Race each attempt against ``timeout_per_attempt``
    - Sleep ``min(max_delay, initial_delay * backoff_multiplier ** (n - 1))``
      before attempt ``n + 1``, optionally with +/-20% uniform jitter
    - Stop immediately on errors the configured predicate deems non-retryable
    - Collect every per-attempt error into :class:`RetryExhaustedError`

Collaborators:
    - Upstream: Engine validator, terminology batch executor
    - Downstream: ``tenacity`` retry primitives

Thread Safety:
    - Stateless per call; a single engine may be shared by concurrent tasks
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from fhir_validation.observability.metrics import RETRY_ATTEMPTS_TOTAL
from fhir_validation.utils.errors import (
    OperationTimeoutError,
    RetryExhaustedError,
    is_retryable_error,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.2

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy value object; delays and timeouts are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    use_jitter: bool = True
    timeout_per_attempt: float | None = 30.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.timeout_per_attempt is not None and self.timeout_per_attempt <= 0:
            raise ValueError("timeout_per_attempt must be positive")


@dataclass(frozen=True, slots=True)
class RetryOutcome(Generic[T]):
    """Successful result together with how much effort it took."""

    value: T
    attempts: int
    total_elapsed: float

    @property
    def had_retries(self) -> bool:
        return self.attempts > 1


class wait_jitter(wait_base):
    """Scale another wait strategy by a uniform factor in ``[1 - ratio, 1 + ratio]``."""

    def __init__(
        self,
        base: wait_base,
        ratio: float = JITTER_RATIO,
        rng: random.Random | None = None,
    ) -> None:
        self._base = base
        self._ratio = ratio
        self._rng = rng or random.Random()

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._base(retry_state)
        if delay <= 0:
            return 0.0
        return max(0.0, delay * (1.0 + self._rng.uniform(-self._ratio, self._ratio)))


def build_wait(config: RetryConfig, rng: random.Random | None = None) -> wait_base:
    """Tenacity wait strategy for ``config``.

    ``wait_exponential`` computes ``multiplier * exp_base ** (attempt - 1)``
    capped at ``max`` which is exactly the documented backoff.
    """
    base = wait_exponential(
        multiplier=config.initial_delay,
        exp_base=config.backoff_multiplier,
        max=config.max_delay,
    )
    if config.use_jitter:
        return wait_jitter(base, rng=rng)
    return base


# ==============================================================================
# ENGINE
# ==============================================================================


class RetryEngine:
    """Execute async operations under a :class:`RetryConfig`.

    ``sleep`` and ``clock`` are injectable so tests can observe backoff
    without waiting.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        config: RetryConfig | None = None,
        *,
        label: str = "operation",
    ) -> RetryOutcome[T]:
        """Run ``operation`` until it succeeds or the policy gives up.

        Raises:
            RetryExhaustedError: Every attempt failed with a retryable error.
            Exception: The original error when it is not retryable.
        """
        config = config or RetryConfig()
        errors: list[BaseException] = []
        started = self._clock()

        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "retry.attempt.failed",
                operation=label,
                attempt=retry_state.attempt_number,
                max_attempts=config.max_attempts,
                next_delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else 0.0,
                error=repr(exc),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.max_attempts),
            wait=build_wait(config, self._rng),
            retry=retry_if_exception(config.is_retryable),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    try:
                        value = await self._run_attempt(operation, config.timeout_per_attempt)
                    except Exception as exc:
                        errors.append(exc)
                        RETRY_ATTEMPTS_TOTAL.labels(operation=label, outcome="failure").inc()
                        raise
                    RETRY_ATTEMPTS_TOTAL.labels(operation=label, outcome="success").inc()
        except Exception as exc:
            elapsed = self._clock() - started
            if not errors or exc is not errors[-1] or not config.is_retryable(exc):
                raise
            logger.error(
                "retry.exhausted",
                operation=label,
                attempts=attempts,
                elapsed=round(elapsed, 3),
                error=repr(exc),
            )
            raise RetryExhaustedError(
                f"{label} failed after {attempts} attempts: {exc}",
                attempts=attempts,
                all_errors=errors,
                elapsed_seconds=elapsed,
            ) from exc

        return RetryOutcome(value=value, attempts=attempts, total_elapsed=self._clock() - started)

    @staticmethod
    async def _run_attempt(
        operation: Callable[[], Awaitable[T]], timeout: float | None
    ) -> T:
        if timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"Operation timed out after {int(timeout * 1000)}ms",
                extra={"timeout_seconds": timeout},
            ) from exc


__all__ = ["JITTER_RATIO", "RetryConfig", "RetryEngine", "RetryOutcome", "build_wait", "wait_jitter"]
