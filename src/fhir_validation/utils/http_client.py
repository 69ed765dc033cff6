"""Async HTTP client for the FHIR package registry.

Key Responsibilities:
    - Retry transport failures and throttling/5xx statuses with jittered
      exponential backoff, honouring ``Retry-After`` when the registry sends it
    - Throttle outbound requests with ``aiolimiter`` and short-circuit a failing
      registry with a ``pybreaker`` breaker
    - Wrap every attempt in an OpenTelemetry span

Collaborators:
    - Upstream: :class:`~fhir_validation.packages.registry.PackageRegistryClient`
    - Downstream: ``httpx``, ``tenacity``, ``pybreaker``, ``aiolimiter``
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime

import httpx
from aiolimiter import AsyncLimiter
from opentelemetry import trace
from pybreaker import STATE_OPEN, CircuitBreaker, CircuitBreakerError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_none,
    wait_random_exponential,
)

USER_AGENT = "fhir-validation"


@dataclass(frozen=True, slots=True)
class HttpPolicy:
    """Retry, throttling and breaker limits for one upstream host.

    ``backoff_initial`` of zero retries immediately. Throttling and the
    breaker are off unless ``requests_per_second`` and ``breaker_failures``
    are set.
    """

    attempts: int = 3
    backoff_initial: float = 0.5
    backoff_max: float = 10.0
    timeout: float = 10.0
    retry_statuses: frozenset[int] = frozenset({429, 500, 502, 503, 504})
    requests_per_second: float | None = None
    breaker_failures: int | None = None
    breaker_reset_seconds: float = 60.0


class RetryableHTTPStatus(httpx.HTTPStatusError):
    """A retryable status, with the delay the server asked for."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(
            f"Retryable status {response.status_code}",
            request=response.request,
            response=response,
        )
        self.retry_after = retry_after_seconds(response)


def retry_after_seconds(response: httpx.Response) -> float:
    """Seconds to wait per ``Retry-After`` (delta or HTTP date); 0 when absent."""
    header = response.headers.get("Retry-After")
    if not header:
        return 0.0
    try:
        return max(float(header), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return 0.0
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    return max((retry_at - datetime.now(UTC)).total_seconds(), 0.0)


def _wait_for(policy: HttpPolicy) -> Callable[[RetryCallState], float]:
    backoff = (
        wait_random_exponential(multiplier=policy.backoff_initial, max=policy.backoff_max)
        if policy.backoff_initial > 0
        else wait_none()
    )

    def wait(retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RetryableHTTPStatus) and exc.retry_after > 0:
            return exc.retry_after
        return backoff(retry_state)

    return wait


def _limiter_for(policy: HttpPolicy) -> AsyncLimiter | None:
    if not policy.requests_per_second:
        return None
    burst = max(1, round(policy.requests_per_second))
    return AsyncLimiter(burst, time_period=burst / policy.requests_per_second)


def _reset_timeout_elapsed(breaker: CircuitBreaker) -> bool:
    opened_at = breaker._state_storage.opened_at  # type: ignore[attr-defined]
    if opened_at is None:
        return True
    now = datetime.now(UTC)
    if opened_at.tzinfo is None:
        now = now.replace(tzinfo=None)
    return now >= opened_at + timedelta(seconds=breaker.reset_timeout)


async def _through_breaker(
    breaker: CircuitBreaker, func: Callable[[], Awaitable[httpx.Response]]
) -> httpx.Response:
    """Await ``func`` under ``breaker``.

    pybreaker's own open-state handling calls ``func`` synchronously on the
    half-open transition, so that step happens here.
    """
    with breaker._lock:  # type: ignore[attr-defined]
        if breaker.current_state == STATE_OPEN:
            if not _reset_timeout_elapsed(breaker):
                raise CircuitBreakerError("Timeout not elapsed yet, circuit breaker still open")
            breaker.half_open()
        for listener in breaker.listeners:
            listener.before_call(breaker, func)
    try:
        result = await func()
    except Exception as exc:
        with breaker._lock:  # type: ignore[attr-defined]
            breaker.state._handle_error(exc)
        raise
    with breaker._lock:  # type: ignore[attr-defined]
        breaker.state._handle_success()
    return result


class AsyncHttpClient:
    """``httpx.AsyncClient`` with retries, throttling and a breaker."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        policy: HttpPolicy | None = None,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._policy = policy or HttpPolicy()
        self._client = httpx.AsyncClient(
            base_url=base_url or "",
            timeout=self._policy.timeout,
            headers={"User-Agent": USER_AGENT, **(headers or {})},
            transport=transport,
            follow_redirects=True,
        )
        self._limiter = _limiter_for(self._policy)
        self._breaker = (
            CircuitBreaker(
                fail_max=self._policy.breaker_failures,
                reset_timeout=self._policy.breaker_reset_seconds,
            )
            if self._policy.breaker_failures
            else None
        )
        retry_options: dict[str, object] = {} if sleep is None else {"sleep": sleep}
        self._retrying = AsyncRetrying(
            stop=stop_after_attempt(self._policy.attempts),
            wait=_wait_for(self._policy),
            retry=retry_if_exception_type((httpx.TransportError, RetryableHTTPStatus)),
            reraise=True,
            **retry_options,
        )
        self._tracer = trace.get_tracer(__name__)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        with self._tracer.start_as_current_span("registry.http") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("http.url", url)
            if self._limiter is None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with self._limiter:
                    response = await self._client.request(method, url, **kwargs)
            span.set_attribute("http.status_code", response.status_code)
        if response.status_code in self._policy.retry_statuses:
            raise RetryableHTTPStatus(response)
        return response

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, retrying per the policy.

        Raises:
            httpx.HTTPError: A non-retryable transport error, or
                :class:`RetryableHTTPStatus` once the attempts are spent.
            CircuitBreakerError: The breaker rejected the call.
        """
        async for attempt in self._retrying.copy():
            with attempt:
                if self._breaker is None:
                    return await self._send(method, url, **kwargs)
                return await _through_breaker(
                    self._breaker, lambda: self._send(method, url, **kwargs)
                )
        raise RuntimeError("unreachable")  # pragma: no cover

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = [
    "AsyncHttpClient",
    "CircuitBreakerError",
    "HttpPolicy",
    "RetryableHTTPStatus",
    "USER_AGENT",
    "retry_after_seconds",
]
