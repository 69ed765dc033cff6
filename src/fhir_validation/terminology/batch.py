"""Bounded-concurrency execution of validate-code calls against one server."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from fhir_validation.resilience.retry import RetryConfig, RetryEngine

from .client import CodeValidationResult, TerminologyClient
from .extractor import CodeKey
from .router import TerminologyServer

logger = structlog.get_logger(__name__)

MAX_CONCURRENCY = 50


@dataclass(slots=True)
class BatchResult:
    results: dict[CodeKey, CodeValidationResult] = field(default_factory=dict)
    failures: dict[CodeKey, BaseException] = field(default_factory=dict)

    @property
    def all_failed(self) -> bool:
        return bool(self.failures) and not self.results


@dataclass(slots=True)
class ServerStats:
    calls: int = 0
    successes: int = 0
    failures: int = 0
    total_seconds: float = 0.0

    @property
    def mean_response_seconds(self) -> float:
        return self.total_seconds / self.calls if self.calls else 0.0


class BatchExecutor:
    """Validate many codes against one server with a shared concurrency cap.

    Each code gets a short retry envelope for network and timeout errors.
    Concurrent requests for the same code on the same server share a single
    in-flight call.
    """

    def __init__(
        self,
        client: TerminologyClient,
        retry_engine: RetryEngine,
        *,
        max_concurrency: int = MAX_CONCURRENCY,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._client = client
        self._retry = retry_engine
        self._retry_config = retry_config or RetryConfig(
            max_attempts=2, initial_delay=0.2, max_delay=1.0, timeout_per_attempt=None
        )
        self._semaphore = asyncio.Semaphore(min(max_concurrency, MAX_CONCURRENCY))
        self._pending: dict[tuple[str, CodeKey], asyncio.Future[CodeValidationResult]] = {}
        self._stats: dict[str, ServerStats] = {}

    async def _validate_one(self, server: TerminologyServer, key: CodeKey) -> CodeValidationResult:
        stats = self._stats.setdefault(server.id, ServerStats())
        async with self._semaphore:
            started = time.perf_counter()
            stats.calls += 1
            try:
                outcome = await self._retry.with_retry(
                    lambda: self._client.validate_code(server, key),
                    self._retry_config,
                    label="terminology.validate_code",
                )
            except Exception:
                stats.failures += 1
                raise
            finally:
                stats.total_seconds += time.perf_counter() - started
            stats.successes += 1
            return outcome.value

    def _shared_call(
        self, server: TerminologyServer, key: CodeKey
    ) -> asyncio.Future[CodeValidationResult]:
        pending_key = (server.id, key)
        future = self._pending.get(pending_key)
        if future is not None:
            return future
        future = asyncio.ensure_future(self._validate_one(server, key))
        self._pending[pending_key] = future

        def _forget(done: asyncio.Future[CodeValidationResult]) -> None:
            if self._pending.get(pending_key) is done:
                del self._pending[pending_key]

        future.add_done_callback(_forget)
        return future

    async def execute(self, server: TerminologyServer, keys: Sequence[CodeKey]) -> BatchResult:
        futures = {key: self._shared_call(server, key) for key in dict.fromkeys(keys)}
        outcomes = await asyncio.gather(
            *(asyncio.shield(future) for future in futures.values()), return_exceptions=True
        )
        batch = BatchResult()
        for key, outcome in zip(futures, outcomes):
            if isinstance(outcome, BaseException):
                batch.failures[key] = outcome
            else:
                batch.results[key] = outcome
        logger.debug(
            "terminology.batch.completed",
            server=server.id,
            codes=len(futures),
            failures=len(batch.failures),
        )
        return batch

    def server_stats(self) -> dict[str, ServerStats]:
        return dict(self._stats)


__all__ = ["BatchExecutor", "BatchResult", "MAX_CONCURRENCY", "ServerStats"]
