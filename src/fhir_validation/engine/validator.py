"""Structural and profile validation through the external engine."""

from __future__ import annotations

import structlog

from fhir_validation.models.validation import (
    Aspect,
    Severity,
    ValidationIssue,
    ValidationRequest,
    normalize_fhir_version,
)
from fhir_validation.resilience.retry import RetryConfig, RetryEngine
from fhir_validation.utils.errors import EngineUnavailableError

from .oneshot import OneShotRunner
from .pool import ProcessPool
from .protocol import EngineOutcome, EngineRequest, OutcomeIssue, split_packages

logger = structlog.get_logger(__name__)

_SEVERITY_MAP = {
    "fatal": Severity.ERROR,
    "error": Severity.ERROR,
    "warning": Severity.WARNING,
    "information": Severity.INFO,
}


def issue_from_outcome(entry: OutcomeIssue, aspect: Aspect, resource_type: str) -> ValidationIssue:
    return ValidationIssue(
        aspect=aspect,
        severity=_SEVERITY_MAP.get(entry.severity.lower(), Severity.ERROR),
        code=entry.code,
        message=entry.diagnostics or entry.code,
        path=entry.path or resource_type,
    )


class EngineValidator:
    """Validate records with the warm pool, falling back to one-shot runs.

    The pool is used while it is running. When it is missing, shut down, or
    reports that it has no live workers, each validation runs in its own
    engine process instead. Both paths sit inside the retry envelope.
    """

    def __init__(
        self,
        *,
        oneshot: OneShotRunner,
        retry_engine: RetryEngine,
        retry_config: RetryConfig | None = None,
        pool: ProcessPool | None = None,
        aspect: Aspect = Aspect.STRUCTURAL,
        terminology_server: str | None = None,
    ) -> None:
        self.aspect = aspect
        self._oneshot = oneshot
        self._pool = pool
        self._retry = retry_engine
        self._retry_config = retry_config or RetryConfig()
        self._terminology_server = terminology_server

    def _build_request(self, request: ValidationRequest) -> EngineRequest:
        return EngineRequest(
            request_id=request.request_id,
            resource=request.resource,
            fhir_version=normalize_fhir_version(request.fhir_version),
            profile=request.profile,
            packages=split_packages(request.packages),
            terminology_server=self._terminology_server,
        )

    async def _run_oneshot(self, engine_request: EngineRequest) -> EngineOutcome:
        outcome = await self._retry.with_retry(
            lambda: self._oneshot.run(engine_request),
            self._retry_config,
            label="engine.oneshot",
        )
        return outcome.value

    async def run(self, engine_request: EngineRequest) -> EngineOutcome:
        pool = self._pool
        if pool is None or not pool.available:
            return await self._run_oneshot(engine_request)
        try:
            outcome = await self._retry.with_retry(
                lambda: pool.submit(engine_request),
                self._retry_config,
                label="engine.pool",
            )
        except EngineUnavailableError as exc:
            logger.warning(
                "engine.pool.fallback",
                request_id=engine_request.request_id,
                reason=str(exc),
            )
            return await self._run_oneshot(engine_request)
        if outcome.had_retries:
            logger.info(
                "engine.pool.recovered",
                request_id=engine_request.request_id,
                attempts=outcome.attempts,
            )
        return outcome.value

    async def validate(self, request: ValidationRequest) -> list[ValidationIssue]:
        engine_request = self._build_request(request)
        outcome = await self.run(engine_request)
        return [
            issue_from_outcome(entry, self.aspect, request.resource_type)
            for entry in outcome.issues
        ]


__all__ = ["EngineValidator", "issue_from_outcome"]
