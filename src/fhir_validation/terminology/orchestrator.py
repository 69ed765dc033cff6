"""Terminology validation pipeline.

Key Responsibilities:
    - Extract coded values from a resource and validate each distinct code once
    - Serve repeated codes from the result cache
    - Route the remaining codes to the primary server for the FHIR version and
      fall back to alternates whose breakers admit traffic
    - Report one error issue per occurrence of an invalid code, and a single
      warning when no server could answer

Collaborators:
    - Upstream: :class:`~fhir_validation.dispatcher.ValidationDispatcher`
    - Downstream: extractor, router, breaker registry, cache, batch executor

Breaker policy:
    - A batch counts as a server failure only when every call in it failed.
      Partial failures record a success and the failed codes move on to the
      next server.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from fhir_validation.cache.store import CacheStore, make_cache_key
from fhir_validation.models.validation import (
    Aspect,
    Severity,
    ValidationIssue,
    ValidationRequest,
    normalize_fhir_version,
)
from fhir_validation.resilience.circuit_breaker import CircuitBreakerRegistry

from .batch import BatchExecutor, ServerStats
from .client import CodeValidationResult
from .extractor import CodeExtractor, CodeKey, ExtractedCode, group_by_key
from .router import TerminologyRouter, TerminologyServer

logger = structlog.get_logger(__name__)

INVALID_CODE = "invalid-code"
TERMINOLOGY_UNAVAILABLE = "terminology-unavailable"


@dataclass(slots=True)
class TerminologyStatistics:
    total_codes: int = 0
    unique_codes: int = 0
    cache_hits: int = 0
    validated: int = 0
    invalid: int = 0
    unresolved: int = 0


def _invalid_message(key: CodeKey, result: CodeValidationResult) -> str:
    if result.message:
        return result.message
    system, code, value_set = key
    target = f"value set '{value_set}'" if value_set else f"code system '{system}'"
    return f"Code '{code}' is not valid in {target}"


class TerminologyOrchestrator:
    aspect = Aspect.TERMINOLOGY

    def __init__(
        self,
        *,
        router: TerminologyRouter,
        breakers: CircuitBreakerRegistry,
        cache: CacheStore[CodeValidationResult],
        executor: BatchExecutor,
        extractor: CodeExtractor | None = None,
        offline_mode: bool = False,
    ) -> None:
        self._router = router
        self._breakers = breakers
        self._cache = cache
        self._executor = executor
        self._extractor = extractor or CodeExtractor()
        self._offline_mode = offline_mode
        self._stats = TerminologyStatistics()

    async def validate(self, request: ValidationRequest) -> list[ValidationIssue]:
        return await self.validate_resource(request.resource, request.fhir_version)

    async def validate_resource(
        self, resource: Mapping[str, Any], fhir_version: str
    ) -> list[ValidationIssue]:
        version = normalize_fhir_version(fhir_version)
        codes = [code for code in self._extractor.extract(resource) if code.system]
        if not codes:
            return []
        groups = group_by_key(codes)
        servers = self._router.servers_for(version)
        self._stats.total_codes += len(codes)
        self._stats.unique_codes += len(groups)

        resolved: dict[CodeKey, CodeValidationResult] = {}
        for key in groups:
            cached = await self._cache.get_any(
                [self._cache_key(key, server, version) for server in servers]
            )
            if cached is not None:
                resolved[key] = cached
        self._stats.cache_hits += len(resolved)

        pending = [key for key in groups if key not in resolved]
        unresolved: list[CodeKey] = []
        if pending:
            unresolved = await self._validate_remote(pending, servers, version, resolved)

        issues = self._build_issues(groups, resolved)
        if unresolved:
            self._stats.unresolved += len(unresolved)
            logger.warning(
                "terminology.unavailable",
                fhir_version=version,
                unresolved=len(unresolved),
                servers=[server.id for server in servers],
            )
            issues.append(
                ValidationIssue.synthetic(
                    Aspect.TERMINOLOGY,
                    f"Terminology validation skipped for {len(unresolved)} code(s): "
                    f"no terminology server for {version} is available",
                    code=TERMINOLOGY_UNAVAILABLE,
                )
            )
        return issues

    def _cache_key(self, key: CodeKey, server: TerminologyServer, version: str) -> str:
        system, code, value_set = key
        return make_cache_key(code, system, value_set, server.id, version)

    async def _validate_remote(
        self,
        pending: Sequence[CodeKey],
        servers: Sequence[TerminologyServer],
        version: str,
        resolved: dict[CodeKey, CodeValidationResult],
    ) -> list[CodeKey]:
        remaining = list(pending)
        primary = servers[0] if servers else None
        for server in servers:
            if not remaining:
                break
            if not self._breakers.allow_request(server.id):
                logger.info("terminology.server.skipped", server=server.id, reason="circuit_open")
                continue
            if server is not primary:
                logger.warning(
                    "terminology.fallback",
                    server=server.id,
                    primary=primary.id if primary else None,
                    codes=len(remaining),
                )
            try:
                batch = await self._executor.execute(server, remaining)
            except BaseException:
                self._breakers.release_half_open_slot(server.id)
                raise
            if batch.all_failed:
                self._breakers.record_failure(server.id)
                logger.warning(
                    "terminology.batch.failed",
                    server=server.id,
                    codes=len(remaining),
                    error=repr(next(iter(batch.failures.values()))),
                )
                continue
            self._breakers.record_success(server.id)
            for key, result in batch.results.items():
                resolved[key] = result
                await self._cache.set(
                    self._cache_key(key, server, version), result, offline=self._offline_mode
                )
            self._stats.validated += len(batch.results)
            remaining = [key for key in remaining if key not in batch.results]
        return remaining

    def _build_issues(
        self,
        groups: Mapping[CodeKey, list[ExtractedCode]],
        resolved: Mapping[CodeKey, CodeValidationResult],
    ) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        for key, occurrences in groups.items():
            result = resolved.get(key)
            if result is None or result.valid:
                continue
            self._stats.invalid += 1
            message = _invalid_message(key, result)
            for occurrence in occurrences:
                issues.append(
                    ValidationIssue(
                        aspect=Aspect.TERMINOLOGY,
                        severity=Severity.ERROR,
                        code=INVALID_CODE,
                        message=message,
                        path=occurrence.path,
                    )
                )
        return issues

    def get_statistics(self) -> dict[str, Any]:
        server_stats: dict[str, ServerStats] = self._executor.server_stats()
        cache_stats = self._cache.stats()
        return {
            "total_codes": self._stats.total_codes,
            "unique_codes": self._stats.unique_codes,
            "cache_hits": self._stats.cache_hits,
            "validated": self._stats.validated,
            "invalid": self._stats.invalid,
            "unresolved": self._stats.unresolved,
            "cache_hit_rate": cache_stats.hit_rate,
            "by_server": {
                server_id: {
                    "calls": stats.calls,
                    "successes": stats.successes,
                    "failures": stats.failures,
                    "mean_response_seconds": stats.mean_response_seconds,
                    "circuit_state": self._breakers.get_state(server_id).state.value,
                }
                for server_id, stats in server_stats.items()
            },
        }


__all__ = ["INVALID_CODE", "TERMINOLOGY_UNAVAILABLE", "TerminologyOrchestrator", "TerminologyStatistics"]
