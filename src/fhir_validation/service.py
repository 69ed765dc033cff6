"""Composition root for the validation core.

Every shared component (pool, breaker registry, result cache, terminology
client, package resolver) is created here and handed to its consumers
explicitly. Nothing in the package keeps module-level instances.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from fhir_validation.cache.store import CacheStore
from fhir_validation.config.settings import AppSettings, get_settings
from fhir_validation.dispatcher import ValidationDispatcher
from fhir_validation.engine.oneshot import OneShotRunner
from fhir_validation.engine.pool import ProcessPool
from fhir_validation.engine.validator import EngineValidator
from fhir_validation.models.packages import DependencyGraph
from fhir_validation.models.validation import ValidationIssue, ValidationRequest
from fhir_validation.packages.cache import FilesystemPackageCache, PackageCache
from fhir_validation.packages.registry import PackageRegistryClient
from fhir_validation.packages.resolver import DependencyGraphResolver
from fhir_validation.resilience.circuit_breaker import CircuitBreakerRegistry
from fhir_validation.resilience.retry import RetryConfig, RetryEngine
from fhir_validation.terminology.batch import BatchExecutor
from fhir_validation.terminology.client import CodeValidationResult, TerminologyClient
from fhir_validation.terminology.orchestrator import TerminologyOrchestrator
from fhir_validation.terminology.router import TerminologyRouter
from fhir_validation.utils.errors import EngineUnavailableError
from fhir_validation.utils.logging import configure_logging, configure_tracing

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class ValidationService:
    """Wired validation components plus the dispatcher that drives them."""

    settings: AppSettings
    dispatcher: ValidationDispatcher
    engine: EngineValidator
    terminology: TerminologyOrchestrator
    resolver: DependencyGraphResolver
    breakers: CircuitBreakerRegistry
    cache: CacheStore[CodeValidationResult]
    terminology_client: TerminologyClient
    registry: PackageRegistryClient
    pool: ProcessPool | None = None

    async def validate(self, request: ValidationRequest) -> list[ValidationIssue]:
        return await self.dispatcher.dispatch(request)

    async def resolve_packages(self, package_id: str, version: str | None = None) -> DependencyGraph:
        return await self.resolver.resolve(package_id, version)

    def statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "terminology": self.terminology.get_statistics(),
            "breakers": {
                name: snapshot.state.value for name, snapshot in self.breakers.snapshot().items()
            },
        }
        if self.pool is not None:
            pool_stats = self.pool.get_stats()
            stats["pool"] = {
                "size": pool_stats.pool_size,
                "idle": pool_stats.idle_count,
                "busy": pool_stats.busy_count,
                "dead": pool_stats.dead_count,
                "queued": pool_stats.queued_submissions,
                "avg_submission_seconds": pool_stats.avg_submission_seconds,
            }
        return stats

    async def aclose(self) -> None:
        if self.pool is not None:
            await self.pool.shutdown()
        await self.terminology_client.aclose()
        await self.registry.aclose()
        logger.info("service.closed")


def configure_observability(settings: AppSettings) -> None:
    """Install structlog/stdlib logging and the OpenTelemetry tracer provider."""
    configure_logging(settings=settings.logging)
    configure_tracing(settings.service_name, settings.telemetry)


async def _start_pool(settings: AppSettings) -> ProcessPool | None:
    if not settings.process_pool.enabled:
        logger.info("service.pool.disabled")
        return None
    pool = ProcessPool.from_settings(settings.process_pool)
    try:
        await pool.start()
    except EngineUnavailableError as exc:
        logger.warning("service.pool.unavailable", error=str(exc))
        await pool.shutdown()
        return None
    return pool


async def build_validation_service(
    settings: AppSettings | None = None,
    *,
    terminology_transport: httpx.AsyncBaseTransport | None = None,
    registry_transport: httpx.AsyncBaseTransport | None = None,
    package_cache: PackageCache | None = None,
    start_pool: bool = True,
    configure_telemetry: bool = False,
) -> ValidationService:
    """Construct a :class:`ValidationService` from application settings.

    Args:
        settings: Optional settings override; defaults to :func:`get_settings`.
        terminology_transport: ``httpx`` transport for terminology servers.
        registry_transport: ``httpx`` transport for the package registry.
        package_cache: Package cache override; defaults to the filesystem cache.
        start_pool: Start warm engine workers. When false, or when no worker
            starts, structural validation uses one-shot engine runs.
        configure_telemetry: Also configure logging and tracing.
    """
    cfg = settings or get_settings()
    if configure_telemetry:
        configure_observability(cfg)

    retry_engine = RetryEngine()
    breakers = CircuitBreakerRegistry(cfg.circuit_breaker)

    pool = await _start_pool(cfg) if start_pool else None
    engine = EngineValidator(
        oneshot=OneShotRunner.from_settings(cfg.process_pool),
        retry_engine=retry_engine,
        retry_config=cfg.retry.to_config(),
        pool=pool,
    )

    terminology = cfg.terminology
    cache: CacheStore[CodeValidationResult] = CacheStore(
        ttl_seconds=terminology.cache_ttl_seconds,
        max_entries=terminology.cache_max_entries,
    )
    terminology_client = TerminologyClient(
        timeout=terminology.request_timeout_seconds,
        transport=terminology_transport,
    )
    executor = BatchExecutor(
        terminology_client,
        retry_engine,
        max_concurrency=terminology.max_concurrency,
        retry_config=RetryConfig(
            max_attempts=terminology.batch_retry_attempts,
            initial_delay=terminology.batch_retry_initial_delay_seconds,
            max_delay=max(1.0, terminology.batch_retry_initial_delay_seconds),
            timeout_per_attempt=None,
        ),
    )
    orchestrator = TerminologyOrchestrator(
        router=TerminologyRouter.from_settings(terminology.servers),
        breakers=breakers,
        cache=cache,
        executor=executor,
        offline_mode=terminology.offline_mode,
    )

    registry = PackageRegistryClient.from_settings(cfg.packages, transport=registry_transport)
    resolver = DependencyGraphResolver.from_settings(
        cfg.packages,
        registry,
        package_cache or FilesystemPackageCache(cfg.packages.cache_directory),
    )

    dispatcher = ValidationDispatcher([engine, orchestrator])
    logger.info(
        "service.ready",
        environment=cfg.environment.value,
        pool_workers=len(pool.workers) if pool is not None else 0,
        terminology_servers=[server.id for server in terminology.servers if server.enabled],
    )
    return ValidationService(
        settings=cfg,
        dispatcher=dispatcher,
        engine=engine,
        terminology=orchestrator,
        resolver=resolver,
        breakers=breakers,
        cache=cache,
        terminology_client=terminology_client,
        registry=registry,
        pool=pool,
    )


__all__ = ["ValidationService", "build_validation_service", "configure_observability"]
