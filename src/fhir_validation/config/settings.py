"""Configuration system for the validation orchestration layer."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:  # pragma: no cover - typing only
    from fhir_validation.resilience.retry import RetryConfig


class Environment(str, Enum):
    """Deployment environments supported by the service."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class TelemetrySettings(BaseModel):
    """Configuration block for OpenTelemetry export."""

    exporter: str = Field(default="console", description="Target exporter type")
    endpoint: str | None = Field(default=None, description="Exporter endpoint")
    sample_ratio: float = Field(default=0.1, ge=0.0, le=1.0)


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    level: str = Field(default="INFO", description="Log level for application output")
    scrub_fields: Sequence[str] = Field(
        default_factory=lambda: ["password", "token", "secret", "authorization"],
        description="Fields that should be redacted in logs",
    )


class RetrySettings(BaseModel):
    """Default retry envelope for calls into the external validation engine."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_delay_seconds: float = Field(default=10.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    use_jitter: bool = True
    timeout_per_attempt_seconds: float | None = Field(default=30.0, gt=0)

    def to_config(
        self, is_retryable: Callable[[BaseException], bool] | None = None
    ) -> RetryConfig:
        """Build the value object consumed by :class:`RetryEngine`."""
        from fhir_validation.resilience.retry import RetryConfig

        kwargs: dict[str, Any] = {}
        if is_retryable is not None:
            kwargs["is_retryable"] = is_retryable
        return RetryConfig(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay_seconds,
            max_delay=self.max_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
            use_jitter=self.use_jitter,
            timeout_per_attempt=self.timeout_per_attempt_seconds,
            **kwargs,
        )


class ProcessPoolSettings(BaseModel):
    """Settings for warm external validation engine workers."""

    enabled: bool = True
    size: int = Field(default=3, ge=1, le=16)
    max_queue_depth: int = Field(default=16, ge=0)
    submission_timeout_seconds: float = Field(default=60.0, gt=0)
    warmup_timeout_seconds: float = Field(default=120.0, gt=0)
    max_worker_submissions: int = Field(
        default=1000,
        ge=1,
        description="Recycle a worker after it served this many submissions",
    )
    worker_command: list[str] = Field(
        default_factory=lambda: ["java", "-Xmx2g", "-jar", "validator_worker.jar", "--stdio"],
        description="Command starting one long-lived worker speaking JSON lines on stdio",
    )
    oneshot_command: list[str] = Field(
        default_factory=lambda: ["java", "-jar", "validator_cli.jar"],
        description="Command prefix used for single subprocess validations",
    )
    oneshot_timeout_seconds: float = Field(default=120.0, gt=0)
    cache_directory: str | None = Field(
        default=None, description="Package cache directory handed to the engine"
    )


class CircuitBreakerSettings(BaseModel):
    """Breaker defaults applied to every remote dependency."""

    failure_threshold: int = Field(default=5, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)
    cooldown_seconds: float = Field(default=30.0, gt=0)
    max_cooldown_seconds: float = Field(default=300.0, gt=0)
    cooldown_backoff_multiplier: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def _check_cooldown(self) -> CircuitBreakerSettings:
        if self.max_cooldown_seconds < self.cooldown_seconds:
            raise ValueError("max_cooldown_seconds must be >= cooldown_seconds")
        return self


class TerminologyServerSettings(BaseModel):
    """A single remote terminology server."""

    id: str
    url: str
    fhir_versions: list[str] = Field(default_factory=lambda: ["R4"])
    enabled: bool = True
    priority: int = Field(default=100, description="Lower values are tried first")


def _default_terminology_servers() -> list[TerminologyServerSettings]:
    return [
        TerminologyServerSettings(
            id="tx-fhir-org-r4", url="https://tx.fhir.org/r4", fhir_versions=["R4"], priority=1
        ),
        TerminologyServerSettings(
            id="tx-fhir-org-r5",
            url="https://tx.fhir.org/r5",
            fhir_versions=["R5", "R6"],
            priority=1,
        ),
        TerminologyServerSettings(
            id="csiro-ontoserver-r4",
            url="https://r4.ontoserver.csiro.au/fhir",
            fhir_versions=["R4"],
            priority=2,
        ),
    ]


class TerminologySettings(BaseModel):
    """Terminology validation configuration."""

    servers: list[TerminologyServerSettings] = Field(default_factory=_default_terminology_servers)
    max_concurrency: int = Field(default=50, ge=1, le=50)
    request_timeout_seconds: float = Field(default=5.0, gt=0)
    cache_ttl_seconds: float = Field(default=3600.0, gt=0)
    cache_max_entries: int = Field(default=10_000, ge=1)
    offline_mode: bool = False
    batch_retry_attempts: int = Field(default=2, ge=1)
    batch_retry_initial_delay_seconds: float = Field(default=0.2, ge=0.0)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> TerminologySettings:
        ids = [server.id for server in self.servers]
        if len(ids) != len(set(ids)):
            raise ValueError("terminology server ids must be unique")
        return self


class PackageResolverSettings(BaseModel):
    """Settings for rule-package dependency resolution."""

    registry_url: str = "https://packages.fhir.org"
    max_depth: int = Field(default=5, ge=0)
    parallel: bool = True
    max_concurrent: int = Field(default=3, ge=1)
    skip_cached: bool = True
    download_timeout_seconds: float = Field(default=60.0, gt=0)
    cache_directory: str = Field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".fhir", "packages")
    )


class AppSettings(BaseSettings):
    """Top-level application settings."""

    environment: Environment = Environment.DEV
    debug: bool = False
    service_name: str = "fhir-validation"
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    process_pool: ProcessPoolSettings = Field(default_factory=ProcessPoolSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    terminology: TerminologySettings = Field(default_factory=TerminologySettings)
    packages: PackageResolverSettings = Field(default_factory=PackageResolverSettings)

    model_config = SettingsConfigDict(env_prefix="FV_", env_nested_delimiter="__")


ENVIRONMENT_DEFAULTS: Mapping[Environment, dict[str, Any]] = {
    Environment.DEV: {
        "debug": True,
        "telemetry": {"exporter": "console"},
        "logging": {"level": "DEBUG"},
        "process_pool": {"size": 2},
    },
    Environment.STAGING: {
        "telemetry": {"exporter": "otlp", "sample_ratio": 0.25},
    },
    Environment.PROD: {
        "telemetry": {"exporter": "otlp", "sample_ratio": 0.05},
        "process_pool": {"size": 4},
    },
}


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in updates.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            target[key] = _deep_update(dict(current), value)
        else:
            target[key] = value
    return target


def load_settings(environment: str | None = None) -> AppSettings:
    """Load application settings with environment specific defaults applied.

    Values explicitly supplied through ``FV_*`` variables win over the
    environment defaults.
    """
    env_value = (environment or os.getenv("FV_ENV", "dev")).lower()
    try:
        env = Environment(env_value)
    except ValueError as err:
        raise RuntimeError(f"Unknown environment: {env_value}") from err
    defaults = ENVIRONMENT_DEFAULTS.get(env, {})
    try:
        base_settings = AppSettings()
    except ValidationError as err:
        raise RuntimeError(f"Invalid configuration: {err}") from err
    merged = _deep_update({}, defaults)
    merged = _deep_update(merged, base_settings.model_dump(exclude_unset=True))
    merged["environment"] = env
    try:
        return AppSettings.model_validate(merged)
    except ValidationError as err:
        raise RuntimeError(f"Invalid configuration: {err}") from err


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Cached accessor used by production code."""
    return load_settings()


__all__ = [
    "AppSettings",
    "CircuitBreakerSettings",
    "ENVIRONMENT_DEFAULTS",
    "Environment",
    "LoggingSettings",
    "PackageResolverSettings",
    "ProcessPoolSettings",
    "RetrySettings",
    "TelemetrySettings",
    "TerminologyServerSettings",
    "TerminologySettings",
    "get_settings",
    "load_settings",
]
