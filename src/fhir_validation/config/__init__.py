"""Lightweight configuration package exports."""

from __future__ import annotations

from .settings import (
    AppSettings,
    CircuitBreakerSettings,
    Environment,
    LoggingSettings,
    PackageResolverSettings,
    ProcessPoolSettings,
    RetrySettings,
    TelemetrySettings,
    TerminologyServerSettings,
    TerminologySettings,
    get_settings,
    load_settings,
)

__all__ = [
    "AppSettings",
    "CircuitBreakerSettings",
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
