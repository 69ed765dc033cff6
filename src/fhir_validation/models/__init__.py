"""Data models for validation requests, issues, and package graphs."""

from .packages import (
    CachedPackage,
    DependencyGraph,
    DependencyGraphNode,
    PackageManifest,
    PackageSource,
    package_key,
)
from .validation import (
    Aspect,
    Severity,
    SUPPORTED_FHIR_VERSIONS,
    ValidationIssue,
    ValidationRequest,
    normalize_fhir_version,
)

__all__ = [
    "Aspect",
    "CachedPackage",
    "DependencyGraph",
    "DependencyGraphNode",
    "PackageManifest",
    "PackageSource",
    "SUPPORTED_FHIR_VERSIONS",
    "Severity",
    "ValidationIssue",
    "ValidationRequest",
    "normalize_fhir_version",
    "package_key",
]
