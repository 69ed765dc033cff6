"""Rule-package manifest and dependency graph models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class PackageSource(str, Enum):
    """Where a resolved package came from."""

    CACHE = "cache"
    REGISTRY = "registry"


def package_key(package_id: str, version: str | None) -> str:
    """Graph key ``id@version``; an unspecified version is keyed ``latest``."""
    return f"{package_id}@{version or 'latest'}"


@dataclass(frozen=True, slots=True)
class PackageManifest:
    """Name, concrete version, and declared dependencies of a package."""

    name: str
    version: str
    dependencies: Mapping[str, str] = field(default_factory=dict)
    fhir_versions: tuple[str, ...] = ()

    @classmethod
    def from_package_json(cls, payload: Mapping[str, Any]) -> PackageManifest:
        fhir_versions = payload.get("fhirVersions") or payload.get("fhir-version-list") or ()
        if isinstance(fhir_versions, str):
            fhir_versions = (fhir_versions,)
        return cls(
            name=str(payload["name"]),
            version=str(payload["version"]),
            dependencies={str(k): str(v) for k, v in (payload.get("dependencies") or {}).items()},
            fhir_versions=tuple(str(item) for item in fhir_versions),
        )


@dataclass(frozen=True, slots=True)
class CachedPackage:
    """A package already present in the local package cache."""

    package_id: str
    version: str
    checksum: str
    dependencies: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DependencyGraphNode:
    package_id: str
    version: str
    depth: int
    dependencies: list[str] = field(default_factory=list)
    downloaded: bool = False
    source: PackageSource | None = None
    error: str | None = None

    @property
    def key(self) -> str:
        return package_key(self.package_id, self.version)


@dataclass(slots=True)
class DependencyGraph:
    """Result of one resolution: every node reached plus any cycles found.

    ``nodes`` is keyed by the requested ``id@version`` which can differ from
    ``node.key`` when ``latest`` was resolved to a concrete version. ``edges``
    maps each requested key to the requested keys of its dependencies.
    """

    root: str
    nodes: dict[str, DependencyGraphNode] = field(default_factory=dict)
    edges: dict[str, list[str]] = field(default_factory=dict)
    circular_dependencies: list[list[str]] = field(default_factory=list)
    downloaded_packages: list[str] = field(default_factory=list)
    failed_packages: list[str] = field(default_factory=list)

    @property
    def total_packages(self) -> int:
        return len(self.nodes)


__all__ = [
    "CachedPackage",
    "DependencyGraph",
    "DependencyGraphNode",
    "PackageManifest",
    "PackageSource",
    "package_key",
]
