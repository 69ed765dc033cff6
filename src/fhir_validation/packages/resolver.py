"""Transitive dependency resolution for FHIR rule packages.

Key Responsibilities:
    - Build the dependency graph of a root package from registry manifests,
      bounded by ``max_depth``
    - Detect cycles against the current ancestor path and record them
    - Download every package not already cached, once, with bounded parallelism

Collaborators:
    - Upstream: :func:`~fhir_validation.service.build_validation_service`
    - Downstream: :class:`~fhir_validation.packages.registry.PackageRegistryClient`,
      :class:`~fhir_validation.packages.cache.PackageCache`

Side Effects:
    - Network calls to the package registry
    - Writes archives to the package cache
    - Updates the ``fhir_validation_package_downloads_total`` counter

Thread Safety:
    - Intended for a single event loop. Concurrent ``resolve`` calls share
      in-flight downloads of the same package.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Mapping
from typing import Protocol

import structlog

from fhir_validation.config.settings import PackageResolverSettings
from fhir_validation.models.packages import (
    CachedPackage,
    DependencyGraph,
    DependencyGraphNode,
    PackageManifest,
    PackageSource,
    package_key,
)
from fhir_validation.observability.metrics import PACKAGE_DOWNLOADS_TOTAL
from fhir_validation.utils.errors import OperationTimeoutError, ValidationInfrastructureError

from .cache import PackageCache

logger = structlog.get_logger(__name__)


class PackageFetcher(Protocol):
    async def fetch_manifest(
        self, package_id: str, version: str | None = None
    ) -> PackageManifest: ...

    async def download_package(self, package_id: str, version: str) -> bytes: ...


class DependencyGraphResolver:
    """Resolve and download the transitive dependencies of a package."""

    def __init__(
        self,
        registry: PackageFetcher,
        cache: PackageCache,
        *,
        max_depth: int = 5,
        parallel: bool = True,
        max_concurrent: int = 3,
        skip_cached: bool = True,
        download_timeout: float = 60.0,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._registry = registry
        self._cache = cache
        self._max_depth = max_depth
        self._parallel = parallel
        self._max_concurrent = max_concurrent
        self._skip_cached = skip_cached
        self._download_timeout = download_timeout
        self._inflight: dict[str, asyncio.Task[CachedPackage]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: PackageResolverSettings,
        registry: PackageFetcher,
        cache: PackageCache,
    ) -> DependencyGraphResolver:
        return cls(
            registry,
            cache,
            max_depth=settings.max_depth,
            parallel=settings.parallel,
            max_concurrent=settings.max_concurrent,
            skip_cached=settings.skip_cached,
            download_timeout=settings.download_timeout_seconds,
        )

    async def resolve(self, package_id: str, version: str | None = None) -> DependencyGraph:
        """Build the graph rooted at ``package_id`` and download what is missing."""
        graph = DependencyGraph(root=package_key(package_id, version))
        declared: dict[str, Mapping[str, str]] = {}
        logger.info("packages.resolve.started", package=graph.root)
        await self._build(graph, declared, package_id, version, 0, [])
        await self._download_all(graph, declared)
        graph.downloaded_packages = [
            key for key, node in graph.nodes.items() if node.downloaded
        ]
        logger.info(
            "packages.resolve.completed",
            package=graph.root,
            total=graph.total_packages,
            downloaded=len(graph.downloaded_packages),
            failed=len(graph.failed_packages),
            cycles=len(graph.circular_dependencies),
        )
        return graph

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------
    async def _build(
        self,
        graph: DependencyGraph,
        declared: dict[str, Mapping[str, str]],
        package_id: str,
        version: str | None,
        depth: int,
        path: list[str],
    ) -> None:
        if depth > self._max_depth:
            logger.warning("packages.resolve.max_depth", package=package_id, depth=depth)
            return
        key = package_key(package_id, version)
        if key in path:
            cycle = path[path.index(key):] + [key]
            graph.circular_dependencies.append(cycle)
            logger.warning("packages.resolve.circular", cycle=" → ".join(cycle))
            return
        if key in graph.nodes:
            return

        dependencies: Mapping[str, str]
        if self._skip_cached:
            cached = await self._cache.lookup(package_id, version)
            if cached is not None:
                logger.debug("packages.resolve.cached", package=key)
                dependencies = cached.dependencies
                graph.nodes[key] = DependencyGraphNode(
                    package_id=package_id,
                    version=cached.version,
                    depth=depth,
                    dependencies=list(dependencies),
                    downloaded=True,
                    source=PackageSource.CACHE,
                )
                await self._expand(graph, declared, key, dependencies, depth, path)
                return

        try:
            manifest = await self._registry.fetch_manifest(package_id, version)
        except ValidationInfrastructureError as exc:
            logger.warning("packages.resolve.manifest_failed", package=key, error=str(exc))
            graph.nodes[key] = DependencyGraphNode(
                package_id=package_id,
                version=version or "latest",
                depth=depth,
                error=str(exc),
            )
            graph.failed_packages.append(key)
            return

        dependencies = manifest.dependencies
        declared[key] = dependencies
        graph.nodes[key] = DependencyGraphNode(
            package_id=manifest.name,
            version=manifest.version,
            depth=depth,
            dependencies=list(dependencies),
        )
        await self._expand(graph, declared, key, dependencies, depth, path)

    async def _expand(
        self,
        graph: DependencyGraph,
        declared: dict[str, Mapping[str, str]],
        key: str,
        dependencies: Mapping[str, str],
        depth: int,
        path: list[str],
    ) -> None:
        graph.edges[key] = [package_key(dep_id, dep_version) for dep_id, dep_version in dependencies.items()]
        for dep_id, dep_version in dependencies.items():
            await self._build(graph, declared, dep_id, dep_version, depth + 1, [*path, key])

    # ------------------------------------------------------------------
    # Download phase
    # ------------------------------------------------------------------
    async def _download_all(
        self, graph: DependencyGraph, declared: Mapping[str, Mapping[str, str]]
    ) -> None:
        pending = [
            (key, node)
            for key, node in graph.nodes.items()
            if not node.downloaded and node.error is None
        ]
        if not pending:
            return
        if not self._parallel:
            for key, node in pending:
                await self._download_node(graph, key, node, declared.get(key, {}))
            return

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def _bounded(key: str, node: DependencyGraphNode) -> None:
            async with semaphore:
                await self._download_node(graph, key, node, declared.get(key, {}))

        await asyncio.gather(*(_bounded(key, node) for key, node in pending))

    async def _download_node(
        self,
        graph: DependencyGraph,
        key: str,
        node: DependencyGraphNode,
        dependencies: Mapping[str, str],
    ) -> None:
        try:
            await asyncio.shield(self._shared_download(node, dependencies))
        except (ValidationInfrastructureError, OSError) as exc:
            node.error = str(exc)
            graph.failed_packages.append(key)
            PACKAGE_DOWNLOADS_TOTAL.labels(outcome="failure").inc()
            logger.warning("packages.download.failed", package=node.key, error=str(exc))
            return
        node.downloaded = True
        node.source = PackageSource.REGISTRY

    def _shared_download(
        self, node: DependencyGraphNode, dependencies: Mapping[str, str]
    ) -> asyncio.Task[CachedPackage]:
        key = node.key
        task = self._inflight.get(key)
        if task is not None:
            return task
        task = asyncio.ensure_future(
            self._fetch_and_store(node.package_id, node.version, dependencies)
        )
        self._inflight[key] = task

        def _forget(done: asyncio.Task[CachedPackage]) -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_forget)
        return task

    async def _fetch_and_store(
        self, package_id: str, version: str, dependencies: Mapping[str, str]
    ) -> CachedPackage:
        try:
            archive = await asyncio.wait_for(
                self._registry.download_package(package_id, version),
                timeout=self._download_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"Download of {package_id}@{version} timed out after "
                f"{int(self._download_timeout * 1000)}ms",
                extra={"package": package_id, "version": version},
            ) from exc
        checksum = hashlib.sha256(archive).hexdigest()
        cached = await self._cache.store(package_id, version, archive, checksum, dependencies)
        PACKAGE_DOWNLOADS_TOTAL.labels(outcome="success").inc()
        logger.info("packages.download.completed", package=package_id, version=version, checksum=checksum)
        return cached


# ==============================================================================
# RENDERING
# ==============================================================================


def _status_marker(node: DependencyGraphNode) -> str:
    if node.error is not None:
        return "✗"
    if node.downloaded:
        return "✓"
    return "○"


def visualize(graph: DependencyGraph) -> str:
    """Render ``graph`` as an indented tree followed by any detected cycles."""
    lines = [f"Dependency graph for {graph.root}"]

    def _render(key: str, indent: int, ancestors: tuple[str, ...]) -> None:
        prefix = "  " * indent
        node = graph.nodes.get(key)
        if key in ancestors:
            lines.append(f"{prefix}↺ {key} (circular)")
            return
        if node is None:
            lines.append(f"{prefix}○ {key} (not resolved)")
            return
        label = f"{prefix}{_status_marker(node)} {key}"
        if node.source is not None:
            label += f" [{node.source.value}]"
        if node.error is not None:
            label += f" - {node.error}"
        lines.append(label)
        for child in graph.edges.get(key, ()):
            _render(child, indent + 1, (*ancestors, key))

    _render(graph.root, 0, ())
    if graph.circular_dependencies:
        lines.append("")
        lines.append("Circular Dependencies:")
        for cycle in graph.circular_dependencies:
            lines.append(f"  {' → '.join(cycle)}")
    return "\n".join(lines)


__all__ = ["DependencyGraphResolver", "PackageFetcher", "visualize"]
