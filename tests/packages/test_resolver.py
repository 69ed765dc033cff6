"""Tests for transitive package resolution and download."""

from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from fhir_validation.models.packages import PackageManifest, PackageSource
from fhir_validation.packages.cache import InMemoryPackageCache
from fhir_validation.packages.resolver import DependencyGraphResolver, visualize
from fhir_validation.utils.errors import PackageResolutionError

V = "1.0.0"


class FakeRegistry:
    """In-memory registry: ``packages`` maps ``id`` to its dependency mapping."""

    def __init__(self, packages: dict[str, dict[str, str]], *, delay: float = 0.0) -> None:
        self.packages = packages
        self.delay = delay
        self.manifest_calls: Counter[str] = Counter()
        self.downloads: Counter[str] = Counter()
        self.broken_downloads: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.peak = 0

    async def fetch_manifest(self, package_id: str, version: str | None = None) -> PackageManifest:
        self.manifest_calls[package_id] += 1
        if package_id not in self.packages:
            raise PackageResolutionError(f"Package {package_id} not found in registry")
        return PackageManifest(package_id, version or V, dict(self.packages[package_id]))

    async def download_package(self, package_id: str, version: str) -> bytes:
        self.downloads[package_id] += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if package_id in self.broken_downloads:
                raise PackageResolutionError(f"Download of {package_id} failed")
            return f"{package_id}@{version}".encode()
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_resolves_and_downloads_transitive_dependencies():
    registry = FakeRegistry({"A": {"B": V, "C": V}, "B": {"D": V}, "C": {}, "D": {}})
    cache = InMemoryPackageCache()
    resolver = DependencyGraphResolver(registry, cache)

    graph = await resolver.resolve("A", V)

    assert graph.root == "A@1.0.0"
    assert graph.total_packages == 4
    assert sorted(graph.downloaded_packages) == ["A@1.0.0", "B@1.0.0", "C@1.0.0", "D@1.0.0"]
    assert graph.failed_packages == []
    assert graph.edges["A@1.0.0"] == ["B@1.0.0", "C@1.0.0"]
    assert graph.nodes["D@1.0.0"].depth == 2
    assert all(node.source is PackageSource.REGISTRY for node in graph.nodes.values())
    assert set(registry.downloads.values()) == {1}
    cached = await cache.lookup("B", V)
    assert cached is not None and cached.dependencies == {"D": V}
    assert await cache.read_archive("D", V) == b"D@1.0.0"


@pytest.mark.asyncio
async def test_cycles_are_recorded_without_failing():
    registry = FakeRegistry({"A": {"B": V}, "B": {"C": V}, "C": {"A": V}})
    resolver = DependencyGraphResolver(registry, InMemoryPackageCache())

    graph = await resolver.resolve("A", V)

    assert graph.circular_dependencies == [["A@1.0.0", "B@1.0.0", "C@1.0.0", "A@1.0.0"]]
    assert graph.failed_packages == []
    assert len(graph.downloaded_packages) == 3
    assert registry.manifest_calls == Counter({"A": 1, "B": 1, "C": 1})


@pytest.mark.asyncio
async def test_max_depth_bounds_the_graph():
    registry = FakeRegistry({"A": {"B": V}, "B": {"C": V}, "C": {"D": V}, "D": {}})
    resolver = DependencyGraphResolver(registry, InMemoryPackageCache(), max_depth=1)

    graph = await resolver.resolve("A", V)

    assert set(graph.nodes) == {"A@1.0.0", "B@1.0.0"}
    assert "C" not in registry.manifest_calls


@pytest.mark.asyncio
async def test_cached_packages_are_not_downloaded_again():
    registry = FakeRegistry({"A": {"B": V}, "B": {"D": V}, "D": {}})
    cache = InMemoryPackageCache()
    await cache.store("B", V, b"cached", "checksum", {"D": V})
    resolver = DependencyGraphResolver(registry, cache)

    first = await resolver.resolve("A", V)

    assert first.nodes["B@1.0.0"].source is PackageSource.CACHE
    assert "B" not in registry.manifest_calls
    assert "B" not in registry.downloads
    assert first.nodes["D@1.0.0"].source is PackageSource.REGISTRY

    second = await resolver.resolve("A", V)

    assert sum(registry.downloads.values()) == 2
    assert all(node.source is PackageSource.CACHE for node in second.nodes.values())
    assert sorted(second.downloaded_packages) == sorted(first.downloaded_packages)


@pytest.mark.asyncio
async def test_skip_cached_disabled_downloads_everything():
    registry = FakeRegistry({"A": {}})
    cache = InMemoryPackageCache()
    await cache.store("A", V, b"cached", "checksum", {})
    resolver = DependencyGraphResolver(registry, cache, skip_cached=False)

    graph = await resolver.resolve("A", V)

    assert registry.downloads["A"] == 1
    assert graph.nodes["A@1.0.0"].source is PackageSource.REGISTRY


@pytest.mark.asyncio
async def test_unknown_dependency_is_reported_as_failed():
    registry = FakeRegistry({"A": {"B": V, "missing": "2.0.0"}, "B": {}})
    resolver = DependencyGraphResolver(registry, InMemoryPackageCache())

    graph = await resolver.resolve("A", V)

    assert graph.failed_packages == ["missing@2.0.0"]
    assert "not found" in graph.nodes["missing@2.0.0"].error
    assert sorted(graph.downloaded_packages) == ["A@1.0.0", "B@1.0.0"]


@pytest.mark.asyncio
async def test_download_failures_do_not_stop_siblings():
    registry = FakeRegistry({"A": {"B": V, "C": V}, "B": {}, "C": {}})
    registry.broken_downloads.add("B")
    resolver = DependencyGraphResolver(registry, InMemoryPackageCache())

    graph = await resolver.resolve("A", V)

    assert graph.failed_packages == ["B@1.0.0"]
    assert graph.nodes["B@1.0.0"].downloaded is False
    assert sorted(graph.downloaded_packages) == ["A@1.0.0", "C@1.0.0"]


@pytest.mark.asyncio
async def test_download_timeout_marks_node_failed():
    registry = FakeRegistry({"A": {}}, delay=1.0)
    resolver = DependencyGraphResolver(registry, InMemoryPackageCache(), download_timeout=0.01)

    graph = await resolver.resolve("A", V)

    assert graph.failed_packages == ["A@1.0.0"]
    assert "timed out" in graph.nodes["A@1.0.0"].error


@pytest.mark.asyncio
@pytest.mark.parametrize(("parallel", "expected_peak"), [(True, 2), (False, 1)])
async def test_download_concurrency_is_bounded(parallel, expected_peak):
    packages = {"root": {f"dep{i}": V for i in range(5)}}
    packages.update({f"dep{i}": {} for i in range(5)})
    registry = FakeRegistry(packages, delay=0.01)
    resolver = DependencyGraphResolver(
        registry, InMemoryPackageCache(), parallel=parallel, max_concurrent=2
    )

    graph = await resolver.resolve("root", V)

    assert len(graph.downloaded_packages) == 6
    assert registry.peak == expected_peak


@pytest.mark.asyncio
async def test_concurrent_resolutions_share_downloads():
    registry = FakeRegistry({"A": {"B": V}, "B": {}})
    registry.gate = asyncio.Event()
    resolver = DependencyGraphResolver(registry, InMemoryPackageCache())

    first = asyncio.create_task(resolver.resolve("A", V))
    second = asyncio.create_task(resolver.resolve("A", V))
    await asyncio.sleep(0.05)
    registry.gate.set()
    graphs = await asyncio.gather(first, second)

    assert registry.downloads == Counter({"A": 1, "B": 1})
    assert all(len(graph.downloaded_packages) == 2 for graph in graphs)


def test_invalid_concurrency_rejected():
    with pytest.raises(ValueError):
        DependencyGraphResolver(FakeRegistry({}), InMemoryPackageCache(), max_concurrent=0)


@pytest.mark.asyncio
async def test_visualize_renders_tree_and_cycles():
    registry = FakeRegistry({"A": {"B": V, "X": V}, "B": {"C": V}, "C": {"A": V}})
    resolver = DependencyGraphResolver(registry, InMemoryPackageCache())
    graph = await resolver.resolve("A", V)

    rendered = visualize(graph).splitlines()

    assert rendered[0] == "Dependency graph for A@1.0.0"
    assert rendered[1] == "✓ A@1.0.0 [registry]"
    assert rendered[2] == "  ✓ B@1.0.0 [registry]"
    assert rendered[3] == "    ✓ C@1.0.0 [registry]"
    assert rendered[4] == "      ↺ A@1.0.0 (circular)"
    assert rendered[5].startswith("  ✗ X@1.0.0 - ")
    assert rendered[-2] == "Circular Dependencies:"
    assert rendered[-1] == "  A@1.0.0 → B@1.0.0 → C@1.0.0 → A@1.0.0"
