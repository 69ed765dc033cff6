"""Rule-package registry access, local caching, and dependency resolution."""

from .cache import FilesystemPackageCache, InMemoryPackageCache, PackageCache
from .registry import PackageRegistryClient, read_manifest_from_tarball
from .resolver import DependencyGraphResolver, PackageFetcher, visualize

__all__ = [
    "DependencyGraphResolver",
    "FilesystemPackageCache",
    "InMemoryPackageCache",
    "PackageCache",
    "PackageFetcher",
    "PackageRegistryClient",
    "read_manifest_from_tarball",
    "visualize",
]
