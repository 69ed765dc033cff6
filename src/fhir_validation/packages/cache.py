"""Local package cache backends.

The filesystem layout mirrors the FHIR package cache convention::

    <cache_dir>/<id>#<version>/package.tgz
    <cache_dir>/<id>#<version>/metadata.json

``metadata.json`` records the archive checksum, declared dependencies and
when the archive was stored. Blocking filesystem work runs in a thread via
:func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path

import structlog

from fhir_validation.models.packages import CachedPackage

logger = structlog.get_logger(__name__)

ARCHIVE_NAME = "package.tgz"
METADATA_NAME = "metadata.json"


# ==============================================================================
# INTERFACES
# ==============================================================================


class PackageCache(ABC):
    """Persistence for downloaded rule packages."""

    @abstractmethod
    async def lookup(self, package_id: str, version: str | None = None) -> CachedPackage | None:
        """Return the cached package, or the newest cached version when ``version`` is None."""

    @abstractmethod
    async def store(
        self,
        package_id: str,
        version: str,
        archive: bytes,
        checksum: str,
        dependencies: Mapping[str, str],
    ) -> CachedPackage:
        """Persist ``archive`` and its metadata."""


def _version_sort_key(version: str) -> tuple[tuple[int, int | str], ...]:
    parts: list[tuple[int, int | str]] = []
    for piece in version.replace("-", ".").split("."):
        parts.append((0, int(piece)) if piece.isdigit() else (-1, piece))
    return tuple(parts)


# ==============================================================================
# IMPLEMENTATIONS
# ==============================================================================


class InMemoryPackageCache(PackageCache):
    """Process-local package cache."""

    def __init__(self) -> None:
        self._packages: dict[tuple[str, str], tuple[CachedPackage, bytes]] = {}
        self._lock = asyncio.Lock()

    async def lookup(self, package_id: str, version: str | None = None) -> CachedPackage | None:
        async with self._lock:
            if version is not None:
                item = self._packages.get((package_id, version))
                return item[0] if item else None
            candidates = [key[1] for key in self._packages if key[0] == package_id]
            if not candidates:
                return None
            newest = max(candidates, key=_version_sort_key)
            return self._packages[(package_id, newest)][0]

    async def store(
        self,
        package_id: str,
        version: str,
        archive: bytes,
        checksum: str,
        dependencies: Mapping[str, str],
    ) -> CachedPackage:
        cached = CachedPackage(package_id, version, checksum, dict(dependencies))
        async with self._lock:
            self._packages[(package_id, version)] = (cached, archive)
        return cached

    async def read_archive(self, package_id: str, version: str) -> bytes | None:
        async with self._lock:
            item = self._packages.get((package_id, version))
            return item[1] if item else None


class FilesystemPackageCache(PackageCache):
    """Package cache rooted at a directory such as ``~/.fhir/packages``."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def _package_dir(self, package_id: str, version: str) -> Path:
        return self._root / f"{package_id}#{version}"

    def _read(self, package_id: str, version: str) -> CachedPackage | None:
        directory = self._package_dir(package_id, version)
        metadata_path = directory / METADATA_NAME
        if not (directory / ARCHIVE_NAME).is_file() or not metadata_path.is_file():
            return None
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(
                "packages.cache.metadata_unreadable",
                package=package_id,
                version=version,
                error=str(exc),
            )
            return None
        return CachedPackage(
            package_id=package_id,
            version=version,
            checksum=str(metadata.get("checksum", "")),
            dependencies=dict(metadata.get("dependencies") or {}),
        )

    def _lookup_sync(self, package_id: str, version: str | None) -> CachedPackage | None:
        if version is not None:
            return self._read(package_id, version)
        if not self._root.is_dir():
            return None
        prefix = f"{package_id}#"
        versions = [
            entry.name[len(prefix):]
            for entry in self._root.iterdir()
            if entry.is_dir() and entry.name.startswith(prefix)
        ]
        for candidate in sorted(versions, key=_version_sort_key, reverse=True):
            cached = self._read(package_id, candidate)
            if cached is not None:
                return cached
        return None

    def _store_sync(
        self,
        package_id: str,
        version: str,
        archive: bytes,
        checksum: str,
        dependencies: Mapping[str, str],
    ) -> CachedPackage:
        directory = self._package_dir(package_id, version)
        directory.mkdir(parents=True, exist_ok=True)
        archive_tmp = directory / f"{ARCHIVE_NAME}.tmp"
        archive_tmp.write_bytes(archive)
        os.replace(archive_tmp, directory / ARCHIVE_NAME)
        metadata = {
            "packageId": package_id,
            "version": version,
            "checksum": checksum,
            "dependencies": dict(dependencies),
            "storedAt": time.time(),
        }
        metadata_tmp = directory / f"{METADATA_NAME}.tmp"
        metadata_tmp.write_text(json.dumps(metadata, indent=2), encoding="utf-8")
        os.replace(metadata_tmp, directory / METADATA_NAME)
        return CachedPackage(package_id, version, checksum, dict(dependencies))

    async def lookup(self, package_id: str, version: str | None = None) -> CachedPackage | None:
        return await asyncio.to_thread(self._lookup_sync, package_id, version)

    async def store(
        self,
        package_id: str,
        version: str,
        archive: bytes,
        checksum: str,
        dependencies: Mapping[str, str],
    ) -> CachedPackage:
        cached = await asyncio.to_thread(
            self._store_sync, package_id, version, archive, checksum, dependencies
        )
        logger.info("packages.cache.stored", package=package_id, version=version, bytes=len(archive))
        return cached


__all__ = [
    "ARCHIVE_NAME",
    "FilesystemPackageCache",
    "InMemoryPackageCache",
    "METADATA_NAME",
    "PackageCache",
]
