"""Tests for the package cache backends."""

from __future__ import annotations

import json

import pytest

from fhir_validation.packages.cache import (
    ARCHIVE_NAME,
    METADATA_NAME,
    FilesystemPackageCache,
    InMemoryPackageCache,
)


@pytest.mark.asyncio
async def test_filesystem_cache_round_trips_metadata(tmp_path):
    cache = FilesystemPackageCache(tmp_path)

    stored = await cache.store(
        "hl7.fhir.us.core", "6.1.0", b"archive", "abc123", {"hl7.fhir.r4.core": "4.0.1"}
    )
    found = await cache.lookup("hl7.fhir.us.core", "6.1.0")

    assert found == stored
    directory = tmp_path / "hl7.fhir.us.core#6.1.0"
    assert (directory / ARCHIVE_NAME).read_bytes() == b"archive"
    metadata = json.loads((directory / METADATA_NAME).read_text())
    assert metadata["checksum"] == "abc123"
    assert metadata["dependencies"] == {"hl7.fhir.r4.core": "4.0.1"}
    assert not list(directory.glob("*.tmp"))


@pytest.mark.asyncio
async def test_filesystem_cache_picks_newest_version(tmp_path):
    cache = FilesystemPackageCache(tmp_path)
    for version in ("3.1.1", "6.1.0", "5.0.1"):
        await cache.store("hl7.fhir.us.core", version, b"x", version, {})

    found = await cache.lookup("hl7.fhir.us.core")

    assert found is not None
    assert found.version == "6.1.0"


@pytest.mark.asyncio
async def test_filesystem_cache_misses(tmp_path):
    cache = FilesystemPackageCache(tmp_path / "missing")
    assert await cache.lookup("pkg") is None
    assert await cache.lookup("pkg", "1.0.0") is None

    cache = FilesystemPackageCache(tmp_path)
    (tmp_path / "pkg#1.0.0").mkdir()
    (tmp_path / "pkg#1.0.0" / ARCHIVE_NAME).write_bytes(b"x")
    (tmp_path / "pkg#1.0.0" / METADATA_NAME).write_text("{not json")
    assert await cache.lookup("pkg", "1.0.0") is None


@pytest.mark.asyncio
async def test_in_memory_cache_keeps_archives():
    cache = InMemoryPackageCache()
    await cache.store("pkg", "1.0.0", b"one", "c1", {})
    await cache.store("pkg", "1.10.0", b"ten", "c10", {"dep": "2.0.0"})
    await cache.store("pkg", "1.2.0", b"two", "c2", {})

    newest = await cache.lookup("pkg")

    assert newest is not None and newest.version == "1.10.0"
    assert newest.dependencies == {"dep": "2.0.0"}
    assert await cache.read_archive("pkg", "1.0.0") == b"one"
    assert await cache.lookup("other") is None
