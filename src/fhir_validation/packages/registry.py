"""FHIR package registry client (packages.fhir.org layout).

``GET /{id}`` lists the published versions and ``dist-tags``;
``GET /{id}/{version}`` returns the package tarball. When the version listing
omits dependencies, the manifest is read from ``package/package.json`` inside
the tarball, and that archive is kept until the matching
``download_package`` call hands it out.
"""

from __future__ import annotations

import io
import json
import tarfile
from collections.abc import Mapping
from typing import Any

import httpx
import structlog

from fhir_validation.config.settings import PackageResolverSettings
from fhir_validation.models.packages import PackageManifest
from fhir_validation.utils.errors import ErrorKind, PackageResolutionError
from fhir_validation.utils.http_client import AsyncHttpClient, CircuitBreakerError, HttpPolicy

logger = structlog.get_logger(__name__)

MANIFEST_MEMBER = "package/package.json"


def read_manifest_from_tarball(archive: bytes) -> PackageManifest:
    """Extract ``package/package.json`` from a gzipped package tarball."""
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as bundle:
            member = bundle.extractfile(MANIFEST_MEMBER)
            if member is None:
                raise KeyError(MANIFEST_MEMBER)
            payload = json.loads(member.read().decode("utf-8"))
    except (KeyError, tarfile.TarError, OSError, ValueError) as exc:
        raise PackageResolutionError(
            "Package archive has no readable package/package.json",
            kind=ErrorKind.UNPARSEABLE_OUTPUT,
            detail=str(exc),
        ) from exc
    return PackageManifest.from_package_json(payload)


class PackageRegistryClient:
    """Fetch manifests and archives from an npm-style FHIR package registry."""

    def __init__(
        self,
        base_url: str = "https://packages.fhir.org",
        *,
        timeout: float = 60.0,
        http: AsyncHttpClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._http = http or AsyncHttpClient(
            base_url=base_url.rstrip("/"),
            policy=HttpPolicy(
                attempts=3,
                timeout=timeout,
                requests_per_second=5.0,
                breaker_failures=5,
                breaker_reset_seconds=60.0,
            ),
            transport=transport,
        )
        self._archives: dict[tuple[str, str], bytes] = {}

    @classmethod
    def from_settings(
        cls,
        settings: PackageResolverSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> PackageRegistryClient:
        return cls(
            settings.registry_url,
            timeout=settings.download_timeout_seconds,
            transport=transport,
        )

    async def _get(self, path: str, package_id: str) -> httpx.Response:
        try:
            response = await self._http.get(path)
        except CircuitBreakerError as exc:
            raise PackageResolutionError(
                "Package registry circuit is open",
                kind=ErrorKind.CIRCUIT_OPEN,
                extra={"package": package_id},
            ) from exc
        except httpx.HTTPError as exc:
            raise PackageResolutionError(
                f"Package registry request failed for {package_id}",
                kind=ErrorKind.NETWORK,
                detail=str(exc),
                extra={"package": package_id},
            ) from exc
        if response.status_code == 404:
            raise PackageResolutionError(
                f"Package {package_id} not found in registry",
                extra={"package": package_id, "path": path},
            )
        if response.status_code >= 400:
            raise PackageResolutionError(
                f"Package registry returned HTTP {response.status_code} for {package_id}",
                kind=ErrorKind.INVALID_INPUT,
                extra={"package": package_id, "status": response.status_code},
            )
        return response

    async def list_versions(self, package_id: str) -> Mapping[str, Any]:
        response = await self._get(f"/{package_id}", package_id)
        try:
            payload = response.json()
        except ValueError as exc:
            raise PackageResolutionError(
                f"Registry listing for {package_id} is not JSON",
                kind=ErrorKind.UNPARSEABLE_OUTPUT,
            ) from exc
        if not isinstance(payload, dict):
            raise PackageResolutionError(
                f"Registry listing for {package_id} is malformed",
                kind=ErrorKind.UNPARSEABLE_OUTPUT,
            )
        return payload

    async def fetch_manifest(self, package_id: str, version: str | None = None) -> PackageManifest:
        """Resolve ``version`` (``latest`` when omitted) and return its manifest.

        Raises:
            PackageResolutionError: Unknown package or version, or registry failure.
        """
        listing = await self.list_versions(package_id)
        versions = listing.get("versions") or {}
        resolved = version or (listing.get("dist-tags") or {}).get("latest")
        if not resolved:
            raise PackageResolutionError(f"Package {package_id} has no latest version")
        entry = versions.get(resolved)
        if entry is None:
            raise PackageResolutionError(
                f"Version {resolved} of {package_id} not found",
                extra={"package": package_id, "version": resolved},
            )
        if "dependencies" in entry:
            return PackageManifest.from_package_json(
                {"name": entry.get("name", package_id), "version": resolved, **entry}
            )
        logger.debug("packages.manifest.from_tarball", package=package_id, version=resolved)
        archive = await self._fetch_archive(package_id, resolved)
        manifest = read_manifest_from_tarball(archive)
        self._archives[(package_id, resolved)] = archive
        return manifest

    async def download_package(self, package_id: str, version: str) -> bytes:
        """Return the archive, reusing one already fetched to read its manifest."""
        archive = self._archives.pop((package_id, version), None)
        if archive is not None:
            logger.debug("packages.archive.reused", package=package_id, version=version)
            return archive
        return await self._fetch_archive(package_id, version)

    async def _fetch_archive(self, package_id: str, version: str) -> bytes:
        response = await self._get(f"/{package_id}/{version}", package_id)
        if not response.content:
            raise PackageResolutionError(
                f"Empty archive for {package_id}@{version}",
                kind=ErrorKind.UNPARSEABLE_OUTPUT,
            )
        return response.content

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = ["MANIFEST_MEMBER", "PackageRegistryClient", "read_manifest_from_tarball"]
