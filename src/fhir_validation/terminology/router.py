"""Pick terminology servers for a FHIR version."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from fhir_validation.config.settings import TerminologyServerSettings
from fhir_validation.models.validation import normalize_fhir_version


@dataclass(frozen=True, slots=True)
class TerminologyServer:
    id: str
    url: str
    fhir_versions: tuple[str, ...] = ("R4",)
    priority: int = 100
    enabled: bool = True

    @classmethod
    def from_settings(cls, settings: TerminologyServerSettings) -> TerminologyServer:
        return cls(
            id=settings.id,
            url=settings.url.rstrip("/"),
            fhir_versions=tuple(normalize_fhir_version(v) for v in settings.fhir_versions),
            priority=settings.priority,
            enabled=settings.enabled,
        )

    def supports(self, fhir_version: str) -> bool:
        return fhir_version in self.fhir_versions


class TerminologyRouter:
    """Order enabled servers for a version by priority, then declaration order."""

    def __init__(self, servers: Iterable[TerminologyServer]) -> None:
        self._servers = list(servers)

    @classmethod
    def from_settings(cls, servers: Sequence[TerminologyServerSettings]) -> TerminologyRouter:
        return cls(TerminologyServer.from_settings(server) for server in servers)

    def servers_for(self, fhir_version: str) -> list[TerminologyServer]:
        version = normalize_fhir_version(fhir_version)
        candidates = [
            (server.priority, index, server)
            for index, server in enumerate(self._servers)
            if server.enabled and server.supports(version)
        ]
        return [server for _, _, server in sorted(candidates, key=lambda item: item[:2])]

    def primary_for(self, fhir_version: str) -> TerminologyServer | None:
        servers = self.servers_for(fhir_version)
        return servers[0] if servers else None

    def fallbacks_for(self, fhir_version: str) -> list[TerminologyServer]:
        return self.servers_for(fhir_version)[1:]

    def get(self, server_id: str) -> TerminologyServer | None:
        return next((server for server in self._servers if server.id == server_id), None)

    @property
    def servers(self) -> tuple[TerminologyServer, ...]:
        return tuple(self._servers)


__all__ = ["TerminologyRouter", "TerminologyServer"]
