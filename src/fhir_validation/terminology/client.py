"""HTTP client for the FHIR ``$validate-code`` operation.

``ValueSet/$validate-code`` is used when a value set is known for the code;
otherwise ``CodeSystem/$validate-code`` checks membership in the system. Both
``Parameters`` and ``OperationOutcome`` response bodies are understood.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from fhir_validation.models.validation import normalize_fhir_version
from fhir_validation.observability.metrics import record_terminology_call
from fhir_validation.utils.errors import (
    ErrorKind,
    OperationTimeoutError,
    TerminologyServerError,
    UnsupportedVersionError,
)

from .extractor import CodeKey
from .router import TerminologyServer

logger = structlog.get_logger(__name__)

_FHIR_JSON = "application/fhir+json"


@dataclass(frozen=True, slots=True)
class CodeValidationResult:
    valid: bool
    message: str | None = None
    display: str | None = None
    server_id: str | None = None


def _parse_parameters(payload: Mapping[str, Any], server_id: str) -> CodeValidationResult:
    valid: bool | None = None
    message: str | None = None
    display: str | None = None
    for parameter in payload.get("parameter") or ():
        name = parameter.get("name")
        if name == "result":
            valid = bool(parameter.get("valueBoolean"))
        elif name == "message":
            message = parameter.get("valueString")
        elif name == "display":
            display = parameter.get("valueString")
    if valid is None:
        raise TerminologyServerError(
            "validate-code response has no result parameter",
            kind=ErrorKind.UNPARSEABLE_OUTPUT,
            extra={"server": server_id},
        )
    return CodeValidationResult(valid=valid, message=message, display=display, server_id=server_id)


def _parse_operation_outcome(payload: Mapping[str, Any], server_id: str) -> CodeValidationResult:
    issues = payload.get("issue") or ()
    has_error = any(issue.get("severity") in ("error", "fatal") for issue in issues)
    message = "; ".join(
        str(issue.get("diagnostics") or (issue.get("details") or {}).get("text") or "")
        for issue in issues
        if issue.get("diagnostics") or issue.get("details")
    )
    return CodeValidationResult(valid=not has_error, message=message or None, server_id=server_id)


def parse_validation_response(payload: Mapping[str, Any], server_id: str) -> CodeValidationResult:
    resource_type = payload.get("resourceType")
    if resource_type == "Parameters":
        return _parse_parameters(payload, server_id)
    if resource_type == "OperationOutcome":
        return _parse_operation_outcome(payload, server_id)
    raise TerminologyServerError(
        f"Unexpected validate-code response type: {resource_type}",
        kind=ErrorKind.UNPARSEABLE_OUTPUT,
        extra={"server": server_id},
    )


class TerminologyClient:
    """Thin async wrapper over ``httpx.AsyncClient`` for terminology servers."""

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Accept": _FHIR_JSON},
        )

    async def validate_code(
        self, server: TerminologyServer, key: CodeKey, *, display: str | None = None
    ) -> CodeValidationResult:
        """Ask ``server`` whether ``key`` is valid.

        Raises:
            OperationTimeoutError: The request timed out.
            TerminologyServerError: Transport failure, retryable status, or an
                unparseable body.
        """
        system, code, value_set = key
        params: dict[str, str] = {"code": code}
        if system:
            params["system"] = system
        if display:
            params["display"] = display
        if value_set:
            endpoint = f"{server.url}/ValueSet/$validate-code"
            params["url"] = value_set
        else:
            endpoint = f"{server.url}/CodeSystem/$validate-code"
            params["url"] = system

        started = time.perf_counter()
        try:
            response = await self._client.get(endpoint, params=params)
        except httpx.TimeoutException as exc:
            record_terminology_call(server.id, "timeout", time.perf_counter() - started)
            raise OperationTimeoutError(
                f"Terminology server {server.id} timed out", extra={"server": server.id}
            ) from exc
        except httpx.TransportError as exc:
            record_terminology_call(server.id, "network_error", time.perf_counter() - started)
            raise TerminologyServerError(
                f"Terminology server {server.id} unreachable",
                detail=str(exc),
                extra={"server": server.id},
            ) from exc
        elapsed = time.perf_counter() - started

        if response.status_code == 429 or response.status_code >= 500:
            record_terminology_call(server.id, f"http_{response.status_code}", elapsed)
            raise TerminologyServerError(
                f"Terminology server {server.id} returned HTTP {response.status_code}",
                extra={"server": server.id, "status": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            record_terminology_call(server.id, "invalid_body", elapsed)
            raise TerminologyServerError(
                f"Terminology server {server.id} returned a non-JSON body",
                kind=ErrorKind.UNPARSEABLE_OUTPUT,
                extra={"server": server.id, "status": response.status_code},
            )
        if response.status_code >= 400 and payload.get("resourceType") != "OperationOutcome":
            record_terminology_call(server.id, f"http_{response.status_code}", elapsed)
            raise TerminologyServerError(
                f"Terminology server {server.id} returned HTTP {response.status_code}",
                kind=ErrorKind.INVALID_INPUT,
                extra={"server": server.id, "status": response.status_code},
            )
        result = parse_validation_response(payload, server.id)
        record_terminology_call(server.id, "valid" if result.valid else "invalid", elapsed)
        return result

    async def fetch_metadata(self, server: TerminologyServer) -> Mapping[str, Any] | None:
        try:
            response = await self._client.get(f"{server.url}/metadata")
        except httpx.HTTPError as exc:
            logger.warning("terminology.metadata.failed", server=server.id, error=repr(exc))
            return None
        if response.status_code != 200:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        if not isinstance(payload, dict) or payload.get("resourceType") != "CapabilityStatement":
            return None
        return payload

    async def check_health(self, server: TerminologyServer) -> bool:
        return await self.fetch_metadata(server) is not None

    async def detect_fhir_version(self, server: TerminologyServer) -> str | None:
        """Map ``CapabilityStatement.fhirVersion`` (4.x, 5.x, 6.x) to R4/R5/R6."""
        metadata = await self.fetch_metadata(server)
        if not metadata or not metadata.get("fhirVersion"):
            return None
        try:
            return normalize_fhir_version(str(metadata["fhirVersion"]))
        except UnsupportedVersionError:
            return None

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = [
    "CodeValidationResult",
    "TerminologyClient",
    "parse_validation_response",
]
