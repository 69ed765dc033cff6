"""Request and outcome types exchanged with the external validation engine.

Pooled workers speak newline-delimited JSON over stdio. Each request line is
the wire form of :class:`EngineRequest`; each response line is either
``{"id": ..., "outcome": <OperationOutcome>}`` or
``{"id": ..., "error": "...", "kind": "<ErrorKind value>"}``. The one-shot CLI
writes an ``OperationOutcome`` to stdout, possibly surrounded by log output.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import Field

from fhir_validation.models.validation import ValidationBaseModel
from fhir_validation.utils.errors import OutcomeParseError

CORE_PACKAGES: dict[str, str] = {
    "R4": "hl7.fhir.r4.core#4.0.1",
    "R5": "hl7.fhir.r5.core#5.0.0",
    "R6": "hl7.fhir.r6.core#6.0.0-ballot2",
}

CLI_VERSIONS: dict[str, str] = {"R4": "4.0", "R5": "5.0", "R6": "6.0"}

WARMUP_RESOURCE: dict[str, Any] = {
    "resourceType": "Patient",
    "id": "warmup",
    "name": [{"family": "Warmup"}],
}

_ERROR_MARKERS = ("Error", "Exception")


class EngineRequest(ValidationBaseModel):
    """One validation job for the external engine."""

    request_id: str
    resource: dict[str, Any]
    fhir_version: str
    profile: str | None = None
    packages: tuple[str, ...] = ()
    terminology_server: str | None = None

    @property
    def core_package(self) -> str:
        return CORE_PACKAGES[self.fhir_version]

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.request_id,
            "resource": self.resource,
            "fhirVersion": CLI_VERSIONS[self.fhir_version],
            "corePackage": self.core_package,
            "packages": list(self.packages),
            "profile": self.profile,
            "terminologyServer": self.terminology_server,
        }


class OutcomeIssue(ValidationBaseModel):
    """One ``OperationOutcome.issue`` entry."""

    severity: str
    code: str = "processing"
    diagnostics: str = ""
    location: tuple[str, ...] = ()
    expression: tuple[str, ...] = ()

    @property
    def path(self) -> str:
        if self.expression:
            return self.expression[0]
        if self.location:
            return self.location[0]
        return ""


class EngineOutcome(ValidationBaseModel):
    issues: tuple[OutcomeIssue, ...] = Field(default_factory=tuple)

    @classmethod
    def from_operation_outcome(cls, payload: Mapping[str, Any]) -> EngineOutcome:
        if payload.get("resourceType") != "OperationOutcome":
            raise OutcomeParseError(
                "Engine response is not an OperationOutcome",
                extra={"resource_type": payload.get("resourceType")},
            )
        issues = []
        for raw in payload.get("issue") or ():
            details = raw.get("details") or {}
            issues.append(
                OutcomeIssue(
                    severity=str(raw.get("severity", "error")),
                    code=str(raw.get("code", "processing")),
                    diagnostics=str(raw.get("diagnostics") or details.get("text") or ""),
                    location=tuple(raw.get("location") or ()),
                    expression=tuple(raw.get("expression") or ()),
                )
            )
        return cls(issues=tuple(issues))


def _find_operation_outcome(text: str) -> dict[str, Any] | None:
    stripped = text.strip()
    if not stripped:
        return None
    try:
        document = json.loads(stripped)
    except json.JSONDecodeError:
        document = None
    if isinstance(document, dict) and document.get("resourceType") == "OperationOutcome":
        return document

    decoder = json.JSONDecoder()
    index = stripped.find("{")
    while index != -1:
        try:
            candidate, end = decoder.raw_decode(stripped, index)
        except json.JSONDecodeError:
            index = stripped.find("{", index + 1)
            continue
        if isinstance(candidate, dict) and candidate.get("resourceType") == "OperationOutcome":
            return candidate
        index = stripped.find("{", end)
    return None


def parse_outcome(stdout: str, stderr: str = "") -> EngineOutcome:
    """Locate and parse the ``OperationOutcome`` in engine output.

    Raises:
        OutcomeParseError: No outcome document was found and stderr reports an
            error.
    """
    document = _find_operation_outcome(stdout)
    if document is not None:
        return EngineOutcome.from_operation_outcome(document)
    if any(marker in stderr for marker in _ERROR_MARKERS):
        raise OutcomeParseError(
            "Engine output contained no OperationOutcome",
            detail=stderr.strip()[:2000],
        )
    return EngineOutcome()


def build_cli_arguments(request: EngineRequest, resource_path: str, *, cache_directory: str | None = None) -> list[str]:
    """Arguments appended to the one-shot command prefix."""
    args = [
        resource_path,
        "-version",
        CLI_VERSIONS[request.fhir_version],
        "-output",
        "json",
        "-locale",
        "en",
        "-ig",
        request.core_package,
    ]
    for package in request.packages:
        args.extend(["-ig", package])
    if request.profile:
        args.extend(["-profile", request.profile])
    args.extend(["-tx", request.terminology_server or "n/a"])
    if cache_directory:
        args.extend(["-txCache", cache_directory])
    return args


def decode_worker_line(line: bytes, expected_id: str) -> Mapping[str, Any]:
    """Decode one worker response line and check it answers ``expected_id``."""
    try:
        payload = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise OutcomeParseError("Worker sent an undecodable response", detail=str(exc)) from exc
    if not isinstance(payload, dict):
        raise OutcomeParseError("Worker response is not a JSON object")
    if payload.get("id") != expected_id:
        raise OutcomeParseError(
            "Worker response does not match the submitted request",
            extra={"expected": expected_id, "received": payload.get("id")},
        )
    return payload


def encode_worker_line(payload: Mapping[str, Any]) -> bytes:
    return (json.dumps(payload, separators=(",", ":")) + "\n").encode("utf-8")


def split_packages(values: Sequence[str]) -> tuple[str, ...]:
    """Drop blanks and duplicates while keeping order."""
    seen: dict[str, None] = {}
    for value in values:
        value = value.strip()
        if value:
            seen.setdefault(value, None)
    return tuple(seen)


__all__ = [
    "CLI_VERSIONS",
    "CORE_PACKAGES",
    "EngineOutcome",
    "EngineRequest",
    "OutcomeIssue",
    "WARMUP_RESOURCE",
    "build_cli_arguments",
    "decode_worker_line",
    "encode_worker_line",
    "parse_outcome",
    "split_packages",
]
