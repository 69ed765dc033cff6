"""Issue and request models shared by every validator.

Issues are immutable once created. Validators return lists of them and the
dispatcher merges those lists without rewriting individual entries.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from fhir_validation.utils.errors import UnsupportedVersionError


class ValidationBaseModel(BaseModel):
    """Base model that enforces strict, immutable validation models."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class Aspect(str, Enum):
    """Validation dimension an issue belongs to."""

    STRUCTURAL = "structural"
    PROFILE = "profile"
    TERMINOLOGY = "terminology"
    REFERENCE = "reference"
    BUSINESS_RULE = "businessRule"
    METADATA = "metadata"


ASPECT_ORDER: dict[Aspect, int] = {aspect: index for index, aspect in enumerate(Aspect)}


class Severity(str, Enum):
    """Severity of a validation issue."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationIssue(ValidationBaseModel):
    """A single finding produced by a validator."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    aspect: Aspect
    severity: Severity
    code: str
    message: str
    path: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def synthetic(
        cls,
        aspect: Aspect,
        message: str,
        *,
        code: str = "validator-unavailable",
        path: str = "",
    ) -> ValidationIssue:
        """Low-severity issue reporting that a dependency could not be reached."""
        return cls(
            aspect=aspect,
            severity=Severity.WARNING,
            code=code,
            message=message,
            path=path,
        )


SUPPORTED_FHIR_VERSIONS: tuple[str, ...] = ("R4", "R5", "R6")

_VERSION_PREFIXES = {"4": "R4", "5": "R5", "6": "R6"}
_NUMERIC_VERSION = re.compile(r"^(\d+)(\.\d+)*(-[\w.]+)?$")


def normalize_fhir_version(value: str) -> str:
    """Map ``R4``, ``r4``, ``4.0.1`` and similar spellings to ``R4``/``R5``/``R6``.

    Raises:
        UnsupportedVersionError: If the value does not name a supported release.
    """
    candidate = value.strip().upper()
    if candidate in SUPPORTED_FHIR_VERSIONS:
        return candidate
    match = _NUMERIC_VERSION.match(candidate)
    if match and match.group(1) in _VERSION_PREFIXES:
        return _VERSION_PREFIXES[match.group(1)]
    raise UnsupportedVersionError(
        f"Unsupported FHIR version: {value}",
        extra={"supported": list(SUPPORTED_FHIR_VERSIONS)},
    )


class ValidationRequest(ValidationBaseModel):
    """A record to validate together with its validation options."""

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    resource: dict[str, Any]
    fhir_version: str = "R4"
    profile: str | None = None
    packages: tuple[str, ...] = ()
    aspects: frozenset[Aspect] | None = Field(
        default=None, description="Restrict validation to these aspects; all when unset"
    )

    @property
    def resource_type(self) -> str:
        return str(self.resource.get("resourceType", "Resource"))

    def wants(self, aspect: Aspect) -> bool:
        return self.aspects is None or aspect in self.aspects


__all__ = [
    "ASPECT_ORDER",
    "Aspect",
    "SUPPORTED_FHIR_VERSIONS",
    "Severity",
    "ValidationIssue",
    "ValidationRequest",
    "normalize_fhir_version",
]
