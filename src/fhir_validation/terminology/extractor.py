"""Extract coded values from FHIR resources.

Three shapes are recognised while walking a resource:

* CodeableConcept: an object with a ``coding`` array; each coding is
  reported at ``<path>.coding[i]``.
* Coding: an object with a string ``code`` and a ``system`` or ``display``.
* Primitive ``code`` fields whose system is implied by where they appear, for
  example ``Patient.gender`` or ``text.status``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================

CodeKey = tuple[str, str, str | None]


@dataclass(frozen=True, slots=True)
class ExtractedCode:
    path: str
    code: str
    system: str
    value_set: str | None = None
    display: str | None = None

    @property
    def key(self) -> CodeKey:
        return (self.system, self.code, self.value_set)


@dataclass(frozen=True, slots=True)
class CodeBinding:
    """System and value set implied for a field path."""

    system: str | None = None
    value_set: str | None = None


def _hl7(name: str) -> CodeBinding:
    return CodeBinding(
        system=f"http://hl7.org/fhir/{name}",
        value_set=f"http://hl7.org/fhir/ValueSet/{name}",
    )


def _value_set(name: str) -> CodeBinding:
    return CodeBinding(value_set=f"http://hl7.org/fhir/ValueSet/{name}")


UNIVERSAL_BINDINGS: dict[str, CodeBinding] = {
    "text.status": CodeBinding(system="http://hl7.org/fhir/narrative-status"),
    "identifier.use": CodeBinding(system="http://hl7.org/fhir/identifier-use"),
}

RESOURCE_BINDINGS: dict[str, dict[str, CodeBinding]] = {
    "Patient": {
        "gender": _hl7("administrative-gender"),
        "maritalStatus": _value_set("marital-status"),
        "name.use": _hl7("name-use"),
        "address.use": _hl7("address-use"),
        "telecom.use": CodeBinding(
            system="http://hl7.org/fhir/contact-point-use",
            value_set="http://hl7.org/fhir/ValueSet/contact-point-use",
        ),
        "telecom.system": CodeBinding(
            system="http://hl7.org/fhir/contact-point-system",
            value_set="http://hl7.org/fhir/ValueSet/contact-point-system",
        ),
        "contact.gender": _hl7("administrative-gender"),
    },
    "Observation": {
        "status": _hl7("observation-status"),
        "category": _value_set("observation-category"),
        "interpretation": _value_set("observation-interpretation"),
    },
    "Condition": {
        "clinicalStatus": _value_set("condition-clinical"),
        "verificationStatus": _value_set("condition-ver-status"),
    },
    "ServiceRequest": {
        "status": _hl7("request-status"),
        "intent": _hl7("request-intent"),
        "priority": _hl7("request-priority"),
    },
    "MedicationRequest": {
        "status": CodeBinding(
            system="http://hl7.org/fhir/CodeSystem/medicationrequest-status",
            value_set="http://hl7.org/fhir/ValueSet/medicationrequest-status",
        ),
        "intent": CodeBinding(
            system="http://hl7.org/fhir/CodeSystem/medicationrequest-intent",
            value_set="http://hl7.org/fhir/ValueSet/medicationrequest-intent",
        ),
        "priority": _hl7("request-priority"),
    },
    "Encounter": {
        "status": _hl7("encounter-status"),
        "location.status": _hl7("encounter-location-status"),
    },
    "Procedure": {
        "status": CodeBinding(
            system="http://hl7.org/fhir/event-status",
            value_set="http://hl7.org/fhir/ValueSet/event-status",
        ),
    },
}

_INDEX = re.compile(r"\[\d+\]")


# ==============================================================================
# TREE WALK
# ==============================================================================

Visitor = Callable[[str, Any], bool]


def walk_json(value: Any, visitor: Visitor, path: str = "") -> None:
    """Depth-first walk over JSON-like data.

    ``visitor(path, node)`` is called for every object and array element;
    returning ``False`` stops the walk from descending into that node.
    """
    if isinstance(value, Mapping):
        if not visitor(path, value):
            return
        for key, child in value.items():
            child_path = f"{path}.{key}" if path else str(key)
            if isinstance(child, list):
                for index, item in enumerate(child):
                    walk_json(item, visitor, f"{child_path}[{index}]")
            elif isinstance(child, Mapping):
                walk_json(child, visitor, child_path)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            walk_json(item, visitor, f"{path}[{index}]")


def _is_codeable_concept(node: Mapping[str, Any]) -> bool:
    return isinstance(node.get("coding"), list)


def _is_coding(node: Mapping[str, Any]) -> bool:
    return isinstance(node.get("code"), str) and ("system" in node or "display" in node)


def _suffix_match(normalized: str, bindings: Mapping[str, CodeBinding]) -> CodeBinding | None:
    if normalized in bindings:
        return bindings[normalized]
    parts = normalized.split(".")
    ordered = sorted(bindings.items(), key=lambda item: item[0].count("."), reverse=True)
    for configured, binding in ordered:
        configured_parts = configured.split(".")
        if len(parts) >= len(configured_parts) and parts[-len(configured_parts):] == configured_parts:
            return binding
    return None


# ==============================================================================
# EXTRACTOR
# ==============================================================================


class CodeExtractor:
    """Collect every coded value in a resource with its location."""

    def __init__(
        self,
        resource_bindings: Mapping[str, Mapping[str, CodeBinding]] | None = None,
        universal_bindings: Mapping[str, CodeBinding] | None = None,
    ) -> None:
        self._resource_bindings = resource_bindings or RESOURCE_BINDINGS
        self._universal_bindings = universal_bindings or UNIVERSAL_BINDINGS

    def binding_for(self, resource_type: str, relative_path: str) -> CodeBinding | None:
        normalized = _INDEX.sub("", relative_path)
        universal = self._universal_bindings.get(normalized)
        if universal is not None:
            return universal
        return _suffix_match(normalized, self._resource_bindings.get(resource_type, {}))

    def extract(self, resource: Mapping[str, Any]) -> list[ExtractedCode]:
        resource_type = str(resource.get("resourceType", "Resource"))
        codes: list[ExtractedCode] = []

        def relative(path: str) -> str:
            return path[len(resource_type) + 1:] if path.startswith(resource_type + ".") else path

        def visit(path: str, node: Any) -> bool:
            if not isinstance(node, Mapping):
                return True
            is_root = path == resource_type
            if not is_root and _is_codeable_concept(node):
                binding = self.binding_for(resource_type, relative(path))
                for index, coding in enumerate(node["coding"]):
                    if isinstance(coding, Mapping):
                        self._add_coding(codes, f"{path}.coding[{index}]", coding, binding)
                return False
            if not is_root and _is_coding(node):
                binding = self.binding_for(resource_type, relative(path))
                self._add_coding(codes, path, node, binding)
                return False
            for key, value in node.items():
                if isinstance(value, str) and key not in ("resourceType", "id"):
                    field_path = f"{path}.{key}"
                    binding = self.binding_for(resource_type, relative(field_path))
                    if binding is not None and binding.system:
                        codes.append(
                            ExtractedCode(
                                path=field_path,
                                code=value,
                                system=binding.system,
                                value_set=binding.value_set,
                            )
                        )
            return True

        walk_json(resource, visit, resource_type)
        return codes

    @staticmethod
    def _add_coding(
        codes: list[ExtractedCode],
        path: str,
        coding: Mapping[str, Any],
        binding: CodeBinding | None,
    ) -> None:
        code = coding.get("code")
        if not isinstance(code, str) or not code:
            return
        display = coding.get("display")
        codes.append(
            ExtractedCode(
                path=path,
                code=code,
                system=str(coding.get("system") or (binding.system if binding else "") or ""),
                value_set=binding.value_set if binding else None,
                display=display if isinstance(display, str) else None,
            )
        )


def group_by_key(codes: Iterable[ExtractedCode]) -> dict[CodeKey, list[ExtractedCode]]:
    """Group occurrences so each distinct code is validated once."""
    grouped: dict[CodeKey, list[ExtractedCode]] = {}
    for code in codes:
        grouped.setdefault(code.key, []).append(code)
    return grouped


__all__ = [
    "CodeBinding",
    "CodeExtractor",
    "CodeKey",
    "ExtractedCode",
    "RESOURCE_BINDINGS",
    "UNIVERSAL_BINDINGS",
    "group_by_key",
    "walk_json",
]
