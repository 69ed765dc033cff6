"""Tests for engine request encoding and outcome parsing."""

from __future__ import annotations

import json

import pytest

from fhir_validation.engine.protocol import (
    EngineRequest,
    build_cli_arguments,
    decode_worker_line,
    encode_worker_line,
    parse_outcome,
    split_packages,
)
from fhir_validation.utils.errors import ErrorKind, OutcomeParseError

OUTCOME = {
    "resourceType": "OperationOutcome",
    "issue": [
        {
            "severity": "error",
            "code": "structure",
            "diagnostics": "Unknown element",
            "location": ["Patient.foo"],
            "expression": ["Patient.foo[0]"],
        },
        {"severity": "warning", "code": "business-rule", "details": {"text": "Check name"}},
    ],
}


def _request(**overrides) -> EngineRequest:
    values = {"request_id": "req-1", "resource": {"resourceType": "Patient"}, "fhir_version": "R4"}
    values.update(overrides)
    return EngineRequest(**values)


def test_parse_outcome_skips_surrounding_log_text():
    stdout = "Loading packages...\n" + json.dumps(OUTCOME, indent=2) + "\nDone. Times: 3s\n"

    outcome = parse_outcome(stdout)

    assert len(outcome.issues) == 2
    assert outcome.issues[0].path == "Patient.foo[0]"
    assert outcome.issues[1].diagnostics == "Check name"
    assert outcome.issues[1].path == ""


def test_parse_outcome_ignores_unrelated_json_objects():
    stdout = '{"progress": 50}\n' + json.dumps(OUTCOME)
    assert len(parse_outcome(stdout).issues) == 2


def test_parse_outcome_without_document_and_clean_stderr_is_empty():
    assert parse_outcome("Validation complete", "").issues == ()


def test_parse_outcome_without_document_and_error_stderr_raises():
    with pytest.raises(OutcomeParseError) as excinfo:
        parse_outcome("", "java.lang.NullPointerException at ...")
    assert excinfo.value.kind is ErrorKind.UNPARSEABLE_OUTPUT
    assert excinfo.value.retryable is False


def test_cli_arguments_include_core_and_extra_packages():
    request = _request(
        fhir_version="R5",
        profile="http://example.org/StructureDefinition/my-patient",
        packages=("hl7.fhir.us.core#6.1.0",),
        terminology_server="https://tx.fhir.org/r5",
    )

    args = build_cli_arguments(request, "/tmp/resource.json", cache_directory="/tmp/cache")

    assert args == [
        "/tmp/resource.json",
        "-version",
        "5.0",
        "-output",
        "json",
        "-locale",
        "en",
        "-ig",
        "hl7.fhir.r5.core#5.0.0",
        "-ig",
        "hl7.fhir.us.core#6.1.0",
        "-profile",
        "http://example.org/StructureDefinition/my-patient",
        "-tx",
        "https://tx.fhir.org/r5",
        "-txCache",
        "/tmp/cache",
    ]


def test_cli_arguments_disable_terminology_without_server():
    args = build_cli_arguments(_request(), "/tmp/r.json")
    assert args[-2:] == ["-tx", "n/a"]


def test_worker_line_round_trip_checks_request_id():
    line = encode_worker_line({"id": "req-1", "outcome": OUTCOME})
    assert line.endswith(b"\n")
    assert decode_worker_line(line, "req-1")["outcome"] == OUTCOME
    with pytest.raises(OutcomeParseError):
        decode_worker_line(line, "req-2")
    with pytest.raises(OutcomeParseError):
        decode_worker_line(b"not json\n", "req-1")


def test_wire_format_names_version_and_core_package():
    wire = _request(fhir_version="R6").to_wire()
    assert wire["fhirVersion"] == "6.0"
    assert wire["corePackage"] == "hl7.fhir.r6.core#6.0.0-ballot2"


def test_split_packages_drops_blanks_and_duplicates():
    assert split_packages(["a#1", " ", "b#2", "a#1"]) == ("a#1", "b#2")
