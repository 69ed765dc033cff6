"""Tests for single-process engine runs."""

from __future__ import annotations

import pytest

from fhir_validation.engine.oneshot import OneShotRunner
from fhir_validation.engine.protocol import EngineRequest
from fhir_validation.utils.errors import EngineError, EngineUnavailableError, ErrorKind


def _request(resource: dict, **overrides) -> EngineRequest:
    return EngineRequest(
        request_id="one-1", resource=resource, fhir_version="R4", **overrides
    )


@pytest.mark.asyncio
async def test_run_parses_outcome_and_passes_arguments(cli_command):
    runner = OneShotRunner(cli_command, timeout=30)

    outcome = await runner.run(
        _request(
            {"resourceType": "Patient", "invalid": True},
            packages=("hl7.fhir.us.core#6.1.0",),
            profile="http://example.org/p",
        )
    )

    severities = [issue.severity for issue in outcome.issues]
    assert severities == ["information", "error"]
    assert outcome.issues[1].path == "Patient.foo"
    args = outcome.issues[0].diagnostics
    assert "-version 4.0" in args
    assert "-ig hl7.fhir.r4.core#4.0.1 -ig hl7.fhir.us.core#6.1.0" in args
    assert "-profile http://example.org/p" in args


@pytest.mark.asyncio
async def test_exit_status_above_one_is_a_crash(cli_command):
    runner = OneShotRunner(cli_command, timeout=30)

    with pytest.raises(EngineError) as excinfo:
        await runner.run(_request({"resourceType": "Patient", "crash": True}))

    assert excinfo.value.kind is ErrorKind.PROCESS_CRASH
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_missing_executable_is_unavailable():
    runner = OneShotRunner(["/nonexistent/validator-cli"], timeout=5)

    assert await runner.is_available() is False
    with pytest.raises(EngineUnavailableError) as excinfo:
        await runner.run(_request({"resourceType": "Patient"}))
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_is_available_runs_version_check(cli_command):
    assert await OneShotRunner(cli_command).is_available() is True
