"""Tests for the pooled/one-shot engine validator."""

from __future__ import annotations

import pytest

from fhir_validation.engine.oneshot import OneShotRunner
from fhir_validation.engine.pool import ProcessPool
from fhir_validation.engine.validator import EngineValidator
from fhir_validation.models.validation import Aspect, Severity, ValidationRequest
from fhir_validation.resilience.retry import RetryConfig, RetryEngine
from fhir_validation.utils.errors import UnsupportedVersionError


async def _no_sleep(_: float) -> None:
    return None


def _validator(cli_command, pool=None) -> EngineValidator:
    return EngineValidator(
        oneshot=OneShotRunner(cli_command, timeout=30),
        retry_engine=RetryEngine(sleep=_no_sleep),
        retry_config=RetryConfig(max_attempts=2, use_jitter=False, timeout_per_attempt=30),
        pool=pool,
    )


@pytest.mark.asyncio
async def test_without_pool_uses_oneshot_and_maps_severities(cli_command):
    validator = _validator(cli_command)
    request = ValidationRequest(resource={"resourceType": "Patient", "invalid": True})

    issues = await validator.validate(request)

    assert [issue.severity for issue in issues] == [Severity.INFO, Severity.ERROR]
    assert all(issue.aspect is Aspect.STRUCTURAL for issue in issues)
    assert issues[0].path == "Patient"
    assert issues[1].path == "Patient.foo"
    assert issues[1].code == "structure"


@pytest.mark.asyncio
async def test_pool_that_never_started_falls_back_to_oneshot(cli_command, worker_command):
    pool = ProcessPool(worker_command, size=1)
    validator = _validator(cli_command, pool=pool)

    issues = await validator.validate(
        ValidationRequest(resource={"resourceType": "Patient"}, fhir_version="4.0.1")
    )

    assert issues[0].message.startswith("args=")


@pytest.mark.asyncio
async def test_running_pool_serves_validation(cli_command, worker_command):
    async with ProcessPool(worker_command, size=1, warmup_timeout=20) as pool:
        validator = _validator(cli_command, pool=pool)

        issues = await validator.validate(
            ValidationRequest(resource={"resourceType": "Observation", "invalid": True})
        )

    assert issues[0].message.startswith("pid=")
    assert issues[1].path == "Observation.foo"


@pytest.mark.asyncio
async def test_pool_crash_is_retried_on_a_fresh_worker(cli_command, worker_command):
    async with ProcessPool(worker_command, size=2, warmup_timeout=20) as pool:
        validator = _validator(cli_command, pool=pool)
        calls = {"count": 0}
        submit = pool.submit

        async def flaky_submit(request, *, timeout=None):
            calls["count"] += 1
            if calls["count"] == 1:
                request = request.model_copy(
                    update={"resource": {**request.resource, "crash": True}}
                )
            return await submit(request, timeout=timeout)

        pool.submit = flaky_submit  # type: ignore[method-assign]
        issues = await validator.validate(ValidationRequest(resource={"resourceType": "Patient"}))

    assert calls["count"] == 2
    assert issues[0].message.startswith("pid=")


@pytest.mark.asyncio
async def test_unsupported_version_is_rejected(cli_command):
    with pytest.raises(UnsupportedVersionError):
        await _validator(cli_command).validate(
            ValidationRequest(resource={"resourceType": "Patient"}, fhir_version="STU3")
        )
