"""Tests for terminology orchestration: dedup, cache, routing and fallback."""

from __future__ import annotations

import asyncio

import pytest

from fhir_validation.cache.store import CacheStore, make_cache_key
from fhir_validation.config.settings import CircuitBreakerSettings
from fhir_validation.models.validation import Aspect, Severity, ValidationRequest
from fhir_validation.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from fhir_validation.resilience.retry import RetryConfig, RetryEngine
from fhir_validation.terminology.batch import BatchExecutor
from fhir_validation.terminology.client import CodeValidationResult
from fhir_validation.terminology.orchestrator import (
    INVALID_CODE,
    TERMINOLOGY_UNAVAILABLE,
    TerminologyOrchestrator,
)
from fhir_validation.terminology.router import TerminologyRouter, TerminologyServer
from fhir_validation.utils.errors import TerminologyServerError, UnsupportedVersionError

LOINC = "http://loinc.org"
PRIMARY = TerminologyServer(id="tx-a", url="https://a.example.org/r4", priority=1)
FALLBACK = TerminologyServer(id="tx-b", url="https://b.example.org/r4", priority=2)


async def _no_sleep(_: float) -> None:
    return None


class FakeClient:
    """Stands in for :class:`TerminologyClient`; behaviour is set per server."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.down: set[str] = set()
        self.invalid_codes: set[str] = set()
        self.failing_codes: dict[str, set[str]] = {}

    async def validate_code(self, server, key, *, display=None):
        self.calls.append((server.id, key))
        _, code, _ = key
        if server.id in self.down or code in self.failing_codes.get(server.id, set()):
            raise TerminologyServerError(f"{server.id} unreachable")
        if code in self.invalid_codes:
            return CodeValidationResult(valid=False, message=f"Unknown code {code}", server_id=server.id)
        return CodeValidationResult(valid=True, server_id=server.id)

    def calls_to(self, server_id: str) -> list[tuple]:
        return [key for sid, key in self.calls if sid == server_id]


def _observation(*codes: str) -> dict:
    return {
        "resourceType": "Observation",
        "component": [{"code": {"coding": [{"system": LOINC, "code": code}]}} for code in codes],
    }


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def breakers() -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(CircuitBreakerSettings(failure_threshold=1, cooldown_seconds=60))


@pytest.fixture
def cache() -> CacheStore[CodeValidationResult]:
    return CacheStore(ttl_seconds=3600)


def _orchestrator(client, breakers, cache, *, offline_mode: bool = False) -> TerminologyOrchestrator:
    executor = BatchExecutor(
        client,
        RetryEngine(sleep=_no_sleep),
        retry_config=RetryConfig(max_attempts=1, timeout_per_attempt=None),
    )
    return TerminologyOrchestrator(
        router=TerminologyRouter([FALLBACK, PRIMARY]),
        breakers=breakers,
        cache=cache,
        executor=executor,
        offline_mode=offline_mode,
    )


@pytest.mark.asyncio
async def test_duplicate_codes_are_validated_once(client, breakers, cache):
    client.invalid_codes.add("0000-0")
    orchestrator = _orchestrator(client, breakers, cache)

    issues = await orchestrator.validate_resource(_observation("0000-0", "0000-0", "0000-0"), "R4")

    assert len(client.calls) == 1
    assert [issue.path for issue in issues] == [
        "Observation.component[0].code.coding[0]",
        "Observation.component[1].code.coding[0]",
        "Observation.component[2].code.coding[0]",
    ]
    assert all(issue.code == INVALID_CODE and issue.severity is Severity.ERROR for issue in issues)
    assert issues[0].message == "Unknown code 0000-0"


@pytest.mark.asyncio
async def test_open_primary_routes_to_fallback_and_caches_under_it(client, breakers, cache):
    client.invalid_codes.add("bad")
    breakers.record_failure(PRIMARY.id)
    assert breakers.get_state(PRIMARY.id).state is CircuitState.OPEN
    orchestrator = _orchestrator(client, breakers, cache)

    issues = await orchestrator.validate_resource(_observation("8480-6", "bad"), "R4")

    assert client.calls_to(PRIMARY.id) == []
    assert len(client.calls_to(FALLBACK.id)) == 2
    assert len(issues) == 1
    assert issues[0].severity is Severity.ERROR
    cached = await cache.get(make_cache_key("8480-6", LOINC, None, FALLBACK.id, "R4"))
    assert cached is not None and cached.valid is True
    assert await cache.get(make_cache_key("8480-6", LOINC, None, PRIMARY.id, "R4")) is None


@pytest.mark.asyncio
async def test_all_servers_down_reports_one_warning(client, breakers, cache):
    client.down.update({PRIMARY.id, FALLBACK.id})
    orchestrator = _orchestrator(client, breakers, cache)

    issues = await orchestrator.validate_resource(_observation("1", "2", "3"), "R4")

    assert len(issues) == 1
    assert issues[0].severity is Severity.WARNING
    assert issues[0].code == TERMINOLOGY_UNAVAILABLE
    assert issues[0].aspect is Aspect.TERMINOLOGY
    assert breakers.get_state(PRIMARY.id).state is CircuitState.OPEN
    assert breakers.get_state(FALLBACK.id).state is CircuitState.OPEN
    assert orchestrator.get_statistics()["unresolved"] == 3


@pytest.mark.asyncio
async def test_partial_failure_moves_failed_codes_to_fallback(client, breakers, cache):
    client.failing_codes[PRIMARY.id] = {"2"}
    orchestrator = _orchestrator(client, breakers, cache)

    issues = await orchestrator.validate_resource(_observation("1", "2"), "R4")

    assert issues == []
    assert [key[1] for key in client.calls_to(FALLBACK.id)] == ["2"]
    assert breakers.get_state(PRIMARY.id).state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_cached_results_skip_the_network(client, breakers, cache):
    orchestrator = _orchestrator(client, breakers, cache)
    resource = _observation("8480-6")

    await orchestrator.validate_resource(resource, "R4")
    await orchestrator.validate_resource(resource, "4.0.1")

    assert len(client.calls) == 1
    assert orchestrator.get_statistics()["cache_hits"] == 1


@pytest.mark.asyncio
async def test_offline_mode_stores_non_expiring_entries(client, breakers, clock):
    cache: CacheStore[CodeValidationResult] = CacheStore(ttl_seconds=10, clock=clock)
    orchestrator = _orchestrator(client, breakers, cache, offline_mode=True)

    await orchestrator.validate_resource(_observation("8480-6"), "R4")
    clock.advance(10_000)
    entry = await cache.get_entry(make_cache_key("8480-6", LOINC, None, PRIMARY.id, "R4"))

    assert entry is not None
    assert entry.is_offline_entry is True


@pytest.mark.asyncio
async def test_resources_without_codes_need_no_server(client, breakers, cache):
    orchestrator = _orchestrator(client, breakers, cache)

    issues = await orchestrator.validate(
        ValidationRequest(resource={"resourceType": "Basic", "id": "b1"}, fhir_version="R4")
    )

    assert issues == []
    assert client.calls == []


@pytest.mark.asyncio
async def test_unsupported_version_is_rejected(client, breakers, cache):
    orchestrator = _orchestrator(client, breakers, cache)

    with pytest.raises(UnsupportedVersionError):
        await orchestrator.validate_resource(_observation("1"), "R3")


@pytest.mark.asyncio
async def test_concurrent_batches_share_in_flight_calls():
    started = asyncio.Event()
    release = asyncio.Event()
    calls = 0

    class SlowClient:
        async def validate_code(self, server, key, *, display=None):
            nonlocal calls
            calls += 1
            started.set()
            await release.wait()
            return CodeValidationResult(valid=True, server_id=server.id)

    executor = BatchExecutor(
        SlowClient(),
        RetryEngine(sleep=_no_sleep),
        retry_config=RetryConfig(max_attempts=1, timeout_per_attempt=None),
    )
    key = (LOINC, "8480-6", None)

    first = asyncio.create_task(executor.execute(PRIMARY, [key]))
    await started.wait()
    second = asyncio.create_task(executor.execute(PRIMARY, [key, key]))
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(first, second)

    assert calls == 1
    assert all(batch.results[key].valid for batch in results)
    assert executor.server_stats()[PRIMARY.id].calls == 1


@pytest.mark.asyncio
async def test_cancelled_half_open_call_does_not_lock_out_the_server(cache, clock):
    breakers = CircuitBreakerRegistry(
        CircuitBreakerSettings(failure_threshold=1, cooldown_seconds=30), clock=clock
    )
    called = asyncio.Event()
    release = asyncio.Event()

    class HangingClient:
        async def validate_code(self, server, key, *, display=None):
            called.set()
            await release.wait()
            return CodeValidationResult(valid=True, server_id=server.id)

    orchestrator = _orchestrator(HangingClient(), breakers, cache)
    breakers.record_failure(PRIMARY.id)
    clock.advance(31)

    task = asyncio.create_task(orchestrator.validate_resource(_observation("8480-6"), "R4"))
    await called.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breakers.get_state(PRIMARY.id).state is CircuitState.HALF_OPEN
    assert breakers.allow_request(PRIMARY.id) is True
    release.set()
    await asyncio.sleep(0)
