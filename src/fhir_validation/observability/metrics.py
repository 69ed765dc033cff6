"""Prometheus metrics for validation orchestration.

Key Responsibilities:
    - Define counters and gauges for retries, breakers, the terminology cache,
      terminology calls, the engine process pool, and package downloads
    - Provide small helpers so call sites do not repeat label plumbing

Side Effects:
    - Registers collectors with the default Prometheus registry on import
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ==============================================================================
# METRIC DEFINITIONS
# ==============================================================================

RETRY_ATTEMPTS_TOTAL = Counter(
    "fhir_validation_retry_attempts_total",
    "Attempts made by the retry engine",
    ["operation", "outcome"],
)

CIRCUIT_BREAKER_STATE = Gauge(
    "fhir_validation_circuit_breaker_state",
    "Breaker state per dependency (0=closed, 1=half_open, 2=open)",
    ["dependency"],
)

CIRCUIT_BREAKER_TRANSITIONS_TOTAL = Counter(
    "fhir_validation_circuit_breaker_transitions_total",
    "Breaker state transitions",
    ["dependency", "from_state", "to_state"],
)

TERMINOLOGY_CACHE_LOOKUPS_TOTAL = Counter(
    "fhir_validation_terminology_cache_lookups_total",
    "Terminology cache lookups",
    ["result"],
)

TERMINOLOGY_CALLS_TOTAL = Counter(
    "fhir_validation_terminology_calls_total",
    "Terminology validate-code calls per server",
    ["server", "outcome"],
)

TERMINOLOGY_CALL_DURATION_SECONDS = Histogram(
    "fhir_validation_terminology_call_duration_seconds",
    "Duration of terminology validate-code calls",
    ["server"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

POOL_QUEUE_DEPTH = Gauge(
    "fhir_validation_pool_queue_depth",
    "Submissions waiting for an idle engine worker",
)

POOL_SUBMISSIONS_TOTAL = Counter(
    "fhir_validation_pool_submissions_total",
    "Submissions handled by the engine process pool",
    ["outcome"],
)

POOL_WORKER_RESTARTS_TOTAL = Counter(
    "fhir_validation_pool_worker_restarts_total",
    "Engine workers replaced after a crash, timeout, or recycle",
    ["reason"],
)

PACKAGE_DOWNLOADS_TOTAL = Counter(
    "fhir_validation_package_downloads_total",
    "Package downloads by outcome",
    ["outcome"],
)

_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


# ==============================================================================
# HELPERS
# ==============================================================================


def set_circuit_state(dependency: str, previous: str, state: str) -> None:
    """Record a breaker transition and publish the new state."""
    CIRCUIT_BREAKER_STATE.labels(dependency=dependency).set(_STATE_VALUES.get(state, 0))
    CIRCUIT_BREAKER_TRANSITIONS_TOTAL.labels(
        dependency=dependency, from_state=previous, to_state=state
    ).inc()


def record_terminology_call(server: str, outcome: str, duration_seconds: float) -> None:
    TERMINOLOGY_CALLS_TOTAL.labels(server=server, outcome=outcome).inc()
    TERMINOLOGY_CALL_DURATION_SECONDS.labels(server=server).observe(duration_seconds)


__all__ = [
    "CIRCUIT_BREAKER_STATE",
    "CIRCUIT_BREAKER_TRANSITIONS_TOTAL",
    "PACKAGE_DOWNLOADS_TOTAL",
    "POOL_QUEUE_DEPTH",
    "POOL_SUBMISSIONS_TOTAL",
    "POOL_WORKER_RESTARTS_TOTAL",
    "RETRY_ATTEMPTS_TOTAL",
    "TERMINOLOGY_CACHE_LOOKUPS_TOTAL",
    "TERMINOLOGY_CALLS_TOTAL",
    "TERMINOLOGY_CALL_DURATION_SECONDS",
    "record_terminology_call",
    "set_circuit_state",
]
