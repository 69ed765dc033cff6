"""Problem detail helpers and tagged infrastructure errors.

Key Responsibilities:
    - Provide RFC 7807 compliant data structures used when reporting failures
    - Supply a base exception that carries problem details
    - Tag every infrastructure failure with an explicit :class:`ErrorKind` so
      retry and fallback decisions never depend on message text

Collaborators:
    - Upstream: Retry engine, process pool, terminology and package clients
      raise these errors
    - Downstream: The dispatcher converts them into synthetic warning issues

Side Effects:
    - None; helpers are pure data containers

Thread Safety:
    - Thread-safe; exceptions are not mutated after construction

Performance Characteristics:
    - O(1) operations that only touch small dictionaries
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Mapping

import httpx

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================


@dataclass(slots=True)
class ProblemDetail:
    """Lightweight problem details object compliant with RFC 7807."""

    title: str
    status: int
    detail: str | None = None
    type: str = "about:blank"
    instance: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def model_dump(self) -> dict[str, Any]:
        """Return a dictionary representation with optional fields dropped."""
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        if not payload.get("extra"):
            payload.pop("extra", None)
        return payload


class ErrorKind(str, Enum):
    """Classification attached to every infrastructure failure."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    PROCESS_CRASH = "process_crash"
    POOL_SATURATED = "pool_saturated"
    SPAWN_FAILURE = "spawn_failure"
    INVALID_INPUT = "invalid_input"
    UNPARSEABLE_OUTPUT = "unparseable_output"
    UNSUPPORTED_VERSION = "unsupported_version"
    CIRCUIT_OPEN = "circuit_open"
    NOT_FOUND = "not_found"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset(
    {ErrorKind.TIMEOUT, ErrorKind.NETWORK, ErrorKind.PROCESS_CRASH}
)


# ==============================================================================
# EXCEPTIONS
# ==============================================================================


class FoundationError(RuntimeError):
    """Base exception that carries a :class:`ProblemDetail` instance."""

    def __init__(
        self,
        message: str,
        *,
        status: int = 500,
        detail: str | None = None,
        type: str = "about:blank",
        instance: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialise the exception with structured problem detail attributes.

        Args:
            message: Human readable error summary.
            status: HTTP-like status code associated with the problem.
            detail: Optional detailed description of the failure.
            type: Problem type URI, defaults to ``about:blank``.
            instance: Optional URI reference identifying the specific occurrence.
            extra: Additional attributes included in the serialized payload.
        """
        super().__init__(message)
        self.problem = ProblemDetail(
            title=message,
            status=status,
            detail=detail,
            type=type,
            instance=instance,
            extra=extra or {},
        )


class ValidationInfrastructureError(FoundationError):
    """Failure of a validation dependency rather than of the validated record."""

    default_kind: ErrorKind = ErrorKind.UNKNOWN
    default_status: int = 503

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        retryable: bool | None = None,
        detail: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        resolved = kind or self.default_kind
        super().__init__(
            message,
            status=self.default_status,
            detail=detail,
            type=f"urn:fhir-validation:error:{resolved.value}",
            extra={"kind": resolved.value, **(extra or {})},
        )
        self.kind = resolved
        self.retryable = resolved.retryable if retryable is None else retryable


class OperationTimeoutError(ValidationInfrastructureError):
    """Raised when a single attempt exceeds its time budget."""

    default_kind = ErrorKind.TIMEOUT
    default_status = 504


class EngineError(ValidationInfrastructureError):
    """External validation engine failure."""

    default_kind = ErrorKind.PROCESS_CRASH


class WorkerCrashedError(EngineError):
    """A pooled worker exited or broke the stdio protocol mid-submission."""

    default_kind = ErrorKind.PROCESS_CRASH


class EngineUnavailableError(EngineError):
    """The engine runtime could not be started."""

    default_kind = ErrorKind.SPAWN_FAILURE


class PoolSaturatedError(EngineError):
    """The pool queue is full; submissions fail fast."""

    default_kind = ErrorKind.POOL_SATURATED
    default_status = 429


class OutcomeParseError(EngineError):
    """The engine produced output that does not contain a usable outcome."""

    default_kind = ErrorKind.UNPARSEABLE_OUTPUT
    default_status = 502


class InvalidInputError(ValidationInfrastructureError):
    """The record or request cannot be handed to a validation engine."""

    default_kind = ErrorKind.INVALID_INPUT
    default_status = 400


class UnsupportedVersionError(InvalidInputError):
    """The requested FHIR version is not supported."""

    default_kind = ErrorKind.UNSUPPORTED_VERSION


class CircuitOpenError(ValidationInfrastructureError):
    """Raised when a breaker rejects a call to its dependency."""

    default_kind = ErrorKind.CIRCUIT_OPEN


class TerminologyServerError(ValidationInfrastructureError):
    """Terminology server call failed."""

    default_kind = ErrorKind.NETWORK
    default_status = 502


class PackageResolutionError(ValidationInfrastructureError):
    """Package manifest or archive could not be obtained."""

    default_kind = ErrorKind.NOT_FOUND
    default_status = 404


class RetryExhaustedError(ValidationInfrastructureError):
    """Every attempt of a retried operation failed.

    ``all_errors`` holds one entry per attempt in the order they happened.
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        all_errors: Sequence[BaseException],
        elapsed_seconds: float,
    ) -> None:
        last_error = all_errors[-1] if all_errors else None
        kind = last_error.kind if isinstance(last_error, ValidationInfrastructureError) else None
        super().__init__(
            message,
            kind=kind or ErrorKind.UNKNOWN,
            retryable=False,
            detail=str(last_error) if last_error is not None else None,
            extra={"attempts": attempts, "elapsed_seconds": round(elapsed_seconds, 3)},
        )
        self.attempts = attempts
        self.all_errors = list(all_errors)
        self.last_error = last_error
        self.elapsed_seconds = elapsed_seconds


# ==============================================================================
# CLASSIFICATION
# ==============================================================================


def classify_error(exc: BaseException) -> ErrorKind:
    """Return the :class:`ErrorKind` describing ``exc``."""
    if isinstance(exc, ValidationInfrastructureError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return ErrorKind.NETWORK
        if status == 404:
            return ErrorKind.NOT_FOUND
        return ErrorKind.INVALID_INPUT
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ErrorKind.NETWORK
    if isinstance(exc, (FileNotFoundError, PermissionError)):
        return ErrorKind.SPAWN_FAILURE
    return ErrorKind.UNKNOWN


def is_retryable_error(exc: BaseException) -> bool:
    """Default retry predicate: transient network, timeout, and crash failures."""
    if isinstance(exc, ValidationInfrastructureError):
        return exc.retryable
    return classify_error(exc).retryable


__all__ = [
    "CircuitOpenError",
    "EngineError",
    "EngineUnavailableError",
    "ErrorKind",
    "FoundationError",
    "InvalidInputError",
    "OperationTimeoutError",
    "OutcomeParseError",
    "PackageResolutionError",
    "PoolSaturatedError",
    "ProblemDetail",
    "RetryExhaustedError",
    "TerminologyServerError",
    "UnsupportedVersionError",
    "ValidationInfrastructureError",
    "WorkerCrashedError",
    "classify_error",
    "is_retryable_error",
]
