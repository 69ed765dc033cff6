import asyncio

import httpx

from fhir_validation.utils.errors import (
    ErrorKind,
    FoundationError,
    InvalidInputError,
    OperationTimeoutError,
    ProblemDetail,
    RetryExhaustedError,
    TerminologyServerError,
    classify_error,
    is_retryable_error,
)


def test_problem_detail_drops_empty_fields():
    problem = ProblemDetail(title="Error", status=400, detail="Bad")
    payload = problem.model_dump()
    assert payload["title"] == "Error"
    assert "instance" not in payload
    assert "extra" not in payload


def test_foundation_error_wraps_problem():
    error = FoundationError("Oops", status=404)
    assert error.problem.status == 404
    assert str(error) == "Oops"


def test_infrastructure_errors_carry_kind():
    error = OperationTimeoutError("Operation timed out after 50ms")
    assert error.kind is ErrorKind.TIMEOUT
    assert error.retryable is True
    assert error.problem.extra["kind"] == "timeout"
    assert error.problem.type == "urn:fhir-validation:error:timeout"

    rejected = InvalidInputError("Resource has no resourceType")
    assert rejected.retryable is False


def test_retry_exhausted_keeps_every_error():
    errors = [TerminologyServerError("down"), OperationTimeoutError("slow")]
    exhausted = RetryExhaustedError("lookup failed after 2 attempts", attempts=2, all_errors=errors, elapsed_seconds=1.5)

    assert exhausted.all_errors == errors
    assert exhausted.last_error is errors[-1]
    assert exhausted.kind is ErrorKind.TIMEOUT
    assert exhausted.retryable is False


def test_classify_third_party_errors():
    request = httpx.Request("GET", "https://example.com")
    assert classify_error(asyncio.TimeoutError()) is ErrorKind.TIMEOUT
    assert classify_error(httpx.ConnectError("refused", request=request)) is ErrorKind.NETWORK
    status_error = httpx.HTTPStatusError(
        "gone", request=request, response=httpx.Response(404, request=request)
    )
    assert classify_error(status_error) is ErrorKind.NOT_FOUND
    assert classify_error(FileNotFoundError("java")) is ErrorKind.SPAWN_FAILURE
    assert classify_error(ValueError("nope")) is ErrorKind.UNKNOWN
    assert is_retryable_error(ConnectionResetError()) is True
    assert is_retryable_error(ValueError("nope")) is False
