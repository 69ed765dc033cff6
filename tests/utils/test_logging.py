import logging

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from fhir_validation.config.settings import LoggingSettings, TelemetrySettings
from fhir_validation.utils.logging import (
    REDACTED,
    Redactor,
    configure_logging,
    configure_tracing,
    current_validation_context,
    get_correlation_id,
    request_context_processor,
    resource_reference,
    validation_context,
)


def test_configure_tracing_console_exporter():
    configure_tracing("fhir-validation", TelemetrySettings(exporter="console"))
    assert isinstance(trace.get_tracer_provider(), TracerProvider)


def test_stdlib_records_carry_request_context_and_masks(caplog):
    configure_logging(settings=LoggingSettings(scrub_fields=["token"]))
    logger = logging.getLogger("fhir_validation.test")

    with validation_context("corr-123", resource_type="Patient", fhir_version="R4"):
        logger.info(
            "validated",
            extra={"token": "super-secret", "resource": {"resourceType": "Patient", "id": "p1"}},
        )

    assert '"correlation_id": "corr-123"' in caplog.text
    assert '"resource_type": "Patient"' in caplog.text
    assert '"fhir_version": "R4"' in caplog.text
    assert '"token": "***"' in caplog.text
    assert '"resource": "Patient/p1"' in caplog.text
    assert get_correlation_id() is None


def test_structlog_processor_adds_context_and_redacts():
    processor = request_context_processor(Redactor(["authorization"]))

    with validation_context("req-7", fhir_version="R5"):
        event = processor(
            None,
            "info",
            {
                "event": "terminology.call",
                "headers": {"Authorization": "Bearer abc", "Accept": "application/fhir+json"},
                "server": "tx-a",
            },
        )

    assert event["correlation_id"] == "req-7"
    assert event["fhir_version"] == "R5"
    assert "resource_type" not in event
    assert event["headers"] == {"Authorization": REDACTED, "Accept": "application/fhir+json"}
    assert event["server"] == "tx-a"


def test_redactor_collapses_resources_inside_collections():
    redactor = Redactor()
    bundle = [{"resourceType": "Observation", "id": "bp"}, {"resourceType": "Patient"}, "raw"]

    assert redactor("entries", bundle) == ["Observation/bp", "Patient", "raw"]
    assert resource_reference({"resourceType": "Encounter", "id": "e1"}) == "Encounter/e1"


def test_nested_contexts_restore_the_outer_request():
    with validation_context("outer", resource_type="Patient"):
        with validation_context("inner"):
            assert current_validation_context() == {"correlation_id": "inner"}
        assert get_correlation_id() == "outer"
    assert current_validation_context() == {}
