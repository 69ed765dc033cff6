"""Structured logging for validation runs.

Key Responsibilities:
    - Render stdlib and structlog events as single-line JSON
    - Tag every event with the request in flight: its correlation id, resource
      type and FHIR version
    - Mask configured secret fields and collapse embedded FHIR resources to a
      ``ResourceType/id`` reference so clinical payloads stay out of the logs

Collaborators:
    - Upstream: :func:`~fhir_validation.service.configure_observability` and
      :class:`~fhir_validation.dispatcher.ValidationDispatcher`
    - Downstream: ``logging``, ``structlog`` and the OpenTelemetry SDK

Side Effects:
    - Replaces the root logging handlers and the global tracer provider

Thread Safety:
    - The request context lives in a ``ContextVar``; tasks created while it is
      bound inherit it
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from fhir_validation.config.settings import LoggingSettings, TelemetrySettings

REDACTED = "***"

_request_context: ContextVar[dict[str, str] | None] = ContextVar(
    "validation_request_context", default=None
)

_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


# ==============================================================================
# REQUEST CONTEXT
# ==============================================================================


def bind_validation_context(
    correlation_id: str,
    *,
    resource_type: str | None = None,
    fhir_version: str | None = None,
) -> Token[dict[str, str] | None]:
    """Attach the request identity to every event logged from this context."""
    context = {"correlation_id": correlation_id}
    if resource_type:
        context["resource_type"] = resource_type
    if fhir_version:
        context["fhir_version"] = fhir_version
    return _request_context.set(context)


def reset_validation_context(token: Token[dict[str, str] | None]) -> None:
    _request_context.reset(token)


@contextmanager
def validation_context(
    correlation_id: str,
    *,
    resource_type: str | None = None,
    fhir_version: str | None = None,
) -> Iterator[None]:
    token = bind_validation_context(
        correlation_id, resource_type=resource_type, fhir_version=fhir_version
    )
    try:
        yield
    finally:
        reset_validation_context(token)


def current_validation_context() -> Mapping[str, str]:
    return _request_context.get() or {}


def get_correlation_id() -> str | None:
    return current_validation_context().get("correlation_id")


# ==============================================================================
# REDACTION
# ==============================================================================


def resource_reference(resource: Mapping[str, Any]) -> str:
    """``Patient/p1`` for a resource with an id, ``Patient`` otherwise."""
    resource_type = str(resource.get("resourceType"))
    resource_id = resource.get("id")
    return f"{resource_type}/{resource_id}" if resource_id else resource_type


class Redactor:
    """Masks secret fields and replaces nested FHIR resources by reference."""

    def __init__(self, scrub_fields: Iterable[str] | None = None) -> None:
        self._fields = frozenset(field.lower() for field in scrub_fields or ())

    def __call__(self, key: str, value: object) -> object:
        if key.lower() in self._fields:
            return REDACTED
        return self._clean(value)

    def _clean(self, value: object) -> object:
        if isinstance(value, Mapping):
            if "resourceType" in value:
                return resource_reference(value)
            return {k: self(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._clean(item) for item in value]
        return value


# ==============================================================================
# RENDERING
# ==============================================================================


class JsonFormatter(logging.Formatter):
    """Render stdlib records with the same keys structlog events carry."""

    def __init__(self, redactor: Redactor | None = None) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")
        self._redactor = redactor or Redactor()

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "event": record.getMessage(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "timestamp": self.formatTime(record, self.datefmt),
        }
        payload.update(current_validation_context())
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                payload[key] = self._redactor(key, value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, default=str)


def request_context_processor(redactor: Redactor) -> structlog.types.Processor:
    """Structlog processor adding the request context and redacting values."""

    def processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in current_validation_context().items():
            event_dict.setdefault(key, value)
        for key in list(event_dict):
            if key != "event":
                event_dict[key] = redactor(key, event_dict[key])
        return event_dict

    return processor


def _level_value(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        value = logging.getLevelName(level.upper())
        if isinstance(value, int):
            return value
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    settings: LoggingSettings | None = None,
) -> None:
    """Route stdlib logging and structlog to JSON lines on stdout.

    ``settings`` wins over ``level`` when both are given. Handlers that pytest
    installed on the root logger are kept so captured output stays visible.
    """
    if settings is not None:
        level = settings.level
    redactor = Redactor(settings.scrub_fields if settings is not None else ())
    level_value = _level_value(level)
    formatter = JsonFormatter(redactor)

    stdout = logging.StreamHandler(sys.stdout)
    stdout.setFormatter(formatter)
    captured = [
        handler
        for handler in logging.getLogger().handlers
        if type(handler).__module__.startswith("_pytest.")
    ]
    for handler in captured:
        handler.setFormatter(formatter)
    logging.basicConfig(level=level_value, handlers=[*captured, stdout], force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            request_context_processor(redactor),
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


# ==============================================================================
# TRACING
# ==============================================================================


def configure_tracing(service_name: str, telemetry: TelemetrySettings) -> None:
    """Install a tracer provider sampling ``telemetry.sample_ratio`` of root spans.

    ``otlp`` exports over HTTP; any other exporter name prints spans to the
    console.
    """
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=ParentBased(TraceIdRatioBased(telemetry.sample_ratio)),
    )
    exporter: SpanExporter
    if telemetry.exporter.lower() == "otlp":
        exporter = OTLPSpanExporter(endpoint=telemetry.endpoint) if telemetry.endpoint else OTLPSpanExporter()
    else:
        exporter = ConsoleSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


__all__ = [
    "JsonFormatter",
    "REDACTED",
    "Redactor",
    "bind_validation_context",
    "configure_logging",
    "configure_tracing",
    "current_validation_context",
    "get_correlation_id",
    "request_context_processor",
    "reset_validation_context",
    "resource_reference",
    "validation_context",
]
