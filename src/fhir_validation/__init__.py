"""Resilient orchestration core for FHIR resource validation."""

from .dispatcher import ValidationDispatcher
from .models import Aspect, Severity, ValidationIssue, ValidationRequest
from .service import ValidationService, build_validation_service

__all__ = [
    "Aspect",
    "Severity",
    "ValidationDispatcher",
    "ValidationIssue",
    "ValidationRequest",
    "ValidationService",
    "build_validation_service",
]
