"""Utility modules shared across the validation orchestration layer."""

from .errors import ErrorKind, FoundationError, ProblemDetail, ValidationInfrastructureError


__all__ = ["ErrorKind", "FoundationError", "ProblemDetail", "ValidationInfrastructureError"]
