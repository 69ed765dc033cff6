"""Observability helpers for the validation orchestration layer."""
