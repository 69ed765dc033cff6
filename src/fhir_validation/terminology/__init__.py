"""Batched, cached, breaker-guarded terminology validation."""

from .batch import BatchExecutor, BatchResult
from .client import CodeValidationResult, TerminologyClient
from .extractor import CodeExtractor, ExtractedCode
from .orchestrator import TerminologyOrchestrator
from .router import TerminologyRouter, TerminologyServer

__all__ = [
    "BatchExecutor",
    "BatchResult",
    "CodeExtractor",
    "CodeValidationResult",
    "ExtractedCode",
    "TerminologyClient",
    "TerminologyOrchestrator",
    "TerminologyRouter",
    "TerminologyServer",
]
