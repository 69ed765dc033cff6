"""External validation engine: warm process pool and one-shot fallback."""

from .oneshot import OneShotRunner
from .pool import PoolStats, PoolWorker, ProcessPool, WorkerState
from .protocol import EngineOutcome, EngineRequest, OutcomeIssue, parse_outcome
from .validator import EngineValidator

__all__ = [
    "EngineOutcome",
    "EngineRequest",
    "EngineValidator",
    "OneShotRunner",
    "OutcomeIssue",
    "PoolStats",
    "PoolWorker",
    "ProcessPool",
    "WorkerState",
    "parse_outcome",
]
