"""Warm worker pool for the external validation engine.

Key Responsibilities:
    - Keep a fixed number of long-lived engine processes warmed up
    - Hand each submission to the least recently used idle worker
    - Queue submissions up to ``max_queue_depth`` and fail fast beyond it
    - Replace workers that crash, time out, or reach their submission limit

Collaborators:
    - Upstream: :class:`~fhir_validation.engine.validator.EngineValidator`
      wraps :meth:`ProcessPool.submit` with the retry engine
    - Downstream: ``asyncio`` subprocesses speaking JSON lines on stdio

Side Effects:
    - Spawns and terminates child processes
    - Updates Prometheus pool metrics

Thread Safety:
    - Must be used from a single event loop; worker state changes happen under
      an ``asyncio.Condition``
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

import structlog

from fhir_validation.config.settings import ProcessPoolSettings
from fhir_validation.observability.metrics import (
    POOL_QUEUE_DEPTH,
    POOL_SUBMISSIONS_TOTAL,
    POOL_WORKER_RESTARTS_TOTAL,
)
from fhir_validation.utils.errors import (
    EngineError,
    EngineUnavailableError,
    ErrorKind,
    OperationTimeoutError,
    OutcomeParseError,
    PoolSaturatedError,
    WorkerCrashedError,
)

from .protocol import (
    WARMUP_RESOURCE,
    EngineOutcome,
    EngineRequest,
    decode_worker_line,
    encode_worker_line,
)

logger = structlog.get_logger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024
TERMINATE_GRACE_SECONDS = 5.0


class WorkerState(str, Enum):
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


@dataclass(slots=True)
class PoolWorker:
    """A single engine process owned by the pool."""

    id: str
    process: asyncio.subprocess.Process | None = None
    state: WorkerState = WorkerState.STARTING
    last_used_at: float = 0.0
    started_at: float = field(default_factory=time.monotonic)
    submissions: int = 0
    failures: int = 0


@dataclass(frozen=True, slots=True)
class PoolStats:
    pool_size: int
    idle_count: int
    busy_count: int
    starting_count: int
    dead_count: int
    queued_submissions: int
    total_submissions: int
    total_failures: int
    avg_submission_seconds: float


async def _terminate(process: asyncio.subprocess.Process, grace: float = TERMINATE_GRACE_SECONDS) -> None:
    if process.returncode is not None:
        return
    if process.stdin is not None and not process.stdin.is_closing():
        process.stdin.close()
    try:
        await asyncio.wait_for(process.wait(), grace)
        return
    except asyncio.TimeoutError:
        pass
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


class ProcessPool:
    """Fixed-size pool of warm engine workers."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        size: int = 3,
        max_queue_depth: int = 16,
        submission_timeout: float = 60.0,
        warmup_timeout: float = 120.0,
        max_worker_submissions: int = 1000,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("worker command must not be empty")
        self._command = list(command)
        self._size = size
        self._max_queue_depth = max_queue_depth
        self._submission_timeout = submission_timeout
        self._warmup_timeout = warmup_timeout
        self._max_worker_submissions = max_worker_submissions
        self._env = dict(env) if env is not None else None
        self._workers: list[PoolWorker] = []
        self._condition = asyncio.Condition()
        self._waiting = 0
        self._closed = False
        self._started = False
        self._replacements: set[asyncio.Task[None]] = set()
        self._total_submissions = 0
        self._total_failures = 0
        self._total_seconds = 0.0
        self._completed = 0

    @classmethod
    def from_settings(cls, settings: ProcessPoolSettings) -> ProcessPool:
        return cls(
            settings.worker_command,
            size=settings.size,
            max_queue_depth=settings.max_queue_depth,
            submission_timeout=settings.submission_timeout_seconds,
            warmup_timeout=settings.warmup_timeout_seconds,
            max_worker_submissions=settings.max_worker_submissions,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Spawn and warm up every worker.

        Raises:
            EngineUnavailableError: If no worker could be started.
        """
        if self._started:
            return
        self._workers = [PoolWorker(id=f"worker-{index}") for index in range(self._size)]
        results = await asyncio.gather(
            *(self._launch(worker) for worker in self._workers), return_exceptions=True
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        if len(failures) == len(results):
            await self.shutdown()
            first = failures[0]
            if isinstance(first, EngineUnavailableError):
                raise first
            raise EngineUnavailableError(
                "No engine worker could be started", detail=repr(first)
            ) from first
        for failure in failures:
            logger.warning("pool.worker.start_failed", error=repr(failure))
        self._started = True
        logger.info(
            "pool.started",
            size=self._size,
            live=len(results) - len(failures),
            command=self._command[0],
        )

    async def shutdown(self) -> None:
        """Reject waiting submissions and terminate every worker."""
        async with self._condition:
            self._closed = True
            self._condition.notify_all()
        for task in list(self._replacements):
            task.cancel()
        if self._replacements:
            await asyncio.gather(*self._replacements, return_exceptions=True)
        processes = [worker.process for worker in self._workers if worker.process is not None]
        await asyncio.gather(*(_terminate(process) for process in processes))
        for worker in self._workers:
            worker.state = WorkerState.DEAD
        POOL_QUEUE_DEPTH.set(0)
        logger.info("pool.shutdown", workers=len(processes))

    async def __aenter__(self) -> ProcessPool:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    @property
    def available(self) -> bool:
        return self._started and not self._closed

    # ------------------------------------------------------------------
    # Worker management
    # ------------------------------------------------------------------
    async def _spawn(self) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=self._env,
                limit=STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise EngineUnavailableError(
                f"Cannot start engine worker: {self._command[0]}", detail=str(exc)
            ) from exc

    async def _launch(self, worker: PoolWorker) -> None:
        worker.state = WorkerState.STARTING
        worker.id = f"{worker.id.split(':')[0]}:{uuid.uuid4().hex[:8]}"
        try:
            process = await self._spawn()
        except EngineUnavailableError:
            worker.state = WorkerState.DEAD
            raise
        worker.process = process
        warmup = EngineRequest(
            request_id=f"warmup-{worker.id}",
            resource=WARMUP_RESOURCE,
            fhir_version="R4",
        )
        try:
            await asyncio.wait_for(self._exchange(worker, warmup), self._warmup_timeout)
        except (asyncio.TimeoutError, EngineError) as exc:
            await _terminate(process)
            worker.state = WorkerState.DEAD
            raise EngineUnavailableError(
                f"Engine worker {worker.id} failed to warm up", detail=repr(exc)
            ) from exc
        worker.submissions = 0
        worker.failures = 0
        worker.started_at = time.monotonic()
        worker.last_used_at = time.monotonic()
        async with self._condition:
            worker.state = WorkerState.IDLE
            self._condition.notify()
        logger.debug("pool.worker.ready", worker_id=worker.id, pid=process.pid)

    async def _replace(
        self, worker: PoolWorker, previous: asyncio.subprocess.Process | None, grace: float
    ) -> None:
        if previous is not None:
            await _terminate(previous, grace)
        if self._closed:
            return
        try:
            await self._launch(worker)
        except EngineError as exc:
            logger.error("pool.worker.replacement_failed", worker_id=worker.id, error=repr(exc))
            async with self._condition:
                self._replacements.discard(asyncio.current_task())
                self._condition.notify_all()

    async def _retire(self, worker: PoolWorker, reason: str) -> None:
        async with self._condition:
            worker.state = WorkerState.DEAD
            previous, worker.process = worker.process, None
            logger.warning(
                "pool.worker.restarting",
                worker_id=worker.id,
                reason=reason,
                submissions=worker.submissions,
            )
            POOL_WORKER_RESTARTS_TOTAL.labels(reason=reason).inc()
            grace = TERMINATE_GRACE_SECONDS if reason == "recycled" else 0.5
            if not self._closed:
                task = asyncio.create_task(self._replace(worker, previous, grace))
                self._replacements.add(task)
                task.add_done_callback(self._replacements.discard)
                return
        if previous is not None:
            await _terminate(previous, grace)

    def _pick_idle(self) -> PoolWorker | None:
        idle = [worker for worker in self._workers if worker.state is WorkerState.IDLE]
        if not idle:
            return None
        return min(idle, key=lambda worker: worker.last_used_at)

    def _has_live_workers(self) -> bool:
        return any(worker.state is not WorkerState.DEAD for worker in self._workers) or bool(
            self._replacements
        )

    async def _acquire(self) -> PoolWorker:
        async with self._condition:
            if self._closed or not self._started:
                raise EngineUnavailableError("Process pool is not running")
            worker = self._pick_idle()
            if worker is None:
                if self._waiting >= self._max_queue_depth:
                    raise PoolSaturatedError(
                        "Process pool queue is full",
                        extra={"queue_depth": self._waiting},
                    )
                self._waiting += 1
                POOL_QUEUE_DEPTH.set(self._waiting)
                try:
                    while (worker := self._pick_idle()) is None:
                        if self._closed:
                            raise EngineUnavailableError("Process pool shut down")
                        if not self._has_live_workers():
                            raise EngineUnavailableError("Process pool has no live workers")
                        await self._condition.wait()
                finally:
                    self._waiting -= 1
                    POOL_QUEUE_DEPTH.set(self._waiting)
            worker.state = WorkerState.BUSY
            return worker

    async def _release(self, worker: PoolWorker) -> None:
        recycle = worker.submissions >= self._max_worker_submissions
        if recycle:
            await self._retire(worker, reason="recycled")
            return
        async with self._condition:
            worker.state = WorkerState.IDLE
            worker.last_used_at = time.monotonic()
            self._condition.notify()

    async def _exchange(self, worker: PoolWorker, request: EngineRequest) -> EngineOutcome:
        process = worker.process
        if process is None or process.stdin is None or process.stdout is None:
            raise WorkerCrashedError(f"Worker {worker.id} has no open stdio")
        try:
            process.stdin.write(encode_worker_line(request.to_wire()))
            await process.stdin.drain()
            line = await process.stdout.readline()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise WorkerCrashedError(
                f"Worker {worker.id} closed its pipes", detail=str(exc)
            ) from exc
        except ValueError as exc:
            raise WorkerCrashedError(
                f"Worker {worker.id} response exceeded the stream limit", detail=str(exc)
            ) from exc
        if not line:
            raise WorkerCrashedError(
                f"Worker {worker.id} exited unexpectedly",
                extra={"returncode": process.returncode},
            )
        try:
            payload = decode_worker_line(line, request.request_id)
        except OutcomeParseError as exc:
            raise WorkerCrashedError(
                f"Worker {worker.id} broke the response protocol", detail=str(exc)
            ) from exc
        if "error" in payload:
            try:
                kind = ErrorKind(payload.get("kind", ErrorKind.INVALID_INPUT.value))
            except ValueError:
                kind = ErrorKind.UNKNOWN
            raise EngineError(str(payload["error"]), kind=kind)
        outcome = payload.get("outcome")
        if not isinstance(outcome, dict):
            raise OutcomeParseError("Worker response has no outcome document")
        return EngineOutcome.from_operation_outcome(outcome)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def submit(self, request: EngineRequest, *, timeout: float | None = None) -> EngineOutcome:
        """Validate ``request`` on a pooled worker.

        Raises:
            PoolSaturatedError: The queue is full.
            EngineUnavailableError: The pool is not running or has no live
                workers.
            OperationTimeoutError: No worker became idle in time, or the
                worker did not answer in time. The worker is replaced.
            WorkerCrashedError: The worker died mid-submission and is replaced.
            EngineError: The engine rejected the request.
        """
        budget = timeout or self._submission_timeout
        deadline = time.monotonic() + budget
        try:
            worker = await asyncio.wait_for(self._acquire(), budget)
        except asyncio.TimeoutError as exc:
            POOL_SUBMISSIONS_TOTAL.labels(outcome="queue_timeout").inc()
            raise OperationTimeoutError(
                f"No engine worker became idle within {budget:.1f}s"
            ) from exc
        except PoolSaturatedError:
            POOL_SUBMISSIONS_TOTAL.labels(outcome="saturated").inc()
            raise

        self._total_submissions += 1
        worker.submissions += 1
        started = time.monotonic()
        remaining = max(deadline - started, 0.001)
        try:
            outcome = await asyncio.wait_for(self._exchange(worker, request), remaining)
        except asyncio.TimeoutError as exc:
            self._record_failure(worker, "timeout")
            await self._retire(worker, reason="timeout")
            raise OperationTimeoutError(
                f"Worker {worker.id} did not answer within {budget:.1f}s",
                extra={"worker_id": worker.id},
            ) from exc
        except WorkerCrashedError:
            self._record_failure(worker, "crash")
            await self._retire(worker, reason="crash")
            raise
        except EngineError:
            self._record_failure(worker, "rejected")
            await self._release(worker)
            raise
        except BaseException:
            await self._retire(worker, reason="cancelled")
            raise

        elapsed = time.monotonic() - started
        self._total_seconds += elapsed
        self._completed += 1
        POOL_SUBMISSIONS_TOTAL.labels(outcome="success").inc()
        logger.debug(
            "pool.submission.completed",
            worker_id=worker.id,
            request_id=request.request_id,
            duration=round(elapsed, 3),
            issues=len(outcome.issues),
        )
        await self._release(worker)
        return outcome

    def _record_failure(self, worker: PoolWorker, outcome: str) -> None:
        self._total_failures += 1
        worker.failures += 1
        POOL_SUBMISSIONS_TOTAL.labels(outcome=outcome).inc()

    def get_stats(self) -> PoolStats:
        counts = {state: 0 for state in WorkerState}
        for worker in self._workers:
            counts[worker.state] += 1
        return PoolStats(
            pool_size=self._size,
            idle_count=counts[WorkerState.IDLE],
            busy_count=counts[WorkerState.BUSY],
            starting_count=counts[WorkerState.STARTING],
            dead_count=counts[WorkerState.DEAD],
            queued_submissions=self._waiting,
            total_submissions=self._total_submissions,
            total_failures=self._total_failures,
            avg_submission_seconds=self._total_seconds / self._completed if self._completed else 0.0,
        )

    @property
    def workers(self) -> tuple[PoolWorker, ...]:
        return tuple(self._workers)


__all__ = ["PoolStats", "PoolWorker", "ProcessPool", "WorkerState"]
