"""Single subprocess invocation of the validation engine CLI."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from collections.abc import Sequence

import structlog

from fhir_validation.config.settings import ProcessPoolSettings
from fhir_validation.utils.errors import (
    EngineError,
    EngineUnavailableError,
    ErrorKind,
    OperationTimeoutError,
)

from .pool import STREAM_LIMIT
from .protocol import EngineOutcome, EngineRequest, build_cli_arguments, parse_outcome

logger = structlog.get_logger(__name__)


class OneShotRunner:
    """Run one validation per engine process.

    Exit codes ``0`` and ``1`` mean the engine completed (``1`` signals that
    the record has errors); anything above ``1`` is an engine failure.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        timeout: float = 120.0,
        cache_directory: str | None = None,
    ) -> None:
        if not command:
            raise ValueError("one-shot command must not be empty")
        self._command = list(command)
        self._timeout = timeout
        self._cache_directory = cache_directory

    @classmethod
    def from_settings(cls, settings: ProcessPoolSettings) -> OneShotRunner:
        return cls(
            settings.oneshot_command,
            timeout=settings.oneshot_timeout_seconds,
            cache_directory=settings.cache_directory,
        )

    async def is_available(self) -> bool:
        """Check that the engine command starts and reports a version."""
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                "-version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError):
            return False
        try:
            await asyncio.wait_for(process.wait(), 30.0)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return False
        return process.returncode in (0, 1)

    async def run(self, request: EngineRequest) -> EngineOutcome:
        """Validate ``request`` in a fresh engine process.

        Raises:
            EngineUnavailableError: The engine command cannot be executed.
            OperationTimeoutError: The process did not finish in time.
            EngineError: The process exited with a failure status.
            OutcomeParseError: The output holds no outcome but reports errors.
        """
        fd, path = tempfile.mkstemp(prefix="fhir-validation-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(request.resource, handle)
            args = build_cli_arguments(request, path, cache_directory=self._cache_directory)
            started = time.monotonic()
            try:
                process = await asyncio.create_subprocess_exec(
                    *self._command,
                    *args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=STREAM_LIMIT,
                )
            except (FileNotFoundError, PermissionError) as exc:
                raise EngineUnavailableError(
                    f"Cannot start engine: {self._command[0]}", detail=str(exc)
                ) from exc
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), self._timeout)
            except asyncio.TimeoutError as exc:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
                raise OperationTimeoutError(
                    f"Engine did not finish within {self._timeout:.1f}s",
                    extra={"request_id": request.request_id},
                ) from exc
        finally:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")
        logger.debug(
            "engine.oneshot.completed",
            request_id=request.request_id,
            returncode=process.returncode,
            duration=round(time.monotonic() - started, 3),
        )
        if process.returncode not in (0, 1):
            raise EngineError(
                f"Engine exited with status {process.returncode}",
                kind=ErrorKind.PROCESS_CRASH,
                detail=stderr_text.strip()[:2000],
            )
        return parse_outcome(stdout_text, stderr_text)


__all__ = ["OneShotRunner"]
