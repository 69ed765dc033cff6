"""Fan a validation request out to aspect validators and merge their issues.

Key Responsibilities:
    - Run every validator whose aspect the request asks for, concurrently
    - Turn a validator's infrastructure failure into one synthetic warning so
      the caller can tell "no findings" from "validator unavailable"
    - Cancel the remaining validators as soon as one rejects the input
    - Return the merged issues ordered by aspect and then by path

Collaborators:
    - Upstream: :class:`~fhir_validation.service.ValidationService`
    - Downstream: :class:`~fhir_validation.engine.validator.EngineValidator`,
      :class:`~fhir_validation.terminology.orchestrator.TerminologyOrchestrator`,
      or any object satisfying :class:`Validator`

Side Effects:
    - Tags log events with the request id, resource type and FHIR version
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Protocol

import structlog

from fhir_validation.models.validation import (
    ASPECT_ORDER,
    Aspect,
    ValidationIssue,
    ValidationRequest,
    normalize_fhir_version,
)
from fhir_validation.utils.errors import (
    ErrorKind,
    InvalidInputError,
    ValidationInfrastructureError,
)
from fhir_validation.utils.logging import validation_context

logger = structlog.get_logger(__name__)


class Validator(Protocol):
    aspect: Aspect

    async def validate(self, request: ValidationRequest) -> list[ValidationIssue]: ...


def _unavailable_issue(aspect: Aspect, exc: ValidationInfrastructureError) -> ValidationIssue:
    return ValidationIssue.synthetic(
        aspect,
        f"{aspect.value} validation unavailable: {exc.problem.title}",
        code=f"{aspect.value}-unavailable",
    )


class ValidationDispatcher:
    """Compose aspect validators into one issue list."""

    def __init__(self, validators: Sequence[Validator]) -> None:
        self._validators = list(validators)

    @property
    def validators(self) -> list[Validator]:
        return list(self._validators)

    async def _run(self, validator: Validator, request: ValidationRequest) -> list[ValidationIssue]:
        try:
            return await validator.validate(request)
        except InvalidInputError:
            raise
        except ValidationInfrastructureError as exc:
            if exc.kind is ErrorKind.CONFIGURATION:
                raise
            logger.warning(
                "dispatcher.validator.unavailable",
                aspect=validator.aspect.value,
                kind=exc.kind.value,
                error=exc.problem.title,
            )
            return [_unavailable_issue(validator.aspect, exc)]

    async def dispatch(self, request: ValidationRequest) -> list[ValidationIssue]:
        """Validate ``request`` with every selected validator.

        Raises:
            InvalidInputError: The record or its options are invalid, for
                example an unsupported FHIR version or a missing resourceType.
        """
        with validation_context(
            request.request_id,
            resource_type=request.resource_type,
            fhir_version=request.fhir_version,
        ):
            normalize_fhir_version(request.fhir_version)
            if not request.resource.get("resourceType"):
                raise InvalidInputError("Resource has no resourceType")
            selected = [v for v in self._validators if request.wants(v.aspect)]
            logger.info("dispatcher.started", validators=[v.aspect.value for v in selected])
            tasks = [asyncio.ensure_future(self._run(v, request)) for v in selected]
            try:
                results = await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            issues = [issue for result in results for issue in result]
            issues.sort(key=lambda issue: (ASPECT_ORDER[issue.aspect], issue.path))
            logger.info("dispatcher.completed", issues=len(issues))
            return issues


__all__ = ["ValidationDispatcher", "Validator"]
