"""Run one stage (or one implement unit) until its artifact validates.

Each call to `execute` walks the same small state machine:

    INVOKING -> VALIDATING -> SUCCESS | RETRY_PENDING | EXHAUSTED

A process error from the agent or from an external validator ends the stage
immediately; it is never retried. A validation failure is retried while the
number of retries used is below `max_retries`, so a stage makes at most
`max_retries + 1` attempts. The attempt counter is local to the call and
returned in the `StageResult`.

On retry the failed artifact stays in place; the agent receives the
validation errors as guidance and is told to rewrite the file in full.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .agent import AgentInvoker
from .errors import ProcessError, RetryExhausted
from .models import AttemptRecord, ExecutionUnit, StageResult, ValidationIssue, ValidationResult
from .prompts import combine_guidance, format_retry_context
from .stages import UNVALIDATED_STAGES, Stage
from .validation import ArtifactValidator

ArtifactResolver = Callable[[Stage, Optional[Path]], Optional[Path]]


class RetryableStageExecutor:
    """Invoke the agent for a stage and retry on validation failure."""

    def __init__(
        self,
        agent: AgentInvoker,
        validator: ArtifactValidator,
        max_retries: int,
        *,
        resolve_artifact: Optional[ArtifactResolver] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.agent = agent
        self.validator = validator
        self.max_retries = max_retries
        self.resolve_artifact = resolve_artifact

    def execute(
        self,
        stage: Stage,
        *,
        feature: Optional[str] = None,
        guidance: Optional[str] = None,
        unit: Optional[ExecutionUnit] = None,
        validator: Optional[ArtifactValidator] = None,
    ) -> StageResult:
        """Run `stage` to success.

        Args:
            stage: Stage to run.
            feature: Feature identity passed to the agent.
            guidance: Free-text guidance for the agent.
            unit: Implement-stage unit, when running one phase or task.
            validator: Overrides the executor's validator for this call.

        Returns:
            A `StageResult` recording every attempt.

        Raises:
            ProcessError: If the agent process, or an external validator process,
                fails on any attempt.
            RetryExhausted: If validation still fails after `max_retries` retries.
        """
        check = validator or self.validator
        label = unit.label if unit is not None else stage.value
        attempts: list[AttemptRecord] = []
        retry_context: Optional[str] = None

        while True:
            number = len(attempts) + 1
            logger.info("[{}] Attempt {}/{}", label, number, self.max_retries + 1)
            result = self.agent.invoke(
                stage,
                feature,
                combine_guidance(guidance, retry_context),
                unit=unit,
            )
            if result.error is not None:
                attempts.append(AttemptRecord(number=number))
                error = result.error
                if not isinstance(error, ProcessError):
                    error = ProcessError(str(error), stage=stage.value, unit=unit.label if unit else None)
                logger.error("[{}] Agent process failed: {}", label, error.message)
                raise error

            if stage in UNVALIDATED_STAGES:
                attempts.append(AttemptRecord(number=number))
                logger.info("[{}] Completed (no validation for this stage)", label)
                return StageResult(stage=stage, attempts=tuple(attempts), unit=unit, artifact_path=result.artifact_path)

            artifact = result.artifact_path
            if self.resolve_artifact is not None:
                artifact = self.resolve_artifact(stage, artifact)
            try:
                validation = self._validate(check, artifact)
            except ProcessError as exc:
                logger.error("[{}] Validator process failed: {}", label, exc.message)
                raise ProcessError(
                    exc.message,
                    stage=exc.stage or stage.value,
                    unit=exc.unit or (unit.label if unit else None),
                    exit_status=exc.exit_status,
                    timed_out=exc.timed_out,
                ) from exc
            attempts.append(AttemptRecord(number=number, validation=validation))

            if validation.valid:
                logger.info("[{}] Validation passed after {} attempt(s)", label, number)
                return StageResult(stage=stage, attempts=tuple(attempts), unit=unit, artifact_path=artifact)

            retries_used = number - 1
            logger.warning("[{}] Validation failed with {} error(s)", label, len(validation.errors))
            for issue in validation.errors[:5]:
                logger.debug("[{}]   {}", label, issue.render())

            if retries_used >= self.max_retries:
                logger.error("[{}] Retries exhausted after {} attempt(s)", label, number)
                raise RetryExhausted(
                    f"validation failed after {number} attempt(s) (max retries {self.max_retries})",
                    stage=stage.value,
                    unit=unit.label if unit is not None else None,
                    attempts=number,
                    max_retries=self.max_retries,
                    issues=validation.errors,
                )

            retry_context = format_retry_context(retries_used + 1, self.max_retries, validation.errors)
            logger.info("[{}] Retrying ({} of {} retries)", label, retries_used + 1, self.max_retries)

    @staticmethod
    def _validate(check: ArtifactValidator, artifact: Optional[Path]) -> ValidationResult:
        if artifact is None:
            return ValidationResult.failed(
                [ValidationIssue(path="", message="agent did not produce an artifact", hint="write the artifact file")]
            )
        return check.validate(artifact)
