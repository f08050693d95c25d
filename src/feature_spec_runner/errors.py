"""Error taxonomy for pipeline runs.

Every fatal condition is a `PipelineError`. Each error names the stage and
unit that failed, a short failure kind, and the process exit code the CLI
should use.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional, Sequence

from .constants import (
    EXIT_CANCELLED,
    EXIT_FAILED,
    EXIT_INVALID_INPUT,
    EXIT_RETRY_EXHAUSTED,
    EXIT_TIMEOUT,
)

if TYPE_CHECKING:
    from .models import ValidationIssue
    from .stages import ArtifactName


class PipelineError(Exception):
    """Base class for fatal pipeline conditions."""

    kind = "pipeline_error"
    exit_code = EXIT_FAILED

    def __init__(self, message: str, *, stage: Optional[str] = None, unit: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.unit = unit

    def location(self) -> str:
        parts = []
        if self.stage:
            parts.append(f"stage '{self.stage}'")
        if self.unit:
            parts.append(f"unit '{self.unit}'")
        return ", ".join(parts)

    def __str__(self) -> str:
        where = self.location()
        prefix = f"[{self.kind}] {where}: " if where else f"[{self.kind}] "
        return prefix + self.message


class ProcessError(PipelineError):
    """The agent subprocess failed to start, exited abnormally, or timed out."""

    kind = "process_error"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        unit: Optional[str] = None,
        exit_status: Optional[int] = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message, stage=stage, unit=unit)
        self.exit_status = exit_status
        self.timed_out = timed_out
        if timed_out:
            self.exit_code = EXIT_TIMEOUT


class RetryExhausted(PipelineError):
    """Validation kept failing after the retry budget was spent."""

    kind = "retry_exhausted"
    exit_code = EXIT_RETRY_EXHAUSTED

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        unit: Optional[str] = None,
        attempts: int = 0,
        max_retries: int = 0,
        issues: Sequence["ValidationIssue"] = (),
    ) -> None:
        super().__init__(message, stage=stage, unit=unit)
        self.attempts = attempts
        self.max_retries = max_retries
        self.issues = list(issues)


class MissingPrerequisite(PipelineError):
    """Artifacts required by the selected stages are absent."""

    kind = "missing_prerequisite"
    exit_code = EXIT_INVALID_INPUT

    def __init__(
        self,
        message: str,
        *,
        missing: Iterable["ArtifactName"] = (),
        remediation: str = "",
    ) -> None:
        super().__init__(message)
        self.missing = frozenset(missing)
        self.remediation = remediation


class CycleError(PipelineError):
    """The task dependency graph contains a cycle."""

    kind = "dependency_cycle"
    exit_code = EXIT_INVALID_INPUT

    def __init__(self, cycle: Sequence[str], *, stage: Optional[str] = "implement") -> None:
        self.cycle = list(cycle)
        super().__init__(
            "Circular task dependency detected: " + " -> ".join(self.cycle)
            + ". Edit the tasks artifact to break the cycle.",
            stage=stage,
        )


class UnknownTaskID(PipelineError):
    """A task id given as a resume point is not in the task graph."""

    kind = "unknown_task"
    exit_code = EXIT_INVALID_INPUT

    def __init__(self, task_id: str, *, known: Sequence[str] = ()) -> None:
        self.task_id = task_id
        hint = f" (known: {', '.join(known[:10])}{', ...' if len(known) > 10 else ''})" if known else ""
        super().__init__(f"task {task_id} not found in the task graph{hint}", stage="implement")


class PhaseNotFound(PipelineError):
    """A phase number is out of range for the task graph."""

    kind = "unknown_phase"
    exit_code = EXIT_INVALID_INPUT

    def __init__(self, phase: int, total: int) -> None:
        self.phase = phase
        self.total = total
        valid = f"valid: 1-{total}" if total else "no phases defined"
        super().__init__(f"phase {phase} is out of range ({valid})", stage="implement")


class TaskParseError(PipelineError):
    """The tasks artifact could not be read or has an invalid structure."""

    kind = "parse_error"
    exit_code = EXIT_INVALID_INPUT


class ModeConflictError(PipelineError, ValueError):
    """Mutually exclusive execution-mode options were combined."""

    kind = "mode_conflict"
    exit_code = EXIT_INVALID_INPUT


class FeatureNotFound(PipelineError):
    """No feature directory could be identified."""

    kind = "feature_not_found"
    exit_code = EXIT_INVALID_INPUT


class ConfigError(PipelineError):
    """The runner configuration is unreadable or invalid."""

    kind = "config_error"
    exit_code = EXIT_INVALID_INPUT


class ConfirmationDeclined(PipelineError):
    """The user declined to overwrite existing artifacts."""

    kind = "declined"


class PipelineCancelled(PipelineError):
    """Cancellation was requested; no further units were started."""

    kind = "cancelled"
    exit_code = EXIT_CANCELLED


class UsageError(PipelineError):
    """The request is incomplete or contradictory."""

    kind = "invalid_input"
    exit_code = EXIT_INVALID_INPUT
