"""Define task, validation and result models shared across the runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .stages import Stage


class TaskStatus(str, Enum):
    """Represent the lifecycle state of a task in the tasks artifact."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    BLOCKED = "Blocked"

    @classmethod
    def normalize(cls, raw: object) -> "TaskStatus":
        """Map free-form status text onto a status; unknown values are pending."""
        text = str(raw or "").strip().lower()
        if text in {"completed", "complete", "done"}:
            return cls.COMPLETED
        if text in {"inprogress", "in_progress", "in-progress", "wip"}:
            return cls.IN_PROGRESS
        if text == "blocked":
            return cls.BLOCKED
        return cls.PENDING


@dataclass
class Task:
    """One implementation task from the tasks artifact."""

    id: str
    phase_number: int
    title: str = ""
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    blocked_reason: Optional[str] = None
    type: str = ""
    parallel: bool = False


@dataclass
class Phase:
    """A numbered group of tasks."""

    number: int
    title: str = ""
    purpose: str = ""
    tasks: list[Task] = field(default_factory=list)

    def is_complete(self) -> bool:
        """Return True when no task is pending or in progress.

        Blocked tasks count as done for phase iteration; they need a human, not
        another agent session.
        """
        return all(task.status in (TaskStatus.COMPLETED, TaskStatus.BLOCKED) for task in self.tasks)

    def incomplete_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)]


@dataclass(frozen=True)
class ValidationIssue:
    """A single structured validation error."""

    path: str
    message: str
    line: Optional[int] = None
    hint: Optional[str] = None

    def render(self) -> str:
        where = self.path or "<root>"
        if self.line is not None:
            where = f"{where} (line {self.line})"
        text = f"{where}: {self.message}"
        if self.hint:
            text += f" (hint: {self.hint})"
        return text


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one artifact."""

    valid: bool
    errors: tuple[ValidationIssue, ...] = ()

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def failed(cls, errors: list[ValidationIssue]) -> "ValidationResult":
        return cls(valid=False, errors=tuple(errors))


class UnitKind(str, Enum):
    SESSION = "session"
    PHASE = "phase"
    TASK = "task"


@dataclass(frozen=True)
class ExecutionUnit:
    """One isolated agent session inside the implement stage."""

    kind: UnitKind
    phase: Optional[int] = None
    task_id: Optional[str] = None
    title: str = ""

    @classmethod
    def session(cls) -> "ExecutionUnit":
        return cls(kind=UnitKind.SESSION)

    @classmethod
    def for_phase(cls, phase: Phase) -> "ExecutionUnit":
        return cls(kind=UnitKind.PHASE, phase=phase.number, title=phase.title)

    @classmethod
    def for_task(cls, task: Task) -> "ExecutionUnit":
        return cls(kind=UnitKind.TASK, phase=task.phase_number, task_id=task.id, title=task.title)

    @property
    def label(self) -> str:
        if self.kind == UnitKind.PHASE:
            return f"phase {self.phase}"
        if self.kind == UnitKind.TASK:
            return f"task {self.task_id}"
        return "all tasks"


@dataclass(frozen=True)
class AgentResult:
    """What one agent invocation returned: a produced path or a process error."""

    artifact_path: Optional[Path] = None
    error: Optional[Exception] = None
    run_dir: Optional[Path] = None


@dataclass(frozen=True)
class AttemptRecord:
    number: int
    validation: Optional[ValidationResult] = None


@dataclass(frozen=True)
class StageResult:
    """Value returned for one stage (or one implement unit) execution.

    The attempt count lives here, not on the executor, so repeated executions
    never share counters.
    """

    stage: Stage
    attempts: tuple[AttemptRecord, ...]
    unit: Optional[ExecutionUnit] = None
    artifact_path: Optional[Path] = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def retries(self) -> int:
        return max(0, len(self.attempts) - 1)

