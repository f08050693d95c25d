"""Resolve how the implement stage splits its work into agent sessions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .constants import DEFAULT_IMPLEMENT_METHOD, IMPLEMENT_METHODS
from .errors import ModeConflictError


class ExecutionModeKind(str, Enum):
    SINGLE_SESSION = "single-session"
    ALL_PHASES = "all-phases"
    SINGLE_PHASE = "single-phase"
    FROM_PHASE = "from-phase"
    ALL_TASKS = "all-tasks"
    FROM_TASK = "from-task"


PHASE_KINDS = frozenset({ExecutionModeKind.ALL_PHASES, ExecutionModeKind.SINGLE_PHASE, ExecutionModeKind.FROM_PHASE})
TASK_KINDS = frozenset({ExecutionModeKind.ALL_TASKS, ExecutionModeKind.FROM_TASK})


@dataclass(frozen=True)
class PhaseExecutionMode:
    """Exactly one way of running the implement stage.

    Build values through the classmethods; the constructor rejects payloads
    that do not belong to the chosen kind.
    """

    kind: ExecutionModeKind
    phase: Optional[int] = None
    task_id: Optional[str] = None

    def __post_init__(self) -> None:
        needs_phase = self.kind in (ExecutionModeKind.SINGLE_PHASE, ExecutionModeKind.FROM_PHASE)
        needs_task = self.kind == ExecutionModeKind.FROM_TASK
        if needs_phase != (self.phase is not None):
            raise ModeConflictError(f"{self.kind.value} mode {'requires' if needs_phase else 'does not take'} a phase number")
        if needs_task != (self.task_id is not None):
            raise ModeConflictError(f"{self.kind.value} mode {'requires' if needs_task else 'does not take'} a task id")
        if self.phase is not None and self.phase < 1:
            raise ModeConflictError(f"phase number must be >= 1, got {self.phase}")

    @classmethod
    def single_session(cls) -> "PhaseExecutionMode":
        return cls(ExecutionModeKind.SINGLE_SESSION)

    @classmethod
    def all_phases(cls) -> "PhaseExecutionMode":
        return cls(ExecutionModeKind.ALL_PHASES)

    @classmethod
    def single_phase(cls, phase: int) -> "PhaseExecutionMode":
        return cls(ExecutionModeKind.SINGLE_PHASE, phase=phase)

    @classmethod
    def from_phase(cls, phase: int) -> "PhaseExecutionMode":
        return cls(ExecutionModeKind.FROM_PHASE, phase=phase)

    @classmethod
    def all_tasks(cls) -> "PhaseExecutionMode":
        return cls(ExecutionModeKind.ALL_TASKS)

    @classmethod
    def from_task(cls, task_id: str) -> "PhaseExecutionMode":
        return cls(ExecutionModeKind.FROM_TASK, task_id=task_id)

    @property
    def is_phase_mode(self) -> bool:
        return self.kind in PHASE_KINDS

    @property
    def is_task_mode(self) -> bool:
        return self.kind in TASK_KINDS

    @property
    def resumable(self) -> bool:
        """Whether already-completed units are skipped by default."""
        return self.kind in (ExecutionModeKind.ALL_PHASES, ExecutionModeKind.ALL_TASKS)

    def describe(self) -> str:
        if self.phase is not None:
            return f"{self.kind.value} {self.phase}"
        if self.task_id is not None:
            return f"{self.kind.value} {self.task_id}"
        return self.kind.value


@dataclass(frozen=True)
class ExecutionModeFlags:
    """Execution-mode options exactly as the caller gave them."""

    phases: bool = False
    tasks: bool = False
    single_session: bool = False
    phase: Optional[int] = None
    from_phase: Optional[int] = None
    from_task: Optional[str] = None

    @property
    def phase_flags(self) -> list[str]:
        names = []
        if self.phases:
            names.append("--phases")
        if self.phase is not None:
            names.append("--phase")
        if self.from_phase is not None:
            names.append("--from-phase")
        return names

    @property
    def task_flags(self) -> list[str]:
        names = []
        if self.tasks:
            names.append("--tasks")
        if self.from_task is not None:
            names.append("--from-task")
        return names

    @property
    def any_set(self) -> bool:
        return bool(self.phase_flags or self.task_flags or self.single_session)


def _mode_for_method(method: str) -> PhaseExecutionMode:
    if method == "tasks":
        return PhaseExecutionMode.all_tasks()
    if method == "single-session":
        return PhaseExecutionMode.single_session()
    return PhaseExecutionMode.all_phases()


def resolve_execution_mode(
    flags: ExecutionModeFlags,
    configured_default: Optional[str] = DEFAULT_IMPLEMENT_METHOD,
) -> PhaseExecutionMode:
    """Pick the execution mode from explicit flags, else the configured default.

    An explicitly set flag always wins; the configured default is consulted
    only when no execution-mode flag was given.

    Raises:
        ModeConflictError: If mutually exclusive flags were combined or the
            configured default is not a known method.
    """
    phase_flags = flags.phase_flags
    task_flags = flags.task_flags
    if len(phase_flags) > 1:
        raise ModeConflictError(f"flags {', '.join(phase_flags)} are mutually exclusive")
    if len(task_flags) > 1:
        raise ModeConflictError(f"flags {', '.join(task_flags)} are mutually exclusive")
    if phase_flags and task_flags:
        raise ModeConflictError(
            f"phase-level flag {phase_flags[0]} cannot be combined with task-level flag {task_flags[0]}"
        )
    if flags.single_session and (phase_flags or task_flags):
        raise ModeConflictError(
            f"--single-session cannot be combined with {', '.join(phase_flags + task_flags)}"
        )

    if flags.single_session:
        return PhaseExecutionMode.single_session()
    if flags.phase is not None:
        return PhaseExecutionMode.single_phase(flags.phase)
    if flags.from_phase is not None:
        return PhaseExecutionMode.from_phase(flags.from_phase)
    if flags.phases:
        return PhaseExecutionMode.all_phases()
    if flags.from_task is not None:
        return PhaseExecutionMode.from_task(flags.from_task)
    if flags.tasks:
        return PhaseExecutionMode.all_tasks()

    method = configured_default or DEFAULT_IMPLEMENT_METHOD
    if method not in IMPLEMENT_METHODS:
        raise ModeConflictError(
            f"unknown implement_method {method!r} (expected one of: {', '.join(IMPLEMENT_METHODS)})"
        )
    return _mode_for_method(method)
