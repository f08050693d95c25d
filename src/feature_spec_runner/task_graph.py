"""Parse the tasks artifact into a dependency graph and order it.

Edges point from a dependency to its dependent: if B lists A under
`dependencies`, A must complete before B. Dependencies naming ids that are not
in the artifact are ignored for ordering.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from .errors import CycleError, TaskParseError
from .io_utils import _yaml_error_line
from .models import Phase, Task, TaskStatus

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class TaskStats:
    total: int
    completed: int
    in_progress: int
    pending: int
    blocked: int

    @property
    def percent_complete(self) -> float:
        return 100.0 * self.completed / self.total if self.total else 0.0


class TaskGraph:
    """Phases and tasks read from a tasks artifact."""

    def __init__(self, phases: Iterable[Phase], source: Optional[Path] = None) -> None:
        self.phases: list[Phase] = sorted(phases, key=lambda phase: phase.number)
        self.source = source
        self._by_id: dict[str, Task] = {}
        for phase in self.phases:
            for task in phase.tasks:
                if task.id in self._by_id:
                    raise TaskParseError(f"duplicate task id {task.id}", stage="implement")
                self._by_id[task.id] = task

    @property
    def tasks(self) -> list[Task]:
        """All tasks in declaration order (phases by number)."""
        return [task for phase in self.phases for task in phase.tasks]

    def get(self, task_id: str) -> Optional[Task]:
        return self._by_id.get(task_id)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._by_id

    def phase(self, number: int) -> Optional[Phase]:
        for phase in self.phases:
            if phase.number == number:
                return phase
        return None

    def known_dependencies(self, task: Task) -> list[str]:
        return [dep for dep in task.dependencies if dep in self._by_id]

    def _walk(self) -> tuple[list[Task], Optional[list[str]]]:
        """Depth-first walk over the dependency relation in declaration order.

        Iterative, so chain length is not bounded by the recursion limit.
        Returns the tasks finished so far in post-order (dependencies before
        dependents) and the first cycle met, or None.
        """
        state = {task_id: _WHITE for task_id in self._by_id}
        ordered: list[Task] = []
        for root in self.tasks:
            if state[root.id] != _WHITE:
                continue
            state[root.id] = _GRAY
            path = [root.id]
            pending = [iter(self.known_dependencies(root))]
            while pending:
                dep = next(pending[-1], None)
                if dep is None:
                    pending.pop()
                    done = path.pop()
                    state[done] = _BLACK
                    ordered.append(self._by_id[done])
                elif state[dep] == _GRAY:
                    return ordered, path[path.index(dep):] + [dep]
                elif state[dep] == _WHITE:
                    state[dep] = _GRAY
                    path.append(dep)
                    pending.append(iter(self.known_dependencies(self._by_id[dep])))
        return ordered, None

    def find_cycle(self) -> Optional[list[str]]:
        """Return a cycle as a list of ids (first id repeated last), or None."""
        return self._walk()[1]

    def topological_order(self) -> list[Task]:
        """Return tasks so every task follows the tasks it depends on.

        Tasks are visited in declaration order and dependencies are emitted
        before dependents, so unrelated tasks keep their declared order.

        Raises:
            CycleError: If the dependency relation contains a cycle.
        """
        ordered, cycle = self._walk()
        if cycle:
            raise CycleError(cycle)
        return ordered

    def ordered_by_phase(self) -> list[tuple[Phase, list[Task]]]:
        """Group the topological order by phase number."""
        order = self.topological_order()
        grouped: list[tuple[Phase, list[Task]]] = []
        for phase in self.phases:
            members = [task for task in order if task.phase_number == phase.number]
            grouped.append((phase, members))
        return grouped

    def first_incomplete_phase(self) -> Optional[Phase]:
        for phase in self.phases:
            if not phase.is_complete():
                return phase
        return None

    def stats(self) -> TaskStats:
        counts = Counter(task.status for task in self.tasks)
        return TaskStats(
            total=len(self._by_id),
            completed=counts[TaskStatus.COMPLETED],
            in_progress=counts[TaskStatus.IN_PROGRESS],
            pending=counts[TaskStatus.PENDING],
            blocked=counts[TaskStatus.BLOCKED],
        )


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return []


def _parse_task(raw: Any, phase_number: int, where: str) -> Task:
    if not isinstance(raw, dict):
        raise TaskParseError(f"{where}: expected mapping, got {type(raw).__name__}", stage="implement")
    task_id = str(raw.get("id") or "").strip()
    if not task_id:
        raise TaskParseError(f"{where}: task is missing an id", stage="implement")
    status = TaskStatus.normalize(raw.get("status"))
    blocked_reason = raw.get("blocked_reason") if status == TaskStatus.BLOCKED else None
    return Task(
        id=task_id,
        phase_number=phase_number,
        title=str(raw.get("title") or ""),
        status=status,
        dependencies=_as_str_list(raw.get("dependencies")),
        blocked_reason=str(blocked_reason) if blocked_reason else None,
        type=str(raw.get("type") or ""),
        parallel=bool(raw.get("parallel", False)),
    )


def _parse_phase(raw: Any, index: int) -> Phase:
    where = f"phases[{index}]"
    if not isinstance(raw, dict):
        raise TaskParseError(f"{where}: expected mapping, got {type(raw).__name__}", stage="implement")
    try:
        number = int(raw.get("number", index + 1))
    except (TypeError, ValueError) as exc:
        raise TaskParseError(f"{where}.number: not an integer: {raw.get('number')!r}", stage="implement") from exc
    raw_tasks = raw.get("tasks") or []
    if not isinstance(raw_tasks, list):
        raise TaskParseError(f"{where}.tasks: expected list", stage="implement")
    tasks = [_parse_task(item, number, f"{where}.tasks[{pos}]") for pos, item in enumerate(raw_tasks)]
    return Phase(
        number=number,
        title=str(raw.get("title") or ""),
        purpose=str(raw.get("purpose") or ""),
        tasks=tasks,
    )


def graph_from_data(data: Any, source: Optional[Path] = None) -> TaskGraph:
    """Build a graph from already-loaded tasks artifact data."""
    if not isinstance(data, dict):
        raise TaskParseError("tasks artifact must be a mapping at the top level", stage="implement")
    raw_phases = data.get("phases")
    if raw_phases is None:
        raise TaskParseError("tasks artifact has no 'phases' list", stage="implement")
    if not isinstance(raw_phases, list):
        raise TaskParseError("'phases' must be a list", stage="implement")
    phases = [_parse_phase(raw, index) for index, raw in enumerate(raw_phases)]
    seen: set[int] = set()
    for phase in phases:
        if phase.number in seen:
            raise TaskParseError(f"duplicate phase number {phase.number}", stage="implement")
        seen.add(phase.number)
    return TaskGraph(phases, source=source)


def parse_tasks(path: Path) -> TaskGraph:
    """Parse a tasks artifact file.

    Raises:
        TaskParseError: If the file is missing, is not valid YAML, or does not
            have the expected phases/tasks structure.
    """
    if not path.exists():
        raise TaskParseError(f"tasks artifact not found: {path}", stage="implement")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except UnicodeDecodeError as exc:
        raise TaskParseError(f"{path.name}: not valid UTF-8: {exc}", stage="implement") from exc
    except yaml.YAMLError as exc:
        line = _yaml_error_line(exc)
        where = f" (line {line})" if line else ""
        raise TaskParseError(f"{path.name}: invalid YAML{where}: {exc}", stage="implement") from exc
    except OSError as exc:
        raise TaskParseError(f"{path.name}: {exc}", stage="implement") from exc
    return graph_from_data(data, source=path)
