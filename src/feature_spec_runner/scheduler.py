"""Turn an execution mode and a task graph into a sequence of agent sessions."""

from __future__ import annotations

from typing import Optional

from loguru import logger

from .errors import CycleError, PhaseNotFound, UnknownTaskID
from .execution_mode import ExecutionModeKind, PhaseExecutionMode
from .models import ExecutionUnit, Phase, TaskStatus
from .task_graph import TaskGraph


def _require_phase(graph: TaskGraph, number: Optional[int]) -> Phase:
    phase = graph.phase(number) if number is not None else None
    if phase is None:
        raise PhaseNotFound(number or 0, len(graph.phases))
    return phase


def build_execution_units(
    mode: PhaseExecutionMode,
    graph: TaskGraph,
    *,
    force_restart: bool = False,
) -> list[ExecutionUnit]:
    """Return the units to run for `mode`, in execution order.

    Cycle detection runs first for every mode. `AllPhases` and `AllTasks`
    skip units that are already done unless `force_restart` is set; the
    fast-forward modes run from their start point regardless of status.

    Raises:
        CycleError: If the task graph is cyclic.
        UnknownTaskID: If a `FromTask` target is not in the graph.
        PhaseNotFound: If a phase number is out of range.
    """
    cycle = graph.find_cycle()
    if cycle:
        raise CycleError(cycle)

    kind = mode.kind
    if kind == ExecutionModeKind.SINGLE_SESSION:
        return [ExecutionUnit.session()]

    if kind in (ExecutionModeKind.ALL_PHASES, ExecutionModeKind.SINGLE_PHASE, ExecutionModeKind.FROM_PHASE):
        return _phase_units(mode, graph, force_restart=force_restart)
    return _task_units(mode, graph, force_restart=force_restart)


def _phase_units(mode: PhaseExecutionMode, graph: TaskGraph, *, force_restart: bool) -> list[ExecutionUnit]:
    if mode.kind == ExecutionModeKind.SINGLE_PHASE:
        return [ExecutionUnit.for_phase(_require_phase(graph, mode.phase))]

    if mode.kind == ExecutionModeKind.FROM_PHASE:
        start = _require_phase(graph, mode.phase)
        return [ExecutionUnit.for_phase(phase) for phase in graph.phases if phase.number >= start.number]

    units: list[ExecutionUnit] = []
    for phase in graph.phases:
        if not force_restart and phase.is_complete():
            logger.debug("Skipping phase {} ({}): already complete", phase.number, phase.title)
            continue
        units.append(ExecutionUnit.for_phase(phase))
    return units


def _task_units(mode: PhaseExecutionMode, graph: TaskGraph, *, force_restart: bool) -> list[ExecutionUnit]:
    order = graph.topological_order()

    if mode.kind == ExecutionModeKind.FROM_TASK:
        ids = [task.id for task in order]
        if mode.task_id not in ids:
            raise UnknownTaskID(str(mode.task_id), known=ids)
        start = ids.index(str(mode.task_id))
        return [ExecutionUnit.for_task(task) for task in order[start:]]

    units: list[ExecutionUnit] = []
    for task in order:
        if not force_restart and task.status == TaskStatus.COMPLETED:
            continue
        if not force_restart and task.status == TaskStatus.BLOCKED:
            logger.warning("Skipping blocked task {}: {}", task.id, task.blocked_reason or "no reason given")
            continue
        units.append(ExecutionUnit.for_task(task))
    return units


def unit_is_done(unit: ExecutionUnit, graph: TaskGraph) -> bool:
    """Return True when the on-disk task state already satisfies `unit`."""
    if unit.task_id is not None:
        task = graph.get(unit.task_id)
        return task is not None and task.status == TaskStatus.COMPLETED
    if unit.phase is not None:
        phase = graph.phase(unit.phase)
        return phase is not None and phase.is_complete()
    return all(task.status == TaskStatus.COMPLETED for task in graph.tasks)
