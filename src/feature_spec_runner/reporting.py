"""Render human-readable reports: run previews, task status and execution order."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from .dependencies import external_requirements
from .models import TaskStatus
from .stages import StageSelector
from .task_graph import TaskGraph

if TYPE_CHECKING:
    from .orchestrator import PipelineResult

_STATUS_STYLE = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.IN_PROGRESS: "yellow",
    TaskStatus.PENDING: "white",
    TaskStatus.BLOCKED: "red",
}


def _console() -> Console:
    return Console(record=True, width=100, file=io.StringIO())


def render_run_preview(selector: StageSelector, result: "PipelineResult") -> str:
    """Describe what a run would do, without running it."""
    console = _console()
    console.print("\n[bold]Pipeline Preview[/bold]")
    if result.feature:
        console.print(f"Feature: {result.feature}")
    console.print("Stages:  " + " -> ".join(stage.value for stage in result.planned_stages))
    external = sorted(artifact.value for artifact in external_requirements(selector))
    console.print("Requires: " + (", ".join(external) if external else "nothing beyond the constitution"))
    check = result.dependency_check
    if check is not None and check.overwrites:
        console.print("[yellow]Will overwrite:[/yellow]")
        for path in check.overwrites:
            console.print(f"  • {path}")
    if result.execution_mode is not None:
        console.print(f"Implement mode: {result.execution_mode.describe()}")
    if result.planned_units:
        console.print(f"Implement units ({len(result.planned_units)}):")
        for unit in result.planned_units:
            title = f" [dim]{escape(unit.title)}[/dim]" if unit.title else ""
            console.print(f"  • {unit.label}{title}")
    console.print()
    return console.export_text()


def render_status(graph: TaskGraph, feature: Optional[str] = None) -> str:
    """Summarize task progress per phase as a table."""
    console = _console()
    stats = graph.stats()
    table = Table(title=f"Task Status{f' ({feature})' if feature else ''}", show_header=True)
    table.add_column("Phase", style="cyan")
    table.add_column("Title")
    table.add_column("Done", justify="right")
    table.add_column("Blocked", justify="right", style="red")
    table.add_column("State", style="bold")
    for phase in graph.phases:
        done = sum(1 for task in phase.tasks if task.status == TaskStatus.COMPLETED)
        blocked = sum(1 for task in phase.tasks if task.status == TaskStatus.BLOCKED)
        state = "complete" if phase.is_complete() else "pending"
        table.add_row(str(phase.number), escape(phase.title), f"{done}/{len(phase.tasks)}", str(blocked), state)
    console.print(table)
    console.print(
        f"Tasks: {stats.completed}/{stats.total} completed ({stats.percent_complete:.0f}%), "
        f"{stats.in_progress} in progress, {stats.pending} pending, {stats.blocked} blocked"
    )
    nxt = graph.first_incomplete_phase()
    if nxt is not None:
        console.print(f"Next phase: {nxt.number} {escape(nxt.title)}")
    return console.export_text()


def render_order(graph: TaskGraph) -> str:
    """Show the dependency-respecting task order grouped by phase.

    Raises:
        CycleError: If the task graph is cyclic.
    """
    console = _console()
    tree = Tree("[bold]Task Execution Order[/bold]")
    for phase, tasks in graph.ordered_by_phase():
        branch = tree.add(f"[cyan]Phase {phase.number}[/cyan] {escape(phase.title)}")
        for task in tasks:
            style = _STATUS_STYLE[task.status]
            deps = graph.known_dependencies(task)
            suffix = f" [dim](after {escape(', '.join(deps))})[/dim]" if deps else ""
            status = escape(f"[{task.status.value}]")
            branch.add(f"[{style}]{escape(task.id)}[/{style}] {escape(task.title)} {status}{suffix}")
    console.print(tree)
    return console.export_text()
