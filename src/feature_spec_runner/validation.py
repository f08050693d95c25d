"""Validate artifacts written by the agent.

The executor only needs `validate(path) -> ValidationResult`. The default
validator checks structure and required fields of the spec, plan and tasks
artifacts, reporting YAML line numbers. Implement units are additionally
validated for completion: an agent session that left its tasks unfinished
counts as a failed attempt.
"""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path
from typing import Optional, Protocol

import yaml

from .constants import PLAN_FILE, SPEC_FILE, TASKS_FILE
from .errors import ProcessError, TaskParseError
from .io_utils import _yaml_error_line
from .models import ExecutionUnit, TaskStatus, UnitKind, ValidationIssue, ValidationResult
from .prompts import extract_validation_errors
from .task_graph import graph_from_data

VALID_STATUSES = tuple(status.value for status in TaskStatus)


class ArtifactValidator(Protocol):
    def validate(self, artifact_path: Path) -> ValidationResult: ...


def _line(node: yaml.Node) -> int:
    return int(node.start_mark.line) + 1


def _get(node: yaml.Node, key: str) -> Optional[yaml.Node]:
    if not isinstance(node, yaml.MappingNode):
        return None
    for key_node, value_node in node.value:
        if isinstance(key_node, yaml.ScalarNode) and key_node.value == key:
            return value_node
    return None


def _is_empty(node: yaml.Node) -> bool:
    if isinstance(node, yaml.ScalarNode):
        return node.tag.endswith(":null") or node.value.strip() == ""
    return not node.value


def _require(
    node: yaml.Node,
    path: str,
    key: str,
    issues: list[ValidationIssue],
    *,
    kind: Optional[type] = None,
) -> Optional[yaml.Node]:
    child = _get(node, key)
    field_path = f"{path}.{key}" if path else key
    if child is None or _is_empty(child):
        issues.append(
            ValidationIssue(
                path=field_path,
                line=_line(node),
                message="missing required field",
                hint=f"add '{key}' under {path or 'the document root'}",
            )
        )
        return None
    if kind is not None and not isinstance(child, kind):
        expected = "list" if kind is yaml.SequenceNode else "mapping" if kind is yaml.MappingNode else "scalar"
        issues.append(ValidationIssue(path=field_path, line=_line(child), message=f"expected {expected}"))
        return None
    return child


def _check_spec(root: yaml.Node, issues: list[ValidationIssue]) -> None:
    feature = _require(root, "", "feature", issues, kind=yaml.MappingNode)
    if feature is not None:
        _require(feature, "feature", "branch", issues)
    _require(root, "", "user_stories", issues, kind=yaml.SequenceNode)
    _require(root, "", "requirements", issues)


def _check_plan(root: yaml.Node, issues: list[ValidationIssue]) -> None:
    plan = _require(root, "", "plan", issues, kind=yaml.MappingNode)
    if plan is not None:
        _require(plan, "plan", "branch", issues)
    _require(root, "", "summary", issues)
    _require(root, "", "technical_context", issues)


def _check_tasks(root: yaml.Node, issues: list[ValidationIssue]) -> None:
    _require(root, "", "tasks", issues)
    _require(root, "", "summary", issues)
    phases = _require(root, "", "phases", issues, kind=yaml.SequenceNode)
    if phases is None:
        return

    seen: dict[str, int] = {}
    dependency_refs: list[tuple[str, str, int]] = []
    for phase_index, phase in enumerate(phases.value):
        phase_path = f"phases[{phase_index}]"
        if not isinstance(phase, yaml.MappingNode):
            issues.append(ValidationIssue(path=phase_path, line=_line(phase), message="expected mapping"))
            continue
        _require(phase, phase_path, "number", issues, kind=yaml.ScalarNode)
        _require(phase, phase_path, "title", issues)
        tasks = _require(phase, phase_path, "tasks", issues, kind=yaml.SequenceNode)
        if tasks is None:
            continue
        for task_index, task in enumerate(tasks.value):
            task_path = f"{phase_path}.tasks[{task_index}]"
            if not isinstance(task, yaml.MappingNode):
                issues.append(ValidationIssue(path=task_path, line=_line(task), message="expected mapping"))
                continue
            id_node = _require(task, task_path, "id", issues, kind=yaml.ScalarNode)
            _require(task, task_path, "title", issues)
            status = _require(task, task_path, "status", issues, kind=yaml.ScalarNode)
            if status is not None and status.value not in VALID_STATUSES:
                issues.append(
                    ValidationIssue(
                        path=f"{task_path}.status",
                        line=_line(status),
                        message=f"invalid status {status.value!r}",
                        hint=f"use one of: {', '.join(VALID_STATUSES)}",
                    )
                )
            if id_node is not None:
                if id_node.value in seen:
                    issues.append(
                        ValidationIssue(
                            path=f"{task_path}.id",
                            line=_line(id_node),
                            message=f"duplicate task id {id_node.value} (first defined on line {seen[id_node.value]})",
                        )
                    )
                else:
                    seen[id_node.value] = _line(id_node)
            deps = _get(task, "dependencies")
            if isinstance(deps, yaml.SequenceNode):
                for dep in deps.value:
                    if isinstance(dep, yaml.ScalarNode):
                        dependency_refs.append((f"{task_path}.dependencies", dep.value, _line(dep)))

    for path, dep, line in dependency_refs:
        if dep not in seen:
            issues.append(
                ValidationIssue(path=path, line=line, message=f"unknown dependency {dep}", hint="reference an existing task id")
            )


_CHECKS = {
    SPEC_FILE: _check_spec,
    PLAN_FILE: _check_plan,
    TASKS_FILE: _check_tasks,
}


class SchemaArtifactValidator:
    """Structural validator for the YAML artifacts."""

    def validate(self, artifact_path: Path) -> ValidationResult:
        if not artifact_path.exists():
            return ValidationResult.failed(
                [ValidationIssue(path=artifact_path.name, message="artifact was not written", hint="write the file")]
            )
        try:
            root = yaml.compose(artifact_path.read_text(encoding="utf-8"), Loader=yaml.SafeLoader)
        except UnicodeDecodeError as exc:
            return ValidationResult.failed(
                [
                    ValidationIssue(
                        path=artifact_path.name, message=f"not valid UTF-8: {exc}", hint="rewrite the file as UTF-8 text"
                    )
                ]
            )
        except yaml.YAMLError as exc:
            return ValidationResult.failed(
                [ValidationIssue(path=artifact_path.name, line=_yaml_error_line(exc), message=f"invalid YAML: {exc}")]
            )
        if not isinstance(root, yaml.MappingNode):
            return ValidationResult.failed(
                [ValidationIssue(path="", line=1, message="top level must be a mapping")]
            )
        issues: list[ValidationIssue] = []
        check = _CHECKS.get(artifact_path.name)
        if check is not None:
            check(root, issues)
        return ValidationResult.failed(issues) if issues else ValidationResult.ok()


class UnitCompletionValidator:
    """Validate the tasks artifact and require `unit`'s tasks to be finished."""

    def __init__(self, base: ArtifactValidator, unit: ExecutionUnit) -> None:
        self.base = base
        self.unit = unit

    def validate(self, artifact_path: Path) -> ValidationResult:
        structural = self.base.validate(artifact_path)
        if not structural.valid:
            return structural
        try:
            graph = graph_from_data(yaml.safe_load(artifact_path.read_text(encoding="utf-8")), source=artifact_path)
        except (TaskParseError, UnicodeDecodeError, yaml.YAMLError) as exc:
            return ValidationResult.failed([ValidationIssue(path=artifact_path.name, message=str(exc))])

        issues: list[ValidationIssue] = []
        if self.unit.kind == UnitKind.TASK:
            task = graph.get(str(self.unit.task_id))
            if task is None:
                issues.append(ValidationIssue(path="phases", message=f"task {self.unit.task_id} disappeared"))
            elif task.status != TaskStatus.COMPLETED:
                issues.append(
                    ValidationIssue(
                        path=f"{task.id}.status",
                        message=f"task {task.id} is {task.status.value}, expected Completed",
                        hint="finish the task and set its status to Completed",
                    )
                )
        elif self.unit.kind == UnitKind.PHASE:
            phase = graph.phase(int(self.unit.phase or 0))
            if phase is None:
                issues.append(ValidationIssue(path="phases", message=f"phase {self.unit.phase} disappeared"))
            else:
                for task in phase.incomplete_tasks():
                    issues.append(
                        ValidationIssue(
                            path=f"{task.id}.status",
                            message=f"phase {phase.number} has incomplete task {task.id} ({task.status.value})",
                        )
                    )
        else:
            for task in graph.tasks:
                if task.status != TaskStatus.COMPLETED:
                    issues.append(
                        ValidationIssue(path=f"{task.id}.status", message=f"task {task.id} is {task.status.value}")
                    )
        return ValidationResult.failed(issues) if issues else ValidationResult.ok()


class CommandArtifactValidator:
    """Delegate validation to an external command.

    `{path}` in the command is replaced by the artifact path. Exit status 0
    means valid; otherwise every `- ` line of the command output becomes one
    validation issue.
    """

    def __init__(self, command: str, project_dir: Path, *, timeout_seconds: int = 120) -> None:
        if "{path}" not in command:
            raise ValueError("Validate command must include {path}.")
        self.command = command
        self.project_dir = project_dir
        self.timeout_seconds = timeout_seconds

    def validate(self, artifact_path: Path) -> ValidationResult:
        try:
            parts = [part.format(path=str(artifact_path)) for part in shlex.split(self.command)]
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Unknown placeholder in validate command: {exc}") from exc
        try:
            result = subprocess.run(
                parts,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return ValidationResult.failed(
                [ValidationIssue(path=artifact_path.name, message=f"validator timed out after {self.timeout_seconds}s")]
            )
        except OSError as exc:
            raise ProcessError(f"failed to start validate command {parts[0]!r}: {exc}") from exc
        if result.returncode == 0:
            return ValidationResult.ok()
        output = (result.stdout or "") + "\n" + (result.stderr or "")
        messages = extract_validation_errors(output)
        if not messages:
            tail = [line for line in output.splitlines() if line.strip()]
            messages = [tail[-1] if tail else f"validator exited with status {result.returncode}"]
        return ValidationResult.failed([ValidationIssue(path=artifact_path.name, message=msg) for msg in messages])
