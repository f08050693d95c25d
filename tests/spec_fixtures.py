"""Builders for on-disk project layouts used across the test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

VALID_SPEC = {
    "feature": {"branch": "001-demo", "created": "2025-01-01", "status": "Draft"},
    "user_stories": [{"id": "US-001", "title": "Log in", "priority": "P1"}],
    "requirements": {"functional": [{"id": "FR-001", "description": "Users can log in"}]},
}

VALID_PLAN = {
    "plan": {"branch": "001-demo", "spec_path": "specs/001-demo/spec.yaml"},
    "summary": "Add a login endpoint",
    "technical_context": {"language": "Python"},
}


def write_constitution(project_dir: Path, relative: str = ".spec_runner/memory/constitution.yaml") -> Path:
    path = project_dir / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("constitution:\n  project_name: demo\n")
    return path


def make_feature(project_dir: Path, name: str = "001-demo") -> Path:
    directory = project_dir / "specs" / name
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_yaml(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path


def task(
    task_id: str,
    status: str = "Pending",
    deps: Optional[Iterable[str]] = None,
    title: Optional[str] = None,
) -> dict[str, Any]:
    return {
        "id": task_id,
        "title": title or f"Task {task_id}",
        "status": status,
        "type": "implementation",
        "parallel": False,
        "dependencies": list(deps or []),
        "acceptance_criteria": ["works"],
    }


def phase(number: int, *tasks: dict[str, Any], title: Optional[str] = None) -> dict[str, Any]:
    return {
        "number": number,
        "title": title or f"Phase {number}",
        "purpose": "testing",
        "tasks": list(tasks),
    }


def tasks_doc(*phases: dict[str, Any]) -> dict[str, Any]:
    total = sum(len(p["tasks"]) for p in phases)
    return {
        "tasks": {"branch": "001-demo", "plan_path": "specs/001-demo/plan.yaml"},
        "summary": {"total_tasks": total, "total_phases": len(phases)},
        "phases": list(phases),
    }


def write_tasks(feature_dir: Path, *phases: dict[str, Any]) -> Path:
    return write_yaml(feature_dir / "tasks.yaml", tasks_doc(*phases))
