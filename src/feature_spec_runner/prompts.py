"""Build the command text handed to the agent for each stage and unit."""

from __future__ import annotations

from typing import Optional, Sequence

from .constants import DEFAULT_COMMAND_PREFIX, MAX_RETRY_ERRORS_SHOWN
from .models import ExecutionUnit, UnitKind, ValidationIssue
from .stages import Stage

RETRY_INSTRUCTIONS = (
    "Rewrite the artifact in full, replacing the existing file. "
    "Fix every error listed above and keep all valid content."
)


def build_stage_prompt(
    stage: Stage,
    *,
    feature: Optional[str] = None,
    guidance: Optional[str] = None,
    unit: Optional[ExecutionUnit] = None,
    prefix: str = DEFAULT_COMMAND_PREFIX,
) -> str:
    """Return the slash-command style prompt for one stage invocation.

    Example:
        `/speckit.implement --phase 2 "focus on the API layer"`
    """
    parts = [f"{prefix}.{stage.value}"]
    if unit is not None and unit.kind == UnitKind.PHASE:
        parts.append(f"--phase {unit.phase}")
    elif unit is not None and unit.kind == UnitKind.TASK:
        parts.append(f"--task {unit.task_id}")
    command = " ".join(parts)
    text = (guidance or "").strip()
    if text:
        command += ' "' + text.replace('"', '\\"') + '"'
    if feature:
        command += f"\n\nFeature: {feature}"
    return command


def format_retry_context(attempt: int, max_retries: int, errors: Sequence[ValidationIssue]) -> str:
    """Describe a failed validation so the next attempt can correct it."""
    lines = [f"RETRY {attempt}/{max_retries}", "Schema validation failed:"]
    for issue in errors[:MAX_RETRY_ERRORS_SHOWN]:
        lines.append(f"- {issue.render()}")
    if len(errors) > MAX_RETRY_ERRORS_SHOWN:
        lines.append(f"- ...and {len(errors) - MAX_RETRY_ERRORS_SHOWN} more errors")
    lines.append("")
    lines.append(RETRY_INSTRUCTIONS)
    return "\n".join(lines)


def combine_guidance(guidance: Optional[str], retry_context: Optional[str]) -> Optional[str]:
    if not retry_context:
        return guidance
    if not guidance:
        return retry_context
    return f"{guidance}\n\n{retry_context}"


def extract_validation_errors(text: str) -> list[str]:
    """Return the bullet lines (`- ...`) from validator output."""
    return [line[2:].strip() for line in text.splitlines() if line.startswith("- ")]
