"""Resolve which artifacts a stage selection needs before it can start.

Resolution is a fold over the selected stages in canonical order, carrying
the set of artifacts that will exist by the time each stage runs. Anything a
stage requires that is not in that set must already be on disk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import CONSTITUTION_PATHS
from .stages import (
    ARTIFACT_CATALOG,
    ARTIFACT_FILES,
    ArtifactName,
    Stage,
    StageSelector,
    producer_of,
)

# Remediation commands, keyed by the stage that produces the missing artifact.
_STAGE_FLAGS: dict[Stage, str] = {
    Stage.CONSTITUTION: "run --constitution",
    Stage.SPECIFY: 'run --specify "feature description"',
    Stage.PLAN: "run --plan",
    Stage.TASKS: "run --tasks",
}

_ARTIFACT_ORDER = (
    ArtifactName.CONSTITUTION_FILE,
    ArtifactName.SPEC,
    ArtifactName.PLAN,
    ArtifactName.TASKS_BREAKDOWN,
)


@dataclass(frozen=True)
class DependencyCheckResult:
    """Outcome of a dependency check; computed, never persisted."""

    missing_artifacts: frozenset[ArtifactName] = frozenset()
    requires_confirmation: bool = False
    remediation_message: str = ""
    external_requirements: frozenset[ArtifactName] = frozenset()
    overwrites: tuple[Path, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.missing_artifacts


def external_requirements(selector: StageSelector) -> frozenset[ArtifactName]:
    """Return artifacts needed by `selector` that no earlier selected stage produces."""
    will_exist: set[ArtifactName] = set()
    external: set[ArtifactName] = set()
    for stage in selector.canonical_order():
        requirement = ARTIFACT_CATALOG[stage]
        external.update(requirement.requires - will_exist)
        if requirement.produces is not None:
            will_exist.add(requirement.produces)
    return frozenset(external)


def requiring_stages(selector: StageSelector, artifact: ArtifactName) -> list[Stage]:
    """Return the selected stages that consume `artifact` before it is produced."""
    will_exist: set[ArtifactName] = set()
    stages: list[Stage] = []
    for stage in selector.canonical_order():
        requirement = ARTIFACT_CATALOG[stage]
        if artifact in requirement.requires and artifact not in will_exist:
            stages.append(stage)
        if requirement.produces is not None:
            will_exist.add(requirement.produces)
    return stages


def find_constitution(project_dir: Path) -> Optional[Path]:
    """Return the first existing constitution file, or None."""
    for relative in CONSTITUTION_PATHS:
        candidate = project_dir / relative
        if candidate.is_file():
            return candidate
    return None


def check_constitution_exists(selector: StageSelector, project_dir: Path) -> DependencyCheckResult:
    """Check the project-level constitution precondition.

    Applies once whenever a stage other than constitution is selected, even
    when constitution is selected too; a selection of only the constitution
    stage (or nothing) always passes.
    """
    if not any(stage != Stage.CONSTITUTION for stage in selector.canonical_order()):
        return DependencyCheckResult()
    if find_constitution(project_dir) is not None:
        return DependencyCheckResult()
    missing = frozenset({ArtifactName.CONSTITUTION_FILE})
    return DependencyCheckResult(
        missing_artifacts=missing,
        remediation_message=_render_remediation(selector, missing),
    )


def artifact_path(artifact: ArtifactName, project_dir: Path, feature_dir: Optional[Path]) -> Optional[Path]:
    """Return where `artifact` lives, or None when its location is unknown."""
    if artifact == ArtifactName.CONSTITUTION_FILE:
        return find_constitution(project_dir)
    if feature_dir is None:
        return None
    return feature_dir / ARTIFACT_FILES[artifact]


def check_artifact_dependencies(
    selector: StageSelector,
    project_dir: Path,
    feature_dir: Optional[Path],
) -> DependencyCheckResult:
    """Check that every external requirement of `selector` exists on disk.

    Args:
        selector: Selected stages.
        project_dir: Repository root, used for the constitution lookup.
        feature_dir: Feature directory holding spec/plan/tasks, or None when no
            feature exists yet (every per-feature requirement is then missing).

    Returns:
        A `DependencyCheckResult`. Missing artifacts are a hard failure;
        `requires_confirmation` flags stages about to overwrite existing files.
        The project constitution is checked separately by
        `check_constitution_exists`.
    """
    required = external_requirements(selector)
    missing: set[ArtifactName] = set()
    for artifact in required:
        path = artifact_path(artifact, project_dir, feature_dir)
        if path is None or not path.exists():
            missing.add(artifact)

    overwrites = _overwritten_artifacts(selector, project_dir, feature_dir)
    frozen_missing = frozenset(missing)
    result = DependencyCheckResult(
        missing_artifacts=frozen_missing,
        requires_confirmation=bool(overwrites),
        remediation_message=_render_remediation(selector, frozen_missing) if missing else "",
        external_requirements=frozenset(required),
        overwrites=tuple(overwrites),
    )
    logger.debug(
        "Dependency check for {}: external={} missing={} overwrites={}",
        [stage.value for stage in selector.canonical_order()],
        sorted(a.value for a in required),
        sorted(a.value for a in missing),
        [str(path) for path in overwrites],
    )
    return result


def _overwritten_artifacts(
    selector: StageSelector,
    project_dir: Path,
    feature_dir: Optional[Path],
) -> list[Path]:
    paths: list[Path] = []
    for stage in selector.canonical_order():
        produced = ARTIFACT_CATALOG[stage].produces
        # A new spec always gets a new feature directory.
        if produced is None or produced == ArtifactName.SPEC:
            continue
        path = artifact_path(produced, project_dir, feature_dir)
        if path is not None and path.exists():
            paths.append(path)
    return paths


def _render_remediation(selector: StageSelector, missing: frozenset[ArtifactName]) -> str:
    ordered = [artifact for artifact in _ARTIFACT_ORDER if artifact in missing]
    lines = ["Missing required artifacts:"]
    for artifact in ordered:
        producer = producer_of(artifact)
        lines.append(f"  - missing {artifact.value}: run the {producer.value} stage first")
    lines.append("")
    lines.append("Required by:")
    for artifact in ordered:
        consumers = requiring_stages(selector, artifact)
        if artifact == ArtifactName.CONSTITUTION_FILE and not consumers:
            consumers = [stage for stage in selector.canonical_order() if stage != Stage.CONSTITUTION]
        for stage in consumers:
            lines.append(f"  - {stage.value} requires {artifact.value}")
    lines.append("")
    lines.append("To fix, run:")
    for artifact in ordered:
        lines.append(f"  feature-spec-runner {_STAGE_FLAGS[producer_of(artifact)]}")
    return "\n".join(lines)
