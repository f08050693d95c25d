"""Define the pipeline stages, the artifacts they exchange, and stage selection.

The stage set is closed and its order is fixed. Callers pick any subset of
stages; execution always follows `CANONICAL_ORDER` regardless of how the
subset was assembled.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .constants import PLAN_FILE, SPEC_FILE, TASKS_FILE


class Stage(str, Enum):
    """Enumerate the named steps of the feature pipeline."""

    CONSTITUTION = "constitution"
    SPECIFY = "specify"
    CLARIFY = "clarify"
    PLAN = "plan"
    TASKS = "tasks"
    CHECKLIST = "checklist"
    ANALYZE = "analyze"
    IMPLEMENT = "implement"


CANONICAL_ORDER: tuple[Stage, ...] = (
    Stage.CONSTITUTION,
    Stage.SPECIFY,
    Stage.CLARIFY,
    Stage.PLAN,
    Stage.TASKS,
    Stage.CHECKLIST,
    Stage.ANALYZE,
    Stage.IMPLEMENT,
)

CORE_STAGES = frozenset({Stage.SPECIFY, Stage.PLAN, Stage.TASKS, Stage.IMPLEMENT})
OPTIONAL_STAGES = frozenset({Stage.CONSTITUTION, Stage.CLARIFY, Stage.CHECKLIST, Stage.ANALYZE})


class ArtifactName(str, Enum):
    """Name the persisted files that stages produce and consume."""

    CONSTITUTION_FILE = "constitution-file"
    SPEC = "spec"
    PLAN = "plan"
    TASKS_BREAKDOWN = "tasks-breakdown"


# Per-feature artifacts live in the feature directory under these names.
# The constitution is project-level and is located through CONSTITUTION_PATHS.
ARTIFACT_FILES: dict[ArtifactName, str] = {
    ArtifactName.SPEC: SPEC_FILE,
    ArtifactName.PLAN: PLAN_FILE,
    ArtifactName.TASKS_BREAKDOWN: TASKS_FILE,
}


@dataclass(frozen=True)
class ArtifactRequirement:
    """Static inputs and output of a single stage."""

    requires: frozenset[ArtifactName]
    produces: Optional[ArtifactName] = None


ARTIFACT_CATALOG: dict[Stage, ArtifactRequirement] = {
    Stage.CONSTITUTION: ArtifactRequirement(
        requires=frozenset(),
        produces=ArtifactName.CONSTITUTION_FILE,
    ),
    Stage.SPECIFY: ArtifactRequirement(
        requires=frozenset({ArtifactName.CONSTITUTION_FILE}),
        produces=ArtifactName.SPEC,
    ),
    # Clarify rewrites the spec in place.
    Stage.CLARIFY: ArtifactRequirement(requires=frozenset({ArtifactName.SPEC})),
    Stage.PLAN: ArtifactRequirement(
        requires=frozenset({ArtifactName.SPEC}),
        produces=ArtifactName.PLAN,
    ),
    Stage.TASKS: ArtifactRequirement(
        requires=frozenset({ArtifactName.PLAN}),
        produces=ArtifactName.TASKS_BREAKDOWN,
    ),
    Stage.CHECKLIST: ArtifactRequirement(requires=frozenset({ArtifactName.SPEC})),
    Stage.ANALYZE: ArtifactRequirement(
        requires=frozenset({ArtifactName.SPEC, ArtifactName.PLAN, ArtifactName.TASKS_BREAKDOWN}),
    ),
    Stage.IMPLEMENT: ArtifactRequirement(requires=frozenset({ArtifactName.TASKS_BREAKDOWN})),
}

# The artifact a stage validates after invocation. Stages missing here are
# validated against the spec (checklist, analyze) or not at all.
VALIDATED_ARTIFACT: dict[Stage, ArtifactName] = {
    Stage.SPECIFY: ArtifactName.SPEC,
    Stage.PLAN: ArtifactName.PLAN,
    Stage.TASKS: ArtifactName.TASKS_BREAKDOWN,
    Stage.IMPLEMENT: ArtifactName.TASKS_BREAKDOWN,
}

# Stages whose output is not schema-checked.
UNVALIDATED_STAGES = frozenset({Stage.CONSTITUTION, Stage.CLARIFY})


def producer_of(artifact: ArtifactName) -> Stage:
    """Return the single stage that produces `artifact`."""
    for stage in CANONICAL_ORDER:
        if ARTIFACT_CATALOG[stage].produces == artifact:
            return stage
    raise KeyError(artifact)


class StageSelector:
    """Hold a set of selected stages.

    Membership only: selecting a stage twice is a no-op and insertion order
    is never observable. `freeze()` returns an immutable copy for use once
    dependency resolution starts.
    """

    __slots__ = ("_stages", "_frozen")

    def __init__(self, stages: Iterable[Stage | str] = ()) -> None:
        self._stages: set[Stage] = {Stage(stage) for stage in stages}
        self._frozen = False

    def add(self, stage: Stage | str) -> "StageSelector":
        self._check_mutable()
        self._stages.add(Stage(stage))
        return self

    def set_all(self) -> "StageSelector":
        """Select the four core stages, leaving optional stages untouched."""
        self._check_mutable()
        self._stages.update(CORE_STAGES)
        return self

    def freeze(self) -> "StageSelector":
        frozen = StageSelector(self._stages)
        frozen._frozen = True
        return frozen

    @property
    def frozen(self) -> bool:
        return self._frozen

    def count(self) -> int:
        return len(self._stages)

    def has_any_optional_stage(self) -> bool:
        return bool(self._stages & OPTIONAL_STAGES)

    def canonical_order(self) -> list[Stage]:
        """Return the selected stages filtered from the fixed pipeline order."""
        return [stage for stage in CANONICAL_ORDER if stage in self._stages]

    def only(self, stage: Stage) -> bool:
        return self._stages == {stage}

    def __contains__(self, stage: object) -> bool:
        return stage in self._stages

    def __iter__(self):
        return iter(self.canonical_order())

    def __len__(self) -> int:
        return len(self._stages)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StageSelector):
            return NotImplemented
        return self._stages == other._stages

    def __repr__(self) -> str:
        names = ", ".join(stage.value for stage in self.canonical_order())
        return f"StageSelector({names})"

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RuntimeError("StageSelector is frozen once dependency resolution begins")
