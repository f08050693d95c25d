from __future__ import annotations

import itertools

import pytest

from feature_spec_runner.stages import (
    ARTIFACT_CATALOG,
    CANONICAL_ORDER,
    ArtifactName,
    Stage,
    StageSelector,
    producer_of,
)


def _is_subsequence(candidate: list[Stage], sequence: tuple[Stage, ...]) -> bool:
    remaining = iter(sequence)
    return all(stage in remaining for stage in candidate)


def test_canonical_order_filters_every_subset_in_fixed_order() -> None:
    for size in range(len(CANONICAL_ORDER) + 1):
        for subset in itertools.combinations(CANONICAL_ORDER, size):
            for arrangement in (subset, tuple(reversed(subset))):
                order = StageSelector(arrangement).canonical_order()
                assert set(order) == set(subset)
                assert len(order) == len(subset)
                assert _is_subsequence(order, CANONICAL_ORDER)


def test_canonical_order_ignores_insertion_order() -> None:
    selector = StageSelector()
    selector.add(Stage.IMPLEMENT).add("plan").add(Stage.CONSTITUTION)
    assert selector.canonical_order() == [Stage.CONSTITUTION, Stage.PLAN, Stage.IMPLEMENT]


def test_set_all_selects_only_core_stages() -> None:
    selector = StageSelector().set_all()
    assert selector.canonical_order() == [Stage.SPECIFY, Stage.PLAN, Stage.TASKS, Stage.IMPLEMENT]
    assert selector.count() == 4
    assert not selector.has_any_optional_stage()


def test_set_all_keeps_optional_stages_already_selected() -> None:
    selector = StageSelector([Stage.CLARIFY]).set_all()
    assert selector.count() == 5
    assert selector.has_any_optional_stage()
    assert Stage.CLARIFY in selector


@pytest.mark.parametrize("stage", [Stage.CONSTITUTION, Stage.CLARIFY, Stage.CHECKLIST, Stage.ANALYZE])
def test_has_any_optional_stage(stage: Stage) -> None:
    assert StageSelector([stage]).has_any_optional_stage()


def test_empty_selector() -> None:
    selector = StageSelector()
    assert selector.count() == 0
    assert selector.canonical_order() == []


def test_duplicates_are_ignored() -> None:
    assert StageSelector(["plan", Stage.PLAN, "plan"]).count() == 1


def test_unknown_stage_name_rejected() -> None:
    with pytest.raises(ValueError):
        StageSelector(["deploy"])


def test_frozen_selector_is_immutable() -> None:
    selector = StageSelector([Stage.PLAN])
    frozen = selector.freeze()
    with pytest.raises(RuntimeError):
        frozen.add(Stage.TASKS)
    with pytest.raises(RuntimeError):
        frozen.set_all()
    selector.add(Stage.TASKS)
    assert frozen.canonical_order() == [Stage.PLAN]


def test_every_artifact_has_exactly_one_producer() -> None:
    for artifact in ArtifactName:
        producers = [stage for stage, req in ARTIFACT_CATALOG.items() if req.produces == artifact]
        assert producers == [producer_of(artifact)]


def test_catalog_mapping() -> None:
    assert ARTIFACT_CATALOG[Stage.SPECIFY].requires == {ArtifactName.CONSTITUTION_FILE}
    assert ARTIFACT_CATALOG[Stage.CLARIFY].produces is None
    assert ARTIFACT_CATALOG[Stage.ANALYZE].requires == {
        ArtifactName.SPEC,
        ArtifactName.PLAN,
        ArtifactName.TASKS_BREAKDOWN,
    }
    assert ARTIFACT_CATALOG[Stage.IMPLEMENT].requires == {ArtifactName.TASKS_BREAKDOWN}
