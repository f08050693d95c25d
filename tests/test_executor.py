"""Tests for the retry-until-valid stage executor."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from feature_spec_runner.errors import ProcessError, RetryExhausted
from feature_spec_runner.executor import RetryableStageExecutor
from feature_spec_runner.models import AgentResult, ExecutionUnit, Phase, ValidationIssue, ValidationResult
from feature_spec_runner.stages import Stage
from feature_spec_runner.validation import CommandArtifactValidator, SchemaArtifactValidator


class RecordingAgent:
    def __init__(self, artifact: Optional[Path], *, fail_on: Optional[int] = None) -> None:
        self.artifact = artifact
        self.fail_on = fail_on
        self.calls: list[tuple[Stage, Optional[str], Optional[str]]] = []

    def invoke(self, stage, feature, guidance=None, *, unit=None) -> AgentResult:
        self.calls.append((stage, feature, guidance))
        if self.fail_on is not None and len(self.calls) == self.fail_on:
            return AgentResult(error=ProcessError("exit status 1", stage=stage.value))
        return AgentResult(artifact_path=self.artifact)


class ScriptedValidator:
    """Fails the first `failures` validations, then passes."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def validate(self, artifact_path: Path) -> ValidationResult:
        self.calls += 1
        if self.calls <= self.failures:
            return ValidationResult.failed(
                [ValidationIssue(path="plan.summary", line=3, message="missing required field")]
            )
        return ValidationResult.ok()


ALWAYS = 10_000


def _executor(tmp_path: Path, failures: int, max_retries: int = 2, **agent_kwargs):
    agent = RecordingAgent(tmp_path / "plan.yaml", **agent_kwargs)
    validator = ScriptedValidator(failures)
    return RetryableStageExecutor(agent, validator, max_retries), agent, validator


def test_always_failing_validation_makes_exactly_max_retries_plus_one_attempts(tmp_path: Path) -> None:
    executor, agent, validator = _executor(tmp_path, failures=ALWAYS)

    with pytest.raises(RetryExhausted) as excinfo:
        executor.execute(Stage.PLAN, feature="001-demo")

    assert len(agent.calls) == 3
    assert validator.calls == 3
    assert excinfo.value.attempts == 3
    assert excinfo.value.stage == "plan"
    assert excinfo.value.issues[0].path == "plan.summary"


def test_fail_once_then_succeed_stops_after_two_attempts(tmp_path: Path) -> None:
    executor, agent, _ = _executor(tmp_path, failures=1)

    result = executor.execute(Stage.PLAN, feature="001-demo")

    assert result.attempt_count == 2
    assert result.retries == 1
    assert len(agent.calls) == 2
    assert not result.attempts[0].validation.valid
    assert result.attempts[1].validation.valid


def test_zero_retries_allows_a_single_attempt(tmp_path: Path) -> None:
    executor, agent, _ = _executor(tmp_path, failures=ALWAYS, max_retries=0)
    with pytest.raises(RetryExhausted):
        executor.execute(Stage.TASKS)
    assert len(agent.calls) == 1


def test_process_error_is_not_retried(tmp_path: Path) -> None:
    executor, agent, validator = _executor(tmp_path, failures=ALWAYS, fail_on=1)

    with pytest.raises(ProcessError):
        executor.execute(Stage.PLAN)

    assert len(agent.calls) == 1
    assert validator.calls == 0


def test_process_error_after_validation_failure_stops_immediately(tmp_path: Path) -> None:
    executor, agent, _ = _executor(tmp_path, failures=ALWAYS, max_retries=5, fail_on=2)
    with pytest.raises(ProcessError):
        executor.execute(Stage.PLAN)
    assert len(agent.calls) == 2


@pytest.mark.parametrize("stage", [Stage.CONSTITUTION, Stage.CLARIFY])
def test_unvalidated_stages_skip_validation(tmp_path: Path, stage: Stage) -> None:
    executor, agent, validator = _executor(tmp_path, failures=ALWAYS)

    result = executor.execute(stage)

    assert result.attempt_count == 1
    assert validator.calls == 0
    assert len(agent.calls) == 1


def test_retry_passes_validation_errors_as_guidance(tmp_path: Path) -> None:
    executor, agent, _ = _executor(tmp_path, failures=1)

    executor.execute(Stage.PLAN, feature="001-demo", guidance="prefer sqlite")

    first_guidance = agent.calls[0][2]
    retry_guidance = agent.calls[1][2]
    assert first_guidance == "prefer sqlite"
    assert retry_guidance.startswith("prefer sqlite")
    assert "RETRY 1/2" in retry_guidance
    assert "- plan.summary (line 3): missing required field" in retry_guidance


def test_attempt_counters_are_per_call(tmp_path: Path) -> None:
    executor, _, validator = _executor(tmp_path, failures=1)

    first = executor.execute(Stage.PLAN)
    second = executor.execute(Stage.TASKS)

    assert first.attempt_count == 2
    assert second.attempt_count == 1
    assert validator.calls == 3


def test_missing_artifact_counts_as_validation_failure(tmp_path: Path) -> None:
    agent = RecordingAgent(None)
    validator = ScriptedValidator(0)
    executor = RetryableStageExecutor(agent, validator, 1)

    with pytest.raises(RetryExhausted) as excinfo:
        executor.execute(Stage.SPECIFY)

    assert len(agent.calls) == 2
    assert validator.calls == 0
    assert "did not produce" in excinfo.value.issues[0].message


def test_resolver_supplies_artifact_path(tmp_path: Path) -> None:
    agent = RecordingAgent(None)
    seen: list[Path] = []

    class PathValidator:
        def validate(self, artifact_path: Path) -> ValidationResult:
            seen.append(artifact_path)
            return ValidationResult.ok()

    executor = RetryableStageExecutor(
        agent,
        PathValidator(),
        2,
        resolve_artifact=lambda stage, produced: tmp_path / f"{stage.value}.yaml",
    )
    result = executor.execute(Stage.PLAN)
    assert seen == [tmp_path / "plan.yaml"]
    assert result.artifact_path == tmp_path / "plan.yaml"


def test_unit_label_in_exhausted_error(tmp_path: Path) -> None:
    executor, _, _ = _executor(tmp_path, failures=ALWAYS, max_retries=0)
    unit = ExecutionUnit.session()
    with pytest.raises(RetryExhausted) as excinfo:
        executor.execute(Stage.IMPLEMENT, unit=unit)
    assert excinfo.value.unit == "all tasks"
    assert "unit 'all tasks'" in str(excinfo.value)


def test_negative_max_retries_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        RetryableStageExecutor(RecordingAgent(None), ScriptedValidator(0), -1)


def test_undecodable_artifact_is_retried_like_any_invalid_artifact(tmp_path: Path) -> None:
    artifact = tmp_path / "plan.yaml"
    artifact.write_bytes(b"feature: \xff\xfe\x00bad")
    agent = RecordingAgent(artifact)
    executor = RetryableStageExecutor(agent, SchemaArtifactValidator(), 2)

    with pytest.raises(RetryExhausted) as excinfo:
        executor.execute(Stage.PLAN, feature="001-demo")

    assert len(agent.calls) == 3
    assert "not valid UTF-8" in excinfo.value.issues[0].message
    assert "not valid UTF-8" in agent.calls[1][2]


class TestValidatorProcessErrors:
    def test_error_is_tagged_with_stage_and_unit(self, tmp_path: Path) -> None:
        class BrokenValidator:
            def validate(self, artifact_path: Path) -> ValidationResult:
                raise ProcessError("failed to start validate command 'lint'")

        agent = RecordingAgent(tmp_path / "tasks.yaml")
        executor = RetryableStageExecutor(agent, BrokenValidator(), 2)
        unit = ExecutionUnit.for_phase(Phase(number=1))

        with pytest.raises(ProcessError) as excinfo:
            executor.execute(Stage.IMPLEMENT, unit=unit)

        assert excinfo.value.stage == "implement"
        assert excinfo.value.unit == "phase 1"
        assert str(excinfo.value).startswith("[process_error] stage 'implement', unit 'phase 1': failed to start")
        assert isinstance(excinfo.value.__cause__, ProcessError)
        assert len(agent.calls) == 1

    def test_missing_validate_command_names_the_stage(self, tmp_path: Path) -> None:
        agent = RecordingAgent(tmp_path / "plan.yaml")
        validator = CommandArtifactValidator("no-such-validator-binary-xyz {path}", tmp_path)
        executor = RetryableStageExecutor(agent, validator, 2)

        with pytest.raises(ProcessError) as excinfo:
            executor.execute(Stage.PLAN)

        assert excinfo.value.stage == "plan"
        assert "stage 'plan'" in str(excinfo.value)
        assert len(agent.calls) == 1
