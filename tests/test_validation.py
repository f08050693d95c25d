from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

from spec_fixtures import VALID_PLAN, VALID_SPEC, phase, task, write_tasks, write_yaml

from feature_spec_runner.errors import ProcessError
from feature_spec_runner.models import ExecutionUnit, Phase, Task, ValidationResult
from feature_spec_runner.validation import (
    CommandArtifactValidator,
    SchemaArtifactValidator,
    UnitCompletionValidator,
)


def _messages(result: ValidationResult) -> list[str]:
    return [issue.render() for issue in result.errors]


class TestSchemaArtifactValidator:
    def test_valid_artifacts_pass(self, tmp_path: Path) -> None:
        validator = SchemaArtifactValidator()
        spec = write_yaml(tmp_path / "spec.yaml", VALID_SPEC)
        plan = write_yaml(tmp_path / "plan.yaml", VALID_PLAN)
        tasks = write_tasks(tmp_path, phase(1, task("T001"), task("T002", deps=["T001"])))

        assert validator.validate(spec).valid
        assert validator.validate(plan).valid
        assert validator.validate(tasks).valid

    def test_missing_plan_field_reports_path(self, tmp_path: Path) -> None:
        path = tmp_path / "plan.yaml"
        path.write_text("plan:\n  branch: 001-demo\ntechnical_context:\n  language: Python\n")

        result = SchemaArtifactValidator().validate(path)

        assert not result.valid
        assert [issue.path for issue in result.errors] == ["summary"]
        assert result.errors[0].message == "missing required field"

    def test_missing_nested_field_reports_parent_line(self, tmp_path: Path) -> None:
        path = tmp_path / "spec.yaml"
        path.write_text(
            "user_stories:\n  - id: US-001\nrequirements:\n  functional: []\nfeature:\n  created: 2025-01-01\n"
        )

        result = SchemaArtifactValidator().validate(path)

        assert [issue.path for issue in result.errors] == ["feature.branch"]
        assert result.errors[0].line == 6

    def test_invalid_task_status_has_line_and_hint(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.yaml"
        path.write_text(
            "tasks:\n"
            "  branch: 001-demo\n"
            "summary:\n"
            "  total_tasks: 1\n"
            "phases:\n"
            "  - number: 1\n"
            "    title: Setup\n"
            "    tasks:\n"
            "      - id: T001\n"
            "        title: Init\n"
            "        status: Done\n"
        )

        result = SchemaArtifactValidator().validate(path)

        assert not result.valid
        issue = result.errors[0]
        assert issue.path == "phases[0].tasks[0].status"
        assert issue.line == 11
        assert "invalid status 'Done'" in issue.message
        assert "Completed" in (issue.hint or "")

    def test_duplicate_ids_and_unknown_dependencies(self, tmp_path: Path) -> None:
        path = write_tasks(
            tmp_path,
            phase(1, task("T001"), task("T001")),
            phase(2, task("T002", deps=["T404"])),
        )

        messages = _messages(SchemaArtifactValidator().validate(path))

        assert any("duplicate task id T001" in message for message in messages)
        assert any("unknown dependency T404" in message for message in messages)

    def test_wrong_type_is_reported(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.yaml"
        path.write_text("tasks: {branch: x}\nsummary: {total_tasks: 0}\nphases: not-a-list\n")

        result = SchemaArtifactValidator().validate(path)

        assert [(issue.path, issue.message) for issue in result.errors] == [("phases", "expected list")]

    def test_invalid_yaml_reports_line(self, tmp_path: Path) -> None:
        path = tmp_path / "plan.yaml"
        path.write_text("plan:\n  branch: [unclosed\nsummary: x\n")

        result = SchemaArtifactValidator().validate(path)

        assert not result.valid
        assert "invalid YAML" in result.errors[0].message
        assert result.errors[0].line is not None

    def test_non_utf8_bytes_are_a_validation_failure(self, tmp_path: Path) -> None:
        path = tmp_path / "spec.yaml"
        path.write_bytes(b"feature: \xff\xfe\x00bad")

        result = SchemaArtifactValidator().validate(path)

        assert not result.valid
        assert result.errors[0].path == "spec.yaml"
        assert result.errors[0].message.startswith("not valid UTF-8")

    def test_missing_file(self, tmp_path: Path) -> None:
        result = SchemaArtifactValidator().validate(tmp_path / "spec.yaml")
        assert not result.valid
        assert result.errors[0].message == "artifact was not written"

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "spec.yaml"
        path.write_text("- just\n- a list\n")
        assert _messages(SchemaArtifactValidator().validate(path)) == ["<root> (line 1): top level must be a mapping"]


class TestUnitCompletionValidator:
    def _tasks(self, tmp_path: Path) -> Path:
        return write_tasks(
            tmp_path,
            phase(1, task("T001", "Completed"), task("T002", "Blocked")),
            phase(2, task("T003", "Completed"), task("T004", "InProgress")),
        )

    def test_phase_with_only_completed_and_blocked_tasks_passes(self, tmp_path: Path) -> None:
        unit = ExecutionUnit.for_phase(Phase(number=1))
        assert UnitCompletionValidator(SchemaArtifactValidator(), unit).validate(self._tasks(tmp_path)).valid

    def test_phase_with_open_task_fails(self, tmp_path: Path) -> None:
        unit = ExecutionUnit.for_phase(Phase(number=2))
        result = UnitCompletionValidator(SchemaArtifactValidator(), unit).validate(self._tasks(tmp_path))
        assert not result.valid
        assert "incomplete task T004 (InProgress)" in result.errors[0].message

    def test_task_must_be_completed(self, tmp_path: Path) -> None:
        path = self._tasks(tmp_path)
        done = ExecutionUnit.for_task(Task(id="T003", phase_number=2))
        open_task = ExecutionUnit.for_task(Task(id="T004", phase_number=2))

        assert UnitCompletionValidator(SchemaArtifactValidator(), done).validate(path).valid
        result = UnitCompletionValidator(SchemaArtifactValidator(), open_task).validate(path)
        assert result.errors[0].hint == "finish the task and set its status to Completed"

    def test_session_requires_every_task(self, tmp_path: Path) -> None:
        result = UnitCompletionValidator(SchemaArtifactValidator(), ExecutionUnit.session()).validate(
            self._tasks(tmp_path)
        )
        assert sorted(issue.path for issue in result.errors) == ["T002.status", "T004.status"]

    def test_structural_errors_come_first(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.yaml"
        path.write_text("phases: []\n")
        result = UnitCompletionValidator(SchemaArtifactValidator(), ExecutionUnit.session()).validate(path)
        assert {issue.path for issue in result.errors} == {"tasks", "summary", "phases"}

    def test_non_utf8_tasks_file_is_a_validation_failure(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.yaml"
        path.write_bytes(b"phases:\n  - number: \xff\xfe\n")

        result = UnitCompletionValidator(SchemaArtifactValidator(), ExecutionUnit.session()).validate(path)

        assert not result.valid
        assert "not valid UTF-8" in result.errors[0].message


def _python_command(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)} {{path}}"


class TestCommandArtifactValidator:
    def test_zero_exit_is_valid(self, tmp_path: Path) -> None:
        validator = CommandArtifactValidator(_python_command("import sys; assert sys.argv[1].endswith('plan.yaml')"), tmp_path)
        assert validator.validate(tmp_path / "plan.yaml").valid

    def test_dash_lines_become_issues(self, tmp_path: Path) -> None:
        code = "import sys; print('Checking'); print('- summary: missing'); print('- plan.branch: missing'); sys.exit(1)"
        result = CommandArtifactValidator(_python_command(code), tmp_path).validate(tmp_path / "plan.yaml")

        assert not result.valid
        assert [issue.message for issue in result.errors] == ["summary: missing", "plan.branch: missing"]

    def test_falls_back_to_last_output_line(self, tmp_path: Path) -> None:
        code = "import sys; sys.stderr.write('schema mismatch' + chr(10)); sys.exit(2)"
        result = CommandArtifactValidator(_python_command(code), tmp_path).validate(tmp_path / "plan.yaml")
        assert [issue.message for issue in result.errors] == ["schema mismatch"]

    def test_silent_failure_reports_exit_status(self, tmp_path: Path) -> None:
        code = "import sys; sys.exit(3)"
        result = CommandArtifactValidator(_python_command(code), tmp_path).validate(tmp_path / "plan.yaml")
        assert [issue.message for issue in result.errors] == ["validator exited with status 3"]

    def test_timeout_is_a_validation_failure(self, tmp_path: Path) -> None:
        validator = CommandArtifactValidator(_python_command("import time; time.sleep(5)"), tmp_path, timeout_seconds=1)
        result = validator.validate(tmp_path / "plan.yaml")
        assert "timed out" in result.errors[0].message

    def test_missing_executable_is_a_process_error(self, tmp_path: Path) -> None:
        validator = CommandArtifactValidator("no-such-validator-binary-xyz {path}", tmp_path)
        with pytest.raises(ProcessError):
            validator.validate(tmp_path / "plan.yaml")

    def test_command_must_reference_path(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            CommandArtifactValidator("validate-yaml", tmp_path)
