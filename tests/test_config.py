from __future__ import annotations

from pathlib import Path

import pytest

from feature_spec_runner.config import RunnerSettings, load_runner_config, load_settings
from feature_spec_runner.constants import DEFAULT_AGENT_COMMAND, DEFAULT_MAX_RETRIES
from feature_spec_runner.errors import ConfigError


def _write_config(project_dir: Path, text: str) -> Path:
    path = project_dir / ".spec_runner" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def test_defaults_without_config(tmp_path: Path) -> None:
    settings = load_settings(tmp_path, environ={})
    assert settings == RunnerSettings()
    assert settings.max_retries == DEFAULT_MAX_RETRIES
    assert settings.agent_command == DEFAULT_AGENT_COMMAND
    assert settings.implement_method == "phases"
    assert settings.validate_command is None


def test_missing_config_file_is_not_an_error(tmp_path: Path) -> None:
    assert load_runner_config(tmp_path) == ({}, None)


def test_file_values_are_used(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        "max_retries: 5\nimplement_method: tasks\nspecs_dir: features\nunknown_key: ignored\n",
    )
    settings = load_settings(tmp_path, environ={})
    assert settings.max_retries == 5
    assert settings.implement_method == "tasks"
    assert settings.specs_dir == "features"


def test_precedence_file_env_cli(tmp_path: Path) -> None:
    _write_config(tmp_path, "max_retries: 5\nagent_command: 'from-file {prompt}'\n")
    environ = {"SPEC_RUNNER_MAX_RETRIES": "7", "SPEC_RUNNER_AGENT_COMMAND": "from-env {prompt}"}

    from_env = load_settings(tmp_path, environ=environ)
    assert from_env.max_retries == 7
    assert from_env.agent_command == "from-env {prompt}"

    from_cli = load_settings(tmp_path, overrides={"max_retries": 1, "agent_command": None}, environ=environ)
    assert from_cli.max_retries == 1
    assert from_cli.agent_command == "from-env {prompt}"


def test_assume_yes_from_environment(tmp_path: Path) -> None:
    assert load_settings(tmp_path, environ={"SPEC_RUNNER_YES": "true"}).skip_confirmations
    assert not load_settings(tmp_path, environ={"SPEC_RUNNER_YES": "0"}).skip_confirmations


@pytest.mark.parametrize(
    "text",
    [
        "max_retries: -1\n",
        "implement_method: sideways\n",
        "timeout: 0\n",
    ],
)
def test_invalid_values_raise_config_error(tmp_path: Path, text: str) -> None:
    _write_config(tmp_path, text)
    with pytest.raises(ConfigError) as excinfo:
        load_settings(tmp_path, environ={})
    assert "invalid runner configuration" in str(excinfo.value)
    assert excinfo.value.exit_code == 3


def test_unparseable_config_raises_config_error(tmp_path: Path) -> None:
    _write_config(tmp_path, "max_retries: [1\n")
    with pytest.raises(ConfigError, match="YAMLError"):
        load_settings(tmp_path, environ={})


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    _write_config(tmp_path, "- a\n- b\n")
    data, err = load_runner_config(tmp_path)
    assert data == {}
    assert err is not None and "expected object" in err


def test_non_utf8_config_raises_config_error(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "")
    path.write_bytes(b"max_retries: \xff\xfe\n")
    with pytest.raises(ConfigError, match="UnicodeDecodeError"):
        load_settings(tmp_path, environ={})
