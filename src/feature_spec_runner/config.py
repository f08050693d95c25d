"""Load optional runner configuration from `.spec_runner/config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .constants import (
    CONFIG_FILE,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_COMMAND_PREFIX,
    DEFAULT_IMPLEMENT_METHOD,
    DEFAULT_MAX_RETRIES,
    DEFAULT_SPECS_DIR,
    DEFAULT_TIMEOUT_SECONDS,
    ENV_AGENT_COMMAND,
    ENV_ASSUME_YES,
    ENV_MAX_RETRIES,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error


class RunnerSettings(BaseModel):
    """Validated runner settings."""

    agent_command: str = Field(DEFAULT_AGENT_COMMAND, min_length=1)
    command_prefix: str = DEFAULT_COMMAND_PREFIX
    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0)
    timeout: int = Field(DEFAULT_TIMEOUT_SECONDS, gt=0)
    specs_dir: str = DEFAULT_SPECS_DIR
    implement_method: Literal["phases", "tasks", "single-session"] = DEFAULT_IMPLEMENT_METHOD
    skip_confirmations: bool = False
    validate_command: Optional[str] = None

    model_config = {"extra": "ignore"}


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if environ.get(ENV_MAX_RETRIES):
        overrides["max_retries"] = environ[ENV_MAX_RETRIES]
    if environ.get(ENV_AGENT_COMMAND):
        overrides["agent_command"] = environ[ENV_AGENT_COMMAND]
    if environ.get(ENV_ASSUME_YES, "").strip().lower() in {"1", "true", "yes"}:
        overrides["skip_confirmations"] = True
    return overrides


def _format_validation_error(exc: ValidationError) -> str:
    lines = []
    for item in exc.errors():
        field_name = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        lines.append(f"{field_name}: {item.get('msg')}")
    return "; ".join(lines)


def load_settings(
    project_dir: Path,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunnerSettings:
    """Resolve settings from defaults, the config file, environment and CLI.

    Later sources win: config file, then environment, then `overrides` (CLI
    flags). `None` override values are ignored.

    Raises:
        ConfigError: When the file cannot be parsed or a value is invalid.
    """
    raw, err = load_runner_config(project_dir)
    if err:
        raise ConfigError(f"cannot read {STATE_DIR_NAME}/{CONFIG_FILE}: {err}")
    merged: dict[str, Any] = dict(raw)
    merged.update(_env_overrides(os.environ if environ is None else environ))
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    try:
        return RunnerSettings(**merged)
    except ValidationError as exc:
        raise ConfigError(f"invalid runner configuration: {_format_validation_error(exc)}") from exc
