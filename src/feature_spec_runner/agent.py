from __future__ import annotations

import shlex
import subprocess
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from .constants import DEFAULT_COMMAND_PREFIX, RUNS_DIR, STATE_DIR_NAME, TIMEOUT_EXIT_CODE
from .errors import ProcessError
from .io_utils import _read_log_tail
from .models import AgentResult, ExecutionUnit
from .prompts import build_stage_prompt
from .stages import Stage


class AgentInvoker(Protocol):
    """Run one isolated agent session for a stage (or implement unit)."""

    def invoke(
        self,
        stage: Stage,
        feature: Optional[str],
        guidance: Optional[str] = None,
        *,
        unit: Optional[ExecutionUnit] = None,
    ) -> AgentResult: ...


def _new_run_id(stage: Stage) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{stage.value}-{uuid.uuid4().hex[:6]}"


def _format_command(command: str, *, prompt: str, prompt_path: Path, project_dir: Path, run_dir: Path) -> list[str]:
    """Split the command template and substitute placeholders per argument.

    Splitting first keeps a multi-line prompt as a single argument.
    """
    parts = []
    for part in shlex.split(command):
        try:
            parts.append(
                part.format(
                    prompt_file=str(prompt_path),
                    project_dir=str(project_dir),
                    run_dir=str(run_dir),
                    prompt=prompt,
                )
            )
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Unknown placeholder in agent command: {exc}") from exc
    return parts


class SubprocessAgent:
    """Invoke the agent CLI once per session, with no state carried between runs.

    `command` is a template. It must either contain `{prompt}` or
    `{prompt_file}`, or contain a bare `-` argument, in which case the prompt
    is written to stdin. `{project_dir}` and `{run_dir}` are also available.
    Prompt, stdout and stderr of every invocation are kept under
    `.spec_runner/runs/<run-id>/`.
    """

    def __init__(
        self,
        command: str,
        project_dir: Path,
        *,
        timeout_seconds: Optional[int] = None,
        command_prefix: str = DEFAULT_COMMAND_PREFIX,
    ) -> None:
        uses_prompt_placeholder = "{prompt_file}" in command or "{prompt}" in command
        expects_stdin = "-" in shlex.split(command)
        if not uses_prompt_placeholder and not expects_stdin:
            raise ValueError("Agent command must include {prompt_file}, {prompt}, or '-' to accept stdin input.")
        self.command = command
        self.project_dir = project_dir
        self.timeout_seconds = timeout_seconds
        self.command_prefix = command_prefix
        self._stdin_prompt = expects_stdin and not uses_prompt_placeholder

    def invoke(
        self,
        stage: Stage,
        feature: Optional[str],
        guidance: Optional[str] = None,
        *,
        unit: Optional[ExecutionUnit] = None,
    ) -> AgentResult:
        prompt = build_stage_prompt(stage, feature=feature, guidance=guidance, unit=unit, prefix=self.command_prefix)
        run_dir = self.project_dir / STATE_DIR_NAME / RUNS_DIR / _new_run_id(stage)
        run_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = run_dir / "prompt.txt"
        prompt_path.write_text(prompt)
        stdout_path = run_dir / "stdout.log"
        stderr_path = run_dir / "stderr.log"
        label = unit.label if unit is not None else None

        command_parts = _format_command(
            self.command,
            prompt=prompt,
            prompt_path=prompt_path,
            project_dir=self.project_dir,
            run_dir=run_dir,
        )
        logger.debug("Agent command for {}: {} (run dir {})", stage.value, command_parts[0], run_dir)

        start = time.monotonic()
        with open(stdout_path, "w") as out, open(stderr_path, "w") as err:
            try:
                result = subprocess.run(
                    command_parts,
                    cwd=self.project_dir,
                    input=prompt if self._stdin_prompt else None,
                    stdin=None if self._stdin_prompt else subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    text=True,
                    timeout=self.timeout_seconds,
                )
                exit_code = result.returncode
                timed_out = False
            except subprocess.TimeoutExpired:
                err.write(f"\n[runner] Agent timed out after {self.timeout_seconds}s\n")
                exit_code = TIMEOUT_EXIT_CODE
                timed_out = True
            except OSError as exc:
                return AgentResult(
                    error=ProcessError(
                        f"failed to start agent command {command_parts[0]!r}: {exc}",
                        stage=stage.value,
                        unit=label,
                    ),
                    run_dir=run_dir,
                )

        runtime = time.monotonic() - start
        logger.debug("Agent for {} exited with {} after {:.1f}s", stage.value, exit_code, runtime)
        if timed_out:
            return AgentResult(
                error=ProcessError(
                    f"agent timed out after {self.timeout_seconds}s (logs: {run_dir})",
                    stage=stage.value,
                    unit=label,
                    exit_status=exit_code,
                    timed_out=True,
                ),
                run_dir=run_dir,
            )
        if exit_code != 0:
            tail = _read_log_tail(stderr_path, 500).strip()
            detail = f": {tail}" if tail else ""
            return AgentResult(
                error=ProcessError(
                    f"agent exited with status {exit_code}{detail}",
                    stage=stage.value,
                    unit=label,
                    exit_status=exit_code,
                ),
                run_dir=run_dir,
            )

        # The produced artifact is located by the caller from the feature directory.
        return AgentResult(run_dir=run_dir)
