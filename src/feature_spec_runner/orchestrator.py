"""Drive a feature through the selected pipeline stages.

All checks that can reject a run (constitution, feature detection, missing
artifacts, task graph cycles, unknown resume points) happen before the
first agent invocation. Stages then run strictly in canonical order, one
agent session at a time. Cancellation is honoured between stages and between
implement units, never in the middle of a session.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .agent import AgentInvoker, SubprocessAgent
from .config import RunnerSettings
from .dependencies import (
    DependencyCheckResult,
    artifact_path,
    check_artifact_dependencies,
    check_constitution_exists,
)
from .errors import (
    ConfirmationDeclined,
    MissingPrerequisite,
    PipelineCancelled,
    UsageError,
)
from .execution_mode import ExecutionModeFlags, PhaseExecutionMode, resolve_execution_mode
from .executor import RetryableStageExecutor
from .features import Feature, detect_feature, list_features, most_recent_feature
from .models import ExecutionUnit, StageResult
from .scheduler import build_execution_units, unit_is_done
from .stages import ARTIFACT_FILES, VALIDATED_ARTIFACT, ArtifactName, Stage, StageSelector
from .task_graph import TaskGraph, parse_tasks
from .validation import (
    ArtifactValidator,
    CommandArtifactValidator,
    SchemaArtifactValidator,
    UnitCompletionValidator,
)

ConfirmCallback = Callable[[str], bool]


@dataclass
class PipelineResult:
    """Summary of a pipeline run."""

    feature: Optional[str] = None
    stages_run: list[Stage] = field(default_factory=list)
    results: list[StageResult] = field(default_factory=list)
    skipped_units: list[ExecutionUnit] = field(default_factory=list)
    planned_stages: list[Stage] = field(default_factory=list)
    planned_units: list[ExecutionUnit] = field(default_factory=list)
    execution_mode: Optional[PhaseExecutionMode] = None
    dependency_check: Optional[DependencyCheckResult] = None
    dry_run: bool = False

    @property
    def total_attempts(self) -> int:
        return sum(result.attempt_count for result in self.results)


@dataclass
class _RunContext:
    feature: Optional[Feature]
    mode: PhaseExecutionMode
    graph: Optional[TaskGraph] = None
    units: Optional[list[ExecutionUnit]] = None


class PipelineOrchestrator:
    """Run a stage selection for one feature, end to end, single-threaded."""

    def __init__(
        self,
        project_dir: Path,
        settings: Optional[RunnerSettings] = None,
        *,
        agent: Optional[AgentInvoker] = None,
        validator: Optional[ArtifactValidator] = None,
        cancel_event: Optional[threading.Event] = None,
        confirm: Optional[ConfirmCallback] = None,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.settings = settings or RunnerSettings()
        self.specs_dir = (self.project_dir / self.settings.specs_dir).resolve()
        self.agent = agent or SubprocessAgent(
            self.settings.agent_command,
            self.project_dir,
            timeout_seconds=self.settings.timeout,
            command_prefix=self.settings.command_prefix,
        )
        if validator is None:
            validator = (
                CommandArtifactValidator(self.settings.validate_command, self.project_dir)
                if self.settings.validate_command
                else SchemaArtifactValidator()
            )
        self.validator = validator
        self.cancel_event = cancel_event or threading.Event()
        self.confirm = confirm

    def cancel(self) -> None:
        """Request cancellation; the current session is allowed to finish."""
        logger.warning("Cancellation requested; no new stage or unit will start")
        self.cancel_event.set()

    def run(
        self,
        selector: StageSelector,
        *,
        feature_description: Optional[str] = None,
        spec_name: Optional[str] = None,
        guidance: Optional[str] = None,
        execution_mode: Optional[PhaseExecutionMode] = None,
        force_restart: bool = False,
        assume_yes: bool = False,
        dry_run: bool = False,
    ) -> PipelineResult:
        """Run the selected stages in canonical order.

        Args:
            selector: Stages to run; frozen before resolution starts.
            feature_description: Text for the specify stage.
            spec_name: Explicit feature directory name (`NNN-name`, `NNN` or `name`).
            guidance: Extra free text for every stage except specify.
            execution_mode: Implement-stage mode; defaults to the configured method.
            force_restart: Re-run implement units that are already complete.
            assume_yes: Skip the overwrite confirmation.
            dry_run: Perform every check, then stop before invoking the agent.

        Returns:
            A `PipelineResult` describing what ran (or would run).

        Raises:
            PipelineError: Any fatal condition; see `errors.py`.
        """
        selector = selector.freeze()
        stages = selector.canonical_order()
        if not stages:
            logger.info("No stages selected; nothing to do")
            return PipelineResult(dry_run=dry_run)

        mode = execution_mode or resolve_execution_mode(ExecutionModeFlags(), self.settings.implement_method)
        logger.info("Stages: {}", " -> ".join(stage.value for stage in stages))

        constitution = check_constitution_exists(selector, self.project_dir)
        if not constitution.ok:
            raise MissingPrerequisite(
                "Project constitution not found",
                missing=constitution.missing_artifacts,
                remediation=constitution.remediation_message,
            )

        if Stage.SPECIFY in selector:
            if not (feature_description or "").strip():
                raise UsageError("the specify stage needs a feature description", stage=Stage.SPECIFY.value)
            if spec_name:
                raise UsageError("--spec cannot be combined with the specify stage; specify creates a new feature")
            feature = None
        elif selector.only(Stage.CONSTITUTION):
            feature = None
        else:
            feature = detect_feature(self.project_dir, self.specs_dir, spec_name)
            if feature is None:
                logger.warning("No feature directory found under {}", self.specs_dir)
            else:
                logger.info("Feature: {} (detected by {})", feature.identity, feature.detected_by)

        deps = check_artifact_dependencies(selector, self.project_dir, feature.directory if feature else None)
        if not deps.ok:
            missing = ", ".join(sorted(artifact.value for artifact in deps.missing_artifacts))
            raise MissingPrerequisite(
                f"missing required artifacts: {missing}",
                missing=deps.missing_artifacts,
                remediation=deps.remediation_message,
            )

        ctx = _RunContext(feature=feature, mode=mode)
        result = PipelineResult(
            feature=feature.identity if feature else None,
            planned_stages=stages,
            execution_mode=mode if Stage.IMPLEMENT in selector else None,
            dependency_check=deps,
            dry_run=dry_run,
        )

        if Stage.IMPLEMENT in selector and Stage.TASKS not in selector and feature is not None:
            # The tasks artifact will not change before implement, so reject
            # cycles and bad resume points now, before anything runs.
            ctx.graph = parse_tasks(feature.directory / ARTIFACT_FILES[ArtifactName.TASKS_BREAKDOWN])
            ctx.units = build_execution_units(mode, ctx.graph, force_restart=force_restart)
            result.planned_units = list(ctx.units)

        if dry_run:
            logger.info("Dry run: {} stage(s) would run", len(stages))
            return result

        if deps.requires_confirmation and not (assume_yes or self.settings.skip_confirmations):
            files = "\n".join(f"  - {path}" for path in deps.overwrites)
            message = f"The following artifacts will be overwritten:\n{files}\nContinue?"
            if self.confirm is None:
                logger.warning("Overwriting existing artifacts:\n{}", files)
            elif not self.confirm(message):
                raise ConfirmationDeclined("aborted: existing artifacts would be overwritten")

        executor = RetryableStageExecutor(
            self.agent,
            self.validator,
            self.settings.max_retries,
            resolve_artifact=lambda stage, produced: produced or self._artifact_for(stage, ctx),
        )

        for stage in stages:
            self._check_cancelled(stage.value)
            if stage == Stage.IMPLEMENT:
                self._run_implement(executor, ctx, result, guidance=guidance, force_restart=force_restart)
            else:
                known = {f.directory for f in list_features(self.specs_dir)} if stage == Stage.SPECIFY else set()
                stage_result = executor.execute(
                    stage,
                    feature=ctx.feature.identity if ctx.feature else None,
                    guidance=feature_description if stage == Stage.SPECIFY else guidance,
                )
                result.results.append(stage_result)
                if stage == Stage.SPECIFY:
                    ctx.feature = self._new_feature(known) or ctx.feature
                    result.feature = ctx.feature.identity if ctx.feature else None
            result.stages_run.append(stage)
            logger.info("Stage {} complete", stage.value)

        logger.info(
            "Pipeline finished: {} stage(s), {} agent attempt(s)",
            len(result.stages_run),
            result.total_attempts,
        )
        return result

    def _check_cancelled(self, next_step: str) -> None:
        if self.cancel_event.is_set():
            raise PipelineCancelled(f"cancelled before {next_step}; completed work is kept on disk")

    def _new_feature(self, known: set[Path]) -> Optional[Feature]:
        """Return the feature directory created by the specify stage."""
        created = [feature for feature in list_features(self.specs_dir) if feature.directory not in known]
        if len(created) == 1:
            return created[0]
        return most_recent_feature(self.specs_dir)

    def _artifact_for(self, stage: Stage, ctx: _RunContext) -> Optional[Path]:
        artifact = VALIDATED_ARTIFACT.get(stage, ArtifactName.SPEC)
        feature = ctx.feature
        if stage == Stage.SPECIFY and feature is None:
            feature = most_recent_feature(self.specs_dir)
        return artifact_path(artifact, self.project_dir, feature.directory if feature else None)

    def _run_implement(
        self,
        executor: RetryableStageExecutor,
        ctx: _RunContext,
        result: PipelineResult,
        *,
        guidance: Optional[str],
        force_restart: bool,
    ) -> None:
        if ctx.feature is None:
            raise MissingPrerequisite(
                "no feature directory for the implement stage",
                missing={ArtifactName.TASKS_BREAKDOWN},
            )
        tasks_path = ctx.feature.directory / ARTIFACT_FILES[ArtifactName.TASKS_BREAKDOWN]
        if ctx.units is None:
            ctx.graph = parse_tasks(tasks_path)
            ctx.units = build_execution_units(ctx.mode, ctx.graph, force_restart=force_restart)
            result.planned_units = list(ctx.units)

        if not ctx.units:
            logger.info("All units already complete for mode {}; nothing to implement", ctx.mode.describe())
            return

        logger.info("Implement: {} unit(s) in mode {}", len(ctx.units), ctx.mode.describe())
        skip_done = ctx.mode.resumable and not force_restart
        for index, unit in enumerate(ctx.units, start=1):
            self._check_cancelled(unit.label)
            if skip_done and unit_is_done(unit, parse_tasks(tasks_path)):
                # An earlier unit's session may have finished this one too.
                logger.info("[{}] Already complete on disk; skipping", unit.label)
                result.skipped_units.append(unit)
                continue
            logger.info("[{}] Starting unit {}/{}", unit.label, index, len(ctx.units))
            stage_result = executor.execute(
                Stage.IMPLEMENT,
                feature=ctx.feature.identity,
                guidance=guidance,
                unit=unit,
                validator=UnitCompletionValidator(self.validator, unit),
            )
            result.results.append(stage_result)
