"""Provide the public `feature_spec_runner` package exports."""

from __future__ import annotations

from .orchestrator import PipelineOrchestrator, PipelineResult
from .stages import Stage, StageSelector

__all__ = ["PipelineOrchestrator", "PipelineResult", "Stage", "StageSelector"]
