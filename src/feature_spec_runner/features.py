"""Identify which feature directory a run works on."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .errors import FeatureNotFound

FEATURE_DIR_PATTERN = re.compile(r"^(\d{3})-(.+)$")


@dataclass(frozen=True)
class Feature:
    """A feature directory such as `specs/003-user-auth`."""

    number: str
    name: str
    directory: Path
    detected_by: str = "explicit"

    @property
    def identity(self) -> str:
        return f"{self.number}-{self.name}"


def _git_current_branch(project_dir: Path) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=project_dir,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _feature_from_dir(path: Path, detected_by: str) -> Optional[Feature]:
    match = FEATURE_DIR_PATTERN.match(path.name)
    if not match or not path.is_dir():
        return None
    return Feature(number=match.group(1), name=match.group(2), directory=path, detected_by=detected_by)


def list_features(specs_dir: Path) -> list[Feature]:
    if not specs_dir.is_dir():
        return []
    features = []
    for child in sorted(specs_dir.iterdir()):
        feature = _feature_from_dir(child, "scan")
        if feature is not None:
            features.append(feature)
    return features


def most_recent_feature(specs_dir: Path) -> Optional[Feature]:
    features = list_features(specs_dir)
    if not features:
        return None
    latest = max(features, key=lambda feature: (feature.directory.stat().st_mtime, feature.number))
    return Feature(latest.number, latest.name, latest.directory, detected_by="most_recent")


def resolve_explicit(specs_dir: Path, name: str) -> Feature:
    """Resolve `NNN-name`, `NNN` or `name` to an existing feature directory.

    Raises:
        FeatureNotFound: If nothing matches or a short name is ambiguous.
    """
    name = name.strip().rstrip("/")
    direct = _feature_from_dir(specs_dir / name, "explicit")
    if direct is not None:
        return direct
    candidates = [
        feature
        for feature in list_features(specs_dir)
        if feature.number == name or feature.name == name
    ]
    if len(candidates) == 1:
        found = candidates[0]
        return Feature(found.number, found.name, found.directory, detected_by="explicit")
    if len(candidates) > 1:
        names = ", ".join(feature.identity for feature in candidates)
        raise FeatureNotFound(f"feature {name!r} is ambiguous: {names}")
    raise FeatureNotFound(f"feature {name!r} not found under {specs_dir}")


def detect_feature(project_dir: Path, specs_dir: Path, explicit: Optional[str] = None) -> Optional[Feature]:
    """Detect the current feature.

    Order: explicit name, then a git branch named like a feature directory
    that exists, then the most recently modified feature directory.
    """
    if explicit:
        return resolve_explicit(specs_dir, explicit)

    branch = _git_current_branch(project_dir)
    if branch and FEATURE_DIR_PATTERN.match(branch):
        feature = _feature_from_dir(specs_dir / branch, "git_branch")
        if feature is not None:
            logger.debug("Detected feature {} from git branch", feature.identity)
            return feature

    feature = most_recent_feature(specs_dir)
    if feature is not None:
        logger.debug("Detected feature {} as most recently modified", feature.identity)
    return feature
