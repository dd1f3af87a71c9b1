"""Shared type definitions for stagedbuild.

This module contains dataclasses and enums shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class RunStatus(str, Enum):
    """Status of a recorded pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineState(str, Enum):
    """State of the staged build pipeline."""

    SCANNING = "scanning"
    RECIPE_BUILT = "recipe_built"
    KEY_DERIVED = "key_derived"
    DEPENDENCY_CACHE_HIT = "dependency_cache_hit"
    DEPENDENCY_BUILT = "dependency_built"
    APPLICATION_BUILT = "application_built"
    PACKAGED = "packaged"
    FAILED = "failed"


class Stage(str, Enum):
    """Pipeline stage names used to identify where an error surfaced."""

    SCAN = "scan"
    RECIPE = "recipe"
    CACHE_KEY = "cache_key"
    DEPENDENCIES = "dependencies"
    APPLICATION = "application"
    PACKAGE = "package"


class ManifestKind(str, Enum):
    """Kind of dependency-declaration file."""

    CARGO = "cargo"
    CARGO_LOCK = "cargo-lock"
    YAML = "yaml"
    JSON = "json"


@dataclass(frozen=True)
class ManifestFile:
    """A dependency-declaration file found in a project tree."""

    path: Path
    relative_path: str
    kind: ManifestKind


@dataclass
class ArtifactInfo:
    """Information about a single file in an artifact set."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


__all__ = [
    "ArtifactInfo",
    "ManifestFile",
    "ManifestKind",
    "PipelineState",
    "RunStatus",
    "Stage",
]
