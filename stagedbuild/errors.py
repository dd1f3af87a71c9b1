"""Error taxonomy for the staged build pipeline.

Every error carries a stable ``code`` for programmatic handling, the
``stage`` it surfaced in (filled in by the pipeline when not known at the
raise site) and a distinct process ``exit_code`` used by the CLI.
"""

from __future__ import annotations

from pathlib import Path

from stagedbuild.types import Stage


class StagedBuildError(Exception):
    """Base error for all pipeline failures."""

    exit_code = 1
    default_code = "staged_build_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        stage: Stage | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.stage = stage

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class ScanError(StagedBuildError):
    """Raised when the project tree is unreadable, empty or malformed."""

    exit_code = 10
    default_code = "scan_error"


class ConflictError(StagedBuildError):
    """Raised when two declarations of one dependency disagree."""

    exit_code = 11
    default_code = "dependency_conflict"

    def __init__(
        self,
        identifier: str,
        first: str,
        second: str,
        stage: Stage | None = Stage.RECIPE,
    ) -> None:
        super().__init__(
            f"Conflicting declarations for dependency '{identifier}': "
            f"{first} vs {second}",
            stage=stage,
        )
        self.identifier = identifier
        self.first = first
        self.second = second


class DependencyBuildError(StagedBuildError):
    """Raised when any dependency fails to compile. Nothing is cached."""

    exit_code = 12
    default_code = "dependency_build_failed"

    def __init__(
        self,
        message: str,
        failed: list[str] | None = None,
        code: str | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message, code=code, stage=Stage.DEPENDENCIES)
        self.failed = failed or []
        self.log_path = log_path


class MissingDependencyArtifactError(StagedBuildError):
    """Raised when the application stage lacks a valid, matching artifact set."""

    exit_code = 13
    default_code = "missing_dependency_artifacts"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message, code=code, stage=Stage.APPLICATION)


class ApplicationBuildError(StagedBuildError):
    """Raised when application compilation fails."""

    exit_code = 14
    default_code = "application_build_failed"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message, code=code, stage=Stage.APPLICATION)
        self.log_path = log_path


class PackagingError(StagedBuildError):
    """Raised when the final artifact is missing or not executable."""

    exit_code = 15
    default_code = "packaging_failed"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message, code=code, stage=Stage.PACKAGE)


class BuildTimeoutError(StagedBuildError, TimeoutError):
    """Raised when a stage exceeds its time budget."""

    exit_code = 16
    default_code = "timeout"


class CacheStoreError(StagedBuildError):
    """Raised on cache store failures. Retry the whole pipeline, never a stage."""

    exit_code = 17
    default_code = "cache_store_error"


class RecipeError(StagedBuildError):
    """Raised when a recipe file is invalid or does not match the tree."""

    exit_code = 18
    default_code = "recipe_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message, code=code, stage=Stage.RECIPE)


class PipelineCancelledError(StagedBuildError):
    """Raised when a caller cancels the pipeline."""

    exit_code = 19
    default_code = "cancelled"


class ToolchainError(StagedBuildError):
    """Raised by a toolchain when a compile command fails.

    Stage builders convert this into their own stage error.
    """

    default_code = "toolchain_error"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: Path | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.returncode = exit_code
        self.log_path = log_path


class InvalidTransitionError(StagedBuildError):
    """Raised when the pipeline attempts an illegal state transition."""

    default_code = "invalid_transition"


__all__ = [
    "ApplicationBuildError",
    "BuildTimeoutError",
    "CacheStoreError",
    "ConflictError",
    "DependencyBuildError",
    "InvalidTransitionError",
    "MissingDependencyArtifactError",
    "PackagingError",
    "PipelineCancelledError",
    "RecipeError",
    "ScanError",
    "StagedBuildError",
    "ToolchainError",
]
