"""Application stage: compile the application against prebuilt dependencies.

The application stage never compiles dependencies. It refuses to run
without an artifact set that is present, complete and built for the same
cache key as the recipe.
"""

from __future__ import annotations

import logging
from pathlib import Path

from stagedbuild.builds.artifacts import (
    ApplicationArtifact,
    ArtifactSet,
    describe_application,
    is_executable,
)
from stagedbuild.builds.dependencies import Deadline
from stagedbuild.builds.toolchain import Toolchain
from stagedbuild.errors import (
    ApplicationBuildError,
    BuildTimeoutError,
    MissingDependencyArtifactError,
    ScanError,
    ToolchainError,
)
from stagedbuild.recipe.parsers import load_manifest_data
from stagedbuild.recipe.scanner import MANIFEST_PATTERNS
from stagedbuild.types import ManifestFile, ManifestKind, Stage

logger = logging.getLogger(__name__)


def resolve_binary_name(project_root: Path, override: str | None = None) -> str:
    """Determine the name of the executable to build.

    Resolution order: explicit override, first ``[[bin]]`` name in the root
    ``Cargo.toml``, its ``[package]`` name, then ``binary`` in a root
    ``deps.yaml``/``deps.yml``/``deps.json``.

    Args:
        project_root: Project root directory.
        override: Explicitly configured name.

    Returns:
        Executable name.

    Raises:
        ApplicationBuildError: If no name can be determined.
    """
    if override:
        return override

    for filename, kind in MANIFEST_PATTERNS.items():
        if kind is ManifestKind.CARGO_LOCK:
            continue
        path = project_root / filename
        if not path.is_file():
            continue
        try:
            data = load_manifest_data(ManifestFile(path, filename, kind))
        except ScanError as e:
            raise ApplicationBuildError(
                f"Cannot determine binary name: {e}", code="binary_name"
            ) from e

        if kind is ManifestKind.CARGO:
            bins = data.get("bin")
            if isinstance(bins, list):
                for entry in bins:
                    if isinstance(entry, dict) and entry.get("name"):
                        return str(entry["name"])
            package = data.get("package")
            if isinstance(package, dict) and package.get("name"):
                return str(package["name"])
        elif data.get("binary"):
            return str(data["binary"])

    raise ApplicationBuildError(
        f"Cannot determine binary name for {project_root}; set binary_name",
        code="binary_name",
    )


def validate_artifact_set(
    artifact_set: ArtifactSet | None,
    cache_key: str,
) -> ArtifactSet:
    """Check that an artifact set is usable for a recipe's cache key.

    Args:
        artifact_set: Artifact set from the dependency stage.
        cache_key: Cache key of the recipe being built.

    Returns:
        The artifact set.

    Raises:
        MissingDependencyArtifactError: If it is absent, mismatched or incomplete.
    """
    if artifact_set is None:
        raise MissingDependencyArtifactError(
            "Application stage requires a dependency artifact set",
            code="no_artifact_set",
        )
    if artifact_set.cache_key != cache_key:
        raise MissingDependencyArtifactError(
            f"Artifact set was built for {artifact_set.cache_key[:23]}, "
            f"recipe requires {cache_key[:23]}",
            code="artifact_key_mismatch",
        )
    if not artifact_set.root.is_dir():
        raise MissingDependencyArtifactError(
            f"Artifact set directory is missing: {artifact_set.root}",
            code="artifact_root_missing",
        )
    missing = artifact_set.missing_entries()
    if missing:
        raise MissingDependencyArtifactError(
            f"Artifact set is incomplete, missing: {', '.join(missing[:5])}",
            code="artifact_incomplete",
        )
    return artifact_set


class ApplicationStageBuilder:
    """Compiles the application against a warmed dependency artifact set."""

    def __init__(
        self,
        toolchain: Toolchain,
        binary_name: str | None = None,
        profile: str = "release",
    ) -> None:
        self.toolchain = toolchain
        self.binary_name = binary_name
        self.profile = profile

    def build(
        self,
        project_root: Path,
        artifact_set: ArtifactSet | None,
        cache_key: str,
        output_dir: Path,
        timeout: float | Deadline | None = None,
    ) -> ApplicationArtifact:
        """Compile the application.

        Args:
            project_root: Full source tree.
            artifact_set: Dependency artifact set for ``cache_key``.
            cache_key: Cache key of the recipe being built.
            output_dir: Directory receiving build outputs.
            timeout: Seconds (or a shared Deadline) bounding the stage.

        Returns:
            ApplicationArtifact describing the executable.

        Raises:
            MissingDependencyArtifactError: If the artifact set is unusable.
            ApplicationBuildError: If compilation fails or yields no executable.
            BuildTimeoutError: If the stage exceeds its budget.
        """
        artifact_set = validate_artifact_set(artifact_set, cache_key)
        deadline = timeout if isinstance(timeout, Deadline) else Deadline(timeout)
        deadline.check(Stage.APPLICATION)

        binary_name = resolve_binary_name(project_root, self.binary_name)
        log_path = output_dir / "application.log"
        logger.info("Building application %s from %s", binary_name, project_root)

        try:
            binary = self.toolchain.compile_application(
                project_root,
                artifact_set.root,
                output_dir,
                binary_name,
                log_path,
                profile=self.profile,
                timeout=deadline.remaining(),
            )
        except BuildTimeoutError as e:
            e.stage = Stage.APPLICATION
            raise
        except (ToolchainError, OSError) as e:
            raise ApplicationBuildError(
                f"Application build failed: {e}",
                log_path=getattr(e, "log_path", None),
            ) from e

        if not binary.is_file():
            raise ApplicationBuildError(
                f"Build produced no executable at {binary}",
                code="missing_binary",
                log_path=log_path,
            )
        if not is_executable(binary):
            raise ApplicationBuildError(
                f"Build output is not executable: {binary}",
                code="not_executable",
                log_path=log_path,
            )

        artifact = describe_application(binary, binary_name, cache_key)
        logger.info(
            "Built application %s (%d bytes, sha256 %s...)",
            binary_name,
            artifact.size_bytes,
            artifact.sha256[:16],
        )
        return artifact


__all__ = [
    "ApplicationStageBuilder",
    "resolve_binary_name",
    "validate_artifact_set",
]
