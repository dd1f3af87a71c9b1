"""Packaging of the application executable into a minimal runtime layout.

Only the executable crosses into the runtime layout, at a fixed path::

    <runtime_root>/usr/local/bin/<name>
    <runtime_root>/entrypoint.json

``entrypoint.json`` names the executable as the default entry point,
invoked with no arguments. Nothing else from the build stages is copied.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path, PurePosixPath

from stagedbuild.builds.artifacts import (
    ApplicationArtifact,
    compute_file_hash,
    is_executable,
)
from stagedbuild.errors import PackagingError

logger = logging.getLogger(__name__)

INSTALL_PATH = "/usr/local/bin"
ENTRYPOINT_FILENAME = "entrypoint.json"
EXECUTABLE_MODE = 0o755


def runtime_binary_path(name: str, install_path: str = INSTALL_PATH) -> PurePosixPath:
    """Return the executable's absolute path inside the runtime environment."""
    return PurePosixPath(install_path) / name


def package_artifact(
    artifact: ApplicationArtifact,
    runtime_root: Path,
    install_path: str = INSTALL_PATH,
) -> Path:
    """Copy the executable into the runtime layout and set the entry point.

    Args:
        artifact: Application artifact from the application stage.
        runtime_root: Root directory of the runtime layout.
        install_path: Absolute directory inside the runtime for the executable.

    Returns:
        Host path of the packaged executable.

    Raises:
        PackagingError: If the artifact is missing, not executable, or altered.
    """
    source = artifact.path
    if not source.is_file():
        raise PackagingError(f"Application artifact is missing: {source}", code="missing_artifact")
    if not is_executable(source):
        raise PackagingError(
            f"Application artifact is not executable: {source}", code="not_executable"
        )
    if compute_file_hash(source) != artifact.sha256:
        raise PackagingError(
            f"Application artifact changed since it was built: {source}",
            code="checksum_mismatch",
        )

    runtime_path = runtime_binary_path(artifact.name, install_path)
    target = runtime_root / runtime_path.relative_to("/")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        target.chmod(EXECUTABLE_MODE)
        entrypoint = {"entrypoint": [str(runtime_path)], "args": []}
        (runtime_root / ENTRYPOINT_FILENAME).write_text(
            json.dumps(entrypoint, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
    except OSError as e:
        raise PackagingError(
            f"Failed to package {source} into {runtime_root}: {e}", code="copy_failed"
        ) from e

    logger.info("Packaged %s at %s (entry point %s)", artifact.name, target, runtime_path)
    return target


def read_entrypoint(runtime_root: Path) -> list[str]:
    """Return the entry point command recorded in a runtime layout.

    Raises:
        PackagingError: If the layout has no valid entry point.
    """
    try:
        data = json.loads((runtime_root / ENTRYPOINT_FILENAME).read_text(encoding="utf-8"))
        command = list(data["entrypoint"]) + list(data.get("args", []))
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise PackagingError(
            f"No valid entry point in {runtime_root}: {e}", code="missing_entrypoint"
        ) from e
    return command


__all__ = [
    "ENTRYPOINT_FILENAME",
    "EXECUTABLE_MODE",
    "INSTALL_PATH",
    "package_artifact",
    "read_entrypoint",
    "runtime_binary_path",
]
