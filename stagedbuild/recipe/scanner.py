"""Manifest scanner for project trees.

This module handles:
- Walking a project tree in a deterministic order
- Selecting dependency-declaration files by name, never by content
- Skipping build-output and VCS directories

Application source is never read here; only file names are inspected.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path

from stagedbuild.config import DEFAULT_EXCLUDE_DIRS
from stagedbuild.errors import ScanError
from stagedbuild.types import ManifestFile, ManifestKind, Stage

logger = logging.getLogger(__name__)

# File names recognized as dependency declarations
MANIFEST_PATTERNS: dict[str, ManifestKind] = {
    "Cargo.toml": ManifestKind.CARGO,
    "Cargo.lock": ManifestKind.CARGO_LOCK,
    "deps.yaml": ManifestKind.YAML,
    "deps.yml": ManifestKind.YAML,
    "deps.json": ManifestKind.JSON,
}


def classify_manifest(filename: str) -> ManifestKind | None:
    """Classify a file as a dependency declaration by its name.

    Args:
        filename: Base name of the file.

    Returns:
        ManifestKind, or None if the file is not a declaration.
    """
    return MANIFEST_PATTERNS.get(filename)


def scan_project(
    root: Path,
    exclude_dirs: Iterable[str] | None = None,
) -> list[ManifestFile]:
    """Find every dependency-declaration file in a project tree.

    Args:
        root: Project root directory.
        exclude_dirs: Directory names to skip anywhere in the tree.

    Returns:
        Manifest files sorted by relative POSIX path.

    Raises:
        ScanError: If the tree does not exist, cannot be read, or is empty.
    """
    if not root.exists():
        raise ScanError(
            f"Project tree does not exist: {root}", code="missing_tree", stage=Stage.SCAN
        )
    if not root.is_dir():
        raise ScanError(
            f"Project tree is not a directory: {root}",
            code="not_a_directory",
            stage=Stage.SCAN,
        )

    excluded = set(DEFAULT_EXCLUDE_DIRS if exclude_dirs is None else exclude_dirs)
    walk_errors: list[OSError] = []
    manifests: list[ManifestFile] = []
    file_count = 0

    for dirpath, dirnames, filenames in os.walk(root, onerror=walk_errors.append):
        # Prune in place so os.walk never descends into excluded directories
        dirnames[:] = sorted(d for d in dirnames if d not in excluded)
        current = Path(dirpath)
        for filename in sorted(filenames):
            file_count += 1
            kind = classify_manifest(filename)
            if kind is None:
                continue
            path = current / filename
            relative_path = path.relative_to(root).as_posix()
            manifests.append(
                ManifestFile(path=path, relative_path=relative_path, kind=kind)
            )
            logger.debug("Found %s manifest: %s", kind.value, relative_path)

    if walk_errors:
        first = walk_errors[0]
        raise ScanError(
            f"Project tree is unreadable: {first}",
            code="unreadable_tree",
            stage=Stage.SCAN,
        ) from first

    if file_count == 0:
        raise ScanError(
            f"Project tree is empty: {root}", code="empty_tree", stage=Stage.SCAN
        )

    manifests.sort(key=lambda m: m.relative_path)
    logger.info("Scanned %s: %d manifest(s) in %d file(s)", root, len(manifests), file_count)
    return manifests


__all__ = ["MANIFEST_PATTERNS", "classify_manifest", "scan_project"]
