"""Artifact sets and manifest generation.

This module handles:
- Computing checksums of build outputs
- Describing a directory of compiled dependency outputs as an ArtifactSet
- Generating, writing and reading artifact set manifests
- Describing the final application executable
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from stagedbuild.errors import DependencyBuildError
from stagedbuild.types import ArtifactInfo

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"
MANIFEST_VERSION = "1.0"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")

# Hex digits of the identifier digest appended to rewritten directory names
DIRNAME_DIGEST_LENGTH = 12


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def dependency_dirname(identifier: str) -> str:
    """Return the directory name holding one dependency's outputs.

    Plain identifiers are used as is. Anything else is sanitized and gets
    an ``@<digest>`` suffix; ``@`` never appears in a plain name, so two
    identifiers never share a directory (``a/b`` and ``a_b`` stay apart).
    """
    if identifier not in ("", ".", "..") and not _UNSAFE_CHARS.search(identifier):
        return identifier
    digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
    sanitized = _UNSAFE_CHARS.sub("_", identifier)
    return f"{sanitized}@{digest[:DIRNAME_DIGEST_LENGTH]}"


@dataclass
class ArtifactSet:
    """Compiled outputs for all dependencies of one recipe.

    Attributes:
        cache_key: Cache key of the recipe the set was built from.
        root: Directory containing the outputs and manifest.json.
        dependencies: Identifiers of the compiled dependencies.
        entries: Files in the set (kind is the dependency directory).
        created_at: When the set was first built (ISO 8601).
    """

    cache_key: str
    root: Path
    dependencies: list[str] = field(default_factory=list)
    entries: list[ArtifactInfo] = field(default_factory=list)
    created_at: str | None = None

    @property
    def size_bytes(self) -> int:
        return sum(e.size_bytes for e in self.entries)

    def missing_entries(self) -> list[str]:
        """Return relative paths of listed entries absent on disk."""
        return [
            e.relative_path
            for e in self.entries
            if not (self.root / e.relative_path).is_file()
        ]


@dataclass
class ApplicationArtifact:
    """The final compiled executable.

    Attributes:
        path: Location of the executable in the build output directory.
        name: Executable name.
        sha256: SHA-256 of the executable.
        size_bytes: File size.
        cache_key: Cache key of the artifact set it was built against.
    """

    path: Path
    name: str
    sha256: str
    size_bytes: int
    cache_key: str


def describe_application(path: Path, name: str, cache_key: str) -> ApplicationArtifact:
    """Build an ApplicationArtifact for a compiled executable."""
    return ApplicationArtifact(
        path=path,
        name=name,
        sha256=compute_file_hash(path),
        size_bytes=path.stat().st_size,
        cache_key=cache_key,
    )


def is_executable(path: Path) -> bool:
    """Check that a path is a regular file with an execute bit for us."""
    return path.is_file() and os.access(path, os.X_OK)


def discover_entries(root: Path) -> list[ArtifactInfo]:
    """Discover every output file in an artifact set directory.

    Args:
        root: Artifact set directory.

    Returns:
        List of ArtifactInfo sorted by relative path; manifest.json excluded.
    """
    if not root.exists():
        logger.warning("Artifact directory does not exist: %s", root)
        return []

    entries: list[ArtifactInfo] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(root)
        if relative.as_posix() == MANIFEST_FILENAME:
            continue

        entries.append(
            ArtifactInfo(
                filename=path.name,
                relative_path=relative.as_posix(),
                size_bytes=path.stat().st_size,
                sha256=compute_file_hash(path),
                kind=relative.parts[0] if len(relative.parts) > 1 else None,
            )
        )

    logger.debug("Discovered %d artifact file(s) in %s", len(entries), root)
    return entries


def generate_manifest(
    artifact_set: ArtifactSet,
    build_inputs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate an artifact set manifest.

    The manifest contains:
    - The cache key and compiled dependency identifiers
    - List of artifact files with metadata
    - Creation timestamp
    - Optional recipe snapshot

    Args:
        artifact_set: Artifact set to describe.
        build_inputs: Optional canonical recipe dictionary.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    created_at = artifact_set.created_at or datetime.now(timezone.utc).isoformat()

    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "cache_key": artifact_set.cache_key,
        "created_at": created_at,
        "dependencies": sorted(artifact_set.dependencies),
        "artifacts": [asdict(e) for e in artifact_set.entries],
    }
    if build_inputs:
        manifest["build_inputs"] = build_inputs

    manifest["summary"] = {
        "total_artifacts": len(artifact_set.entries),
        "total_size_bytes": artifact_set.size_bytes,
    }
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.debug("Wrote manifest to %s", output_path)
    return output_path


def read_manifest(root: Path) -> ArtifactSet:
    """Load an artifact set from its directory's manifest.json.

    Args:
        root: Artifact set directory.

    Returns:
        ArtifactSet rooted at ``root``.

    Raises:
        OSError: If the manifest cannot be read.
        ValueError: If the manifest is malformed.
    """
    with (root / MANIFEST_FILENAME).open(encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict) or "cache_key" not in data:
        raise ValueError(f"Malformed artifact manifest in {root}")

    try:
        entries = [ArtifactInfo(**item) for item in data.get("artifacts", [])]
    except TypeError as e:
        raise ValueError(f"Malformed artifact entry in {root}: {e}") from e

    return ArtifactSet(
        cache_key=data["cache_key"],
        root=root,
        dependencies=list(data.get("dependencies", [])),
        entries=entries,
        created_at=data.get("created_at"),
    )


def _has_files(directory: Path) -> bool:
    return directory.is_dir() and any(p.is_file() for p in directory.rglob("*"))


def finalize_artifact_set(
    root: Path,
    cache_key: str,
    dependencies: list[str],
    build_inputs: dict[str, Any] | None = None,
) -> ArtifactSet:
    """Describe freshly compiled outputs and write their manifest.

    Args:
        root: Directory holding one subdirectory per dependency.
        cache_key: Cache key the outputs belong to.
        dependencies: Identifiers that were compiled.
        build_inputs: Optional canonical recipe dictionary.

    Returns:
        ArtifactSet rooted at ``root``.

    Raises:
        DependencyBuildError: If a dependency left no output files.
    """
    empty = sorted(
        name
        for name in dependencies
        if not _has_files(root / dependency_dirname(name))
    )
    if empty:
        raise DependencyBuildError(
            f"Compilation produced no output for: {', '.join(empty)}",
            failed=empty,
            code="empty_output",
        )

    artifact_set = ArtifactSet(
        cache_key=cache_key,
        root=root,
        dependencies=sorted(dependencies),
        entries=discover_entries(root),
        created_at=datetime.now(timezone.utc).isoformat(),
    )
    write_manifest(
        generate_manifest(artifact_set, build_inputs=build_inputs),
        root / MANIFEST_FILENAME,
    )
    return artifact_set


__all__ = [
    "DIRNAME_DIGEST_LENGTH",
    "HASH_CHUNK_SIZE",
    "MANIFEST_FILENAME",
    "ApplicationArtifact",
    "ArtifactSet",
    "compute_file_hash",
    "dependency_dirname",
    "describe_application",
    "discover_entries",
    "finalize_artifact_set",
    "generate_manifest",
    "is_executable",
    "read_manifest",
    "write_manifest",
]
