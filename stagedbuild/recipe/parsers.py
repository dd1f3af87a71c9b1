"""Parsers for dependency-declaration files.

Each parser turns one declaration file into ``(identifier, constraint)``
pairs. Supported formats:

- ``Cargo.toml``: ``[dependencies]``, ``[build-dependencies]``, their
  ``[target.<cfg>.*]`` variants and ``[workspace.dependencies]``
- ``deps.yaml`` / ``deps.yml`` / ``deps.json``: a top-level
  ``dependencies`` mapping

Lock files are not parsed into pairs; their digest is recorded instead.
"""

from __future__ import annotations

import json
import logging
import tomllib
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stagedbuild.errors import ScanError
from stagedbuild.recipe.schema import DependencyConstraint
from stagedbuild.types import ManifestFile, ManifestKind, Stage

logger = logging.getLogger(__name__)

DependencyPair = tuple[str, DependencyConstraint]

# Cargo tables that contribute to the compiled dependency graph.
# dev-dependencies are only needed for tests and never reach the binary.
CARGO_DEPENDENCY_TABLES = ("dependencies", "build-dependencies")

_GIT_REF_KEYS = ("rev", "tag", "branch")


def _invalid(manifest: ManifestFile, reason: str) -> ScanError:
    return ScanError(
        f"Invalid dependency declaration in {manifest.relative_path}: {reason}",
        code="invalid_manifest",
        stage=Stage.SCAN,
    )


def load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file and return its contents as a dict.

    Args:
        path: Path to the TOML file.

    Returns:
        Parsed TOML content.

    Raises:
        OSError: If the file cannot be read.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    with path.open("rb") as f:
        return tomllib.load(f)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        OSError: If the file cannot be read.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        OSError: If the file cannot be read.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


_LOADERS: dict[ManifestKind, Callable[[Path], dict[str, Any]]] = {
    ManifestKind.CARGO: load_toml,
    ManifestKind.YAML: load_yaml,
    ManifestKind.JSON: load_json,
}


def load_manifest_data(manifest: ManifestFile) -> dict[str, Any]:
    """Load a declaration file into a dictionary.

    Args:
        manifest: Manifest file to load.

    Returns:
        Parsed content.

    Raises:
        ScanError: If the file cannot be read or parsed.
    """
    loader = _LOADERS.get(manifest.kind)
    if loader is None:
        raise _invalid(manifest, f"no parser for {manifest.kind.value} files")
    try:
        return loader(manifest.path)
    except (OSError, UnicodeDecodeError) as e:
        raise ScanError(
            f"Cannot read {manifest.relative_path}: {e}",
            code="unreadable_manifest",
            stage=Stage.SCAN,
        ) from e
    except (tomllib.TOMLDecodeError, yaml.YAMLError, ValueError) as e:
        # json.JSONDecodeError is a ValueError
        raise _invalid(manifest, str(e)) from e


def _cargo_source(spec: dict[str, Any]) -> str:
    git = spec.get("git")
    if git:
        for ref_key in _GIT_REF_KEYS:
            if spec.get(ref_key):
                return f"git+{git}#{ref_key}={spec[ref_key]}"
        return f"git+{git}"
    registry = spec.get("registry")
    if registry:
        return f"registry+{registry}"
    return "registry"


def _parse_cargo_table(
    manifest: ManifestFile,
    table: Any,
    table_name: str,
) -> list[DependencyPair]:
    if not isinstance(table, dict):
        raise _invalid(manifest, f"[{table_name}] must be a table")

    pairs: list[DependencyPair] = []
    for key, spec in table.items():
        if isinstance(spec, str):
            pairs.append((key, DependencyConstraint(version=spec)))
            continue
        if not isinstance(spec, dict):
            raise _invalid(manifest, f"dependency '{key}' has unsupported value")

        if spec.get("workspace") is True:
            # Inherited from [workspace.dependencies], declared there
            logger.debug("Skipping workspace-inherited dependency %s", key)
            continue
        if "path" in spec:
            # Local crates are application source, not cacheable dependencies
            logger.debug("Skipping local path dependency %s", key)
            continue

        name = spec.get("package", key)
        try:
            constraint = DependencyConstraint(
                version=spec.get("version"),
                source=_cargo_source(spec),
                features=spec.get("features") or (),
                default_features=spec.get(
                    "default-features", spec.get("default_features", True)
                ),
                optional=spec.get("optional", False),
            )
        except ValidationError as e:
            raise _invalid(manifest, f"dependency '{key}': {e}") from e
        pairs.append((name, constraint))
    return pairs


def parse_cargo_manifest(
    manifest: ManifestFile, data: dict[str, Any]
) -> list[DependencyPair]:
    """Extract dependency pairs from a parsed ``Cargo.toml``.

    Args:
        manifest: The manifest being parsed (for error messages).
        data: Parsed TOML content.

    Returns:
        List of (identifier, constraint) pairs in declaration order.

    Raises:
        ScanError: If a dependency table is malformed.
    """
    pairs: list[DependencyPair] = []

    for table_name in CARGO_DEPENDENCY_TABLES:
        if table_name in data:
            pairs.extend(_parse_cargo_table(manifest, data[table_name], table_name))

    targets = data.get("target", {})
    if not isinstance(targets, dict):
        raise _invalid(manifest, "[target] must be a table")
    for cfg, target_tables in targets.items():
        if not isinstance(target_tables, dict):
            raise _invalid(manifest, f"[target.{cfg}] must be a table")
        for table_name in CARGO_DEPENDENCY_TABLES:
            if table_name in target_tables:
                pairs.extend(
                    _parse_cargo_table(
                        manifest,
                        target_tables[table_name],
                        f"target.{cfg}.{table_name}",
                    )
                )

    workspace = data.get("workspace", {})
    if isinstance(workspace, dict) and "dependencies" in workspace:
        pairs.extend(
            _parse_cargo_table(
                manifest, workspace["dependencies"], "workspace.dependencies"
            )
        )

    return pairs


def parse_generic_manifest(
    manifest: ManifestFile, data: dict[str, Any]
) -> list[DependencyPair]:
    """Extract dependency pairs from a parsed ``deps.yaml``/``deps.json``.

    Values may be a quoted version string or a mapping with ``version``,
    ``source``, ``features``, ``default_features`` and ``optional``.
    Unquoted numeric versions are rejected since ``1.10`` would parse as
    ``1.1``.

    Args:
        manifest: The manifest being parsed (for error messages).
        data: Parsed document.

    Returns:
        List of (identifier, constraint) pairs.

    Raises:
        ScanError: If the document does not match the expected shape.
    """
    dependencies = data.get("dependencies") or {}
    if not isinstance(dependencies, dict):
        raise _invalid(manifest, "'dependencies' must be a mapping")

    pairs: list[DependencyPair] = []
    for name, spec in dependencies.items():
        name = str(name).strip()
        try:
            if isinstance(spec, dict):
                constraint = DependencyConstraint.model_validate(spec)
            elif isinstance(spec, str):
                constraint = DependencyConstraint(version=spec)
            elif isinstance(spec, (int, float)) and not isinstance(spec, bool):
                raise _invalid(
                    manifest,
                    f"dependency '{name}' version {spec!r} must be a quoted string",
                )
            elif spec is None:
                constraint = DependencyConstraint()
            else:
                raise _invalid(manifest, f"dependency '{name}' has unsupported value")
        except ValidationError as e:
            raise _invalid(manifest, f"dependency '{name}': {e}") from e
        pairs.append((name, constraint))
    return pairs


def parse_manifest(manifest: ManifestFile) -> list[DependencyPair]:
    """Parse one declaration file into dependency pairs.

    Args:
        manifest: Manifest file found by the scanner.

    Returns:
        List of (identifier, constraint) pairs; empty for lock files.

    Raises:
        ScanError: If the file cannot be read or is malformed.
    """
    if manifest.kind is ManifestKind.CARGO_LOCK:
        return []
    data = load_manifest_data(manifest)
    if manifest.kind is ManifestKind.CARGO:
        return parse_cargo_manifest(manifest, data)
    return parse_generic_manifest(manifest, data)


__all__ = [
    "CARGO_DEPENDENCY_TABLES",
    "DependencyPair",
    "load_json",
    "load_manifest_data",
    "load_toml",
    "load_yaml",
    "parse_cargo_manifest",
    "parse_generic_manifest",
    "parse_manifest",
]
