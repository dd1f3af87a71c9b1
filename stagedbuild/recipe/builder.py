"""Recipe construction from scanned declaration files.

This module handles:
- Parsing every declaration file found by the scanner
- Merging duplicate declarations (identical duplicates only)
- Recording lock-file digests
- Reading and writing the recipe file

Disagreeing declarations of the same dependency are never resolved by
declaration order; they fail with ConflictError before anything compiles.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from stagedbuild.builds.artifacts import compute_file_hash
from stagedbuild.errors import ConflictError, RecipeError, ScanError
from stagedbuild.recipe.parsers import parse_manifest
from stagedbuild.recipe.scanner import scan_project
from stagedbuild.recipe.schema import DependencyConstraint, Recipe
from stagedbuild.types import ManifestFile, ManifestKind, Stage

logger = logging.getLogger(__name__)


def merge_declarations(
    declarations: Iterable[tuple[str, str, DependencyConstraint]],
) -> dict[str, DependencyConstraint]:
    """Merge dependency declarations from several files.

    Args:
        declarations: (identifier, declaring file, constraint) triples.

    Returns:
        Identifier to constraint mapping, sorted by identifier.

    Raises:
        ConflictError: If two declarations of one identifier disagree.
    """
    merged: dict[str, DependencyConstraint] = {}
    origins: dict[str, str] = {}

    for identifier, origin, constraint in declarations:
        existing = merged.get(identifier)
        if existing is None:
            merged[identifier] = constraint
            origins[identifier] = origin
            continue
        if existing != constraint:
            raise ConflictError(
                identifier,
                f"{existing.describe()} in {origins[identifier]}",
                f"{constraint.describe()} in {origin}",
            )
        logger.debug(
            "Merged duplicate declaration of %s from %s", identifier, origin
        )

    return dict(sorted(merged.items()))


def build_recipe(
    manifests: list[ManifestFile],
    profile: str = "release",
) -> Recipe:
    """Build a recipe from the scanner's manifest files.

    Args:
        manifests: Declaration files returned by scan_project().
        profile: Build profile the dependencies are compiled for.

    Returns:
        Canonical Recipe.

    Raises:
        ScanError: If a declaration file is unreadable or malformed.
        ConflictError: If declarations disagree.
    """
    declarations: list[tuple[str, str, DependencyConstraint]] = []
    locks: dict[str, str] = {}

    for manifest in manifests:
        if manifest.kind is ManifestKind.CARGO_LOCK:
            try:
                locks[manifest.relative_path] = compute_file_hash(manifest.path)
            except OSError as e:
                raise ScanError(
                    f"Cannot read {manifest.relative_path}: {e}",
                    code="unreadable_manifest",
                    stage=Stage.SCAN,
                ) from e
            continue
        for identifier, constraint in parse_manifest(manifest):
            declarations.append((identifier, manifest.relative_path, constraint))

    dependencies = merge_declarations(declarations)
    try:
        recipe = Recipe(profile=profile, dependencies=dependencies, locks=locks)
    except ValidationError as e:
        raise RecipeError(f"Invalid recipe: {e}", code="invalid_recipe") from e
    logger.info(
        "Built recipe: %d dependencies, %d lock file(s)",
        len(recipe.dependencies),
        len(recipe.locks),
    )
    return recipe


def prepare_recipe(
    root: Path,
    profile: str = "release",
    exclude_dirs: Iterable[str] | None = None,
) -> Recipe:
    """Scan a project tree and build its recipe.

    Args:
        root: Project root directory.
        profile: Build profile the dependencies are compiled for.
        exclude_dirs: Directory names to skip while scanning.

    Returns:
        Canonical Recipe.
    """
    manifests = scan_project(root, exclude_dirs=exclude_dirs)
    return build_recipe(manifests, profile=profile)


def serialize_recipe(recipe: Recipe) -> str:
    """Render the recipe file content.

    Output is pretty-printed with sorted keys and a trailing newline, and
    is byte-identical for semantically equal recipes.

    Args:
        recipe: Recipe to serialize.

    Returns:
        Recipe file content.
    """
    return json.dumps(recipe.to_canonical_dict(), indent=2, sort_keys=True) + "\n"


def write_recipe(recipe: Recipe, output_path: Path) -> Path:
    """Write a recipe to a JSON file.

    Args:
        recipe: Recipe to write.
        output_path: Output file path.

    Returns:
        Path to the written recipe file.

    Raises:
        RecipeError: If the file cannot be written.
    """
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(serialize_recipe(recipe), encoding="utf-8")
    except OSError as e:
        raise RecipeError(
            f"Cannot write recipe to {output_path}: {e}", code="write_failed"
        ) from e
    logger.info("Wrote recipe to %s", output_path)
    return output_path


def read_recipe(path: Path) -> Recipe:
    """Read and validate a recipe file.

    Args:
        path: Path to the recipe file.

    Returns:
        Validated Recipe.

    Raises:
        RecipeError: If the file is missing, not JSON, or not a valid recipe.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise RecipeError(f"Recipe file not found: {path}", code="missing_recipe") from None
    except (OSError, ValueError) as e:
        raise RecipeError(f"Cannot read recipe {path}: {e}", code="invalid_recipe") from e

    try:
        return Recipe.model_validate(data)
    except ValidationError as e:
        raise RecipeError(f"Invalid recipe {path}: {e}", code="invalid_recipe") from e


__all__ = [
    "build_recipe",
    "merge_declarations",
    "prepare_recipe",
    "read_recipe",
    "serialize_recipe",
    "write_recipe",
]
