"""Pydantic models for the recipe file.

A recipe is the canonical, order-independent summary of a project's
dependency declarations. Semantically identical dependency sets serialize
to identical bytes regardless of the order they were declared in.
"""

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

RECIPE_SCHEMA_VERSION = "1"

_WHITESPACE = re.compile(r"\s+")


def normalize_requirement(value: str | None) -> str | None:
    """Strip all whitespace from a version requirement.

    Args:
        value: Requirement such as ``">= 1.0, < 2"``.

    Returns:
        Normalized requirement (``">=1.0,<2"``), or None if empty.
    """
    if value is None:
        return None
    normalized = _WHITESPACE.sub("", str(value))
    return normalized or None


class DependencyConstraint(BaseModel):
    """Version and source constraint for a single dependency.

    Attributes:
        version: Version requirement with whitespace removed.
        source: Where the dependency comes from (``registry``,
            ``git+<url>#<rev>``, ``registry+<name>``).
        features: Sorted, de-duplicated feature flags.
        default_features: Whether the dependency's default features are on.
        optional: Whether the dependency is only pulled in by a feature.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: str | None = Field(default=None, description="Version requirement")
    source: str = Field(default="registry", description="Dependency source")
    features: tuple[str, ...] = Field(default=(), description="Enabled features")
    default_features: bool = Field(default=True, description="Default features enabled")
    optional: bool = Field(default=False, description="Enabled only by a feature")

    @field_validator("version", mode="before")
    @classmethod
    def validate_version(cls, v: Any) -> str | None:
        """Normalize whitespace in the version requirement.

        Numbers are rejected: a YAML or JSON ``1.10`` arrives as the float
        ``1.1`` and would silently name a different version.
        """
        if v is None:
            return None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            raise ValueError(f"version {v!r} must be a string; quote the version")
        return normalize_requirement(str(v))

    @field_validator("source", mode="before")
    @classmethod
    def validate_source(cls, v: Any) -> str:
        """Strip surrounding whitespace from the source."""
        source = str(v).strip() if v is not None else ""
        return source or "registry"

    @field_validator("features", mode="before")
    @classmethod
    def validate_features(cls, v: Any) -> tuple[str, ...]:
        """Sort and de-duplicate features."""
        if v is None:
            return ()
        if isinstance(v, str):
            raise ValueError("features must be a list of strings")
        return tuple(sorted({str(f).strip() for f in v if str(f).strip()}))

    def describe(self) -> str:
        """Return a short human-readable form of the constraint."""
        parts = [self.version or "*"]
        if self.source != "registry":
            parts.append(f"({self.source})")
        if self.features:
            parts.append(f"[{','.join(self.features)}]")
        if not self.default_features:
            parts.append("no-default-features")
        if self.optional:
            parts.append("optional")
        return " ".join(parts)


class Recipe(BaseModel):
    """Canonical summary of a project's dependency graph.

    Attributes:
        schema_version: Version of the recipe format.
        profile: Build profile dependencies are compiled for.
        dependencies: Dependency identifier to constraint, sorted by key.
        locks: Relative lock-file path to SHA-256 of its content.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: str = Field(default=RECIPE_SCHEMA_VERSION)
    profile: Literal["release", "dev"] = Field(default="release")
    dependencies: dict[str, DependencyConstraint] = Field(default_factory=dict)
    locks: dict[str, str] = Field(default_factory=dict)

    @field_validator("schema_version")
    @classmethod
    def validate_schema_version(cls, v: str) -> str:
        """Reject recipe formats this version cannot read."""
        if v != RECIPE_SCHEMA_VERSION:
            raise ValueError(
                f"unsupported recipe schema version '{v}' "
                f"(expected '{RECIPE_SCHEMA_VERSION}')"
            )
        return v

    @field_validator("dependencies")
    @classmethod
    def sort_dependencies(
        cls, v: dict[str, DependencyConstraint]
    ) -> dict[str, DependencyConstraint]:
        """Order dependencies by identifier."""
        for name in v:
            if not name or name != name.strip():
                raise ValueError(f"invalid dependency identifier: {name!r}")
        return dict(sorted(v.items()))

    @field_validator("locks")
    @classmethod
    def sort_locks(cls, v: dict[str, str]) -> dict[str, str]:
        """Order lock digests by path."""
        return dict(sorted(v.items()))

    def to_canonical_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for canonical serialization.

        Returns:
            Dictionary with lists in place of tuples.
        """
        return self.model_dump(mode="json")

    def canonical_json(self) -> str:
        """Serialize to canonical JSON (sorted keys, no extra whitespace)."""
        return json.dumps(
            self.to_canonical_dict(),
            sort_keys=True,
            separators=(",", ":"),
        )


__all__ = [
    "RECIPE_SCHEMA_VERSION",
    "DependencyConstraint",
    "Recipe",
    "normalize_requirement",
]
