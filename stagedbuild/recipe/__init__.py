"""Recipe preparation module.

This module handles:
- Scanning project trees for dependency-declaration files
- Parsing declarations and merging them into a canonical recipe
- Cache key derivation over the recipe
"""

from stagedbuild.recipe.schema import DependencyConstraint, Recipe

__all__ = ["DependencyConstraint", "Recipe"]
