"""Cache key computation for dependency artifact sets.

The cache key is a SHA-256 digest over the canonical JSON serialization of
a recipe. Only recipe content feeds the digest: no timestamps, environment
variables or pre-canonicalization file ordering.
"""

from __future__ import annotations

import hashlib
import json
import re

from stagedbuild.recipe.schema import Recipe

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"

CACHE_KEY_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")


def compute_cache_key(recipe: Recipe) -> str:
    """Compute the cache key for a recipe.

    Args:
        recipe: Recipe instance.

    Returns:
        Cache key as hex string (sha256:...).
    """
    payload = {
        "cache_key_schema": CACHE_KEY_SCHEMA_VERSION,
        "recipe": recipe.to_canonical_dict(),
    }
    canonical_json = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def is_valid_cache_key(cache_key: str) -> bool:
    """Check that a string is a well-formed cache key."""
    return bool(CACHE_KEY_PATTERN.match(cache_key))


def cache_key_slug(cache_key: str) -> str:
    """Return a filesystem- and URL-safe form of a cache key.

    Args:
        cache_key: Cache key (sha256:...).

    Returns:
        Key with ':' and '/' replaced, e.g. ``sha256_ab12...``.
    """
    return cache_key.replace(":", "_").replace("/", "_")


__all__ = [
    "CACHE_KEY_PATTERN",
    "CACHE_KEY_SCHEMA_VERSION",
    "cache_key_slug",
    "compute_cache_key",
    "is_valid_cache_key",
]
