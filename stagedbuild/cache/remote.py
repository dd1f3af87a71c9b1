"""Remote shared cache store over HTTP.

Entries live at ``{base_url}/{slug}.tar.gz``:

- ``GET`` returns the archive, or 404 on a miss
- ``PUT`` uploads an archive with ``If-None-Match: *`` so that at most one
  writer populates a key; 412 means another writer already did

Any other HTTP or network failure raises CacheStoreError, which is safe to
handle by retrying the whole pipeline.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

import httpx

from stagedbuild.builds.artifacts import ArtifactSet
from stagedbuild.cache.archive import pack_directory
from stagedbuild.cache.store import ExtractedEntries, write_entry_manifest
from stagedbuild.errors import CacheStoreError
from stagedbuild.recipe.cache_key import cache_key_slug

logger = logging.getLogger(__name__)

# Default timeout for cache requests (seconds)
REMOTE_TIMEOUT = 60.0


class HttpCacheStore:
    """Cache store backed by a shared HTTP endpoint."""

    def __init__(
        self,
        base_url: str,
        client: httpx.Client | None = None,
        timeout: float = REMOTE_TIMEOUT,
        scratch_dir: Path | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(follow_redirects=True)
        self._timeout = timeout
        self._extracted = ExtractedEntries(scratch_dir)

    def entry_url(self, cache_key: str) -> str:
        """Return the URL of the archive for ``cache_key``."""
        return f"{self.base_url}/{cache_key_slug(cache_key)}.tar.gz"

    def close(self) -> None:
        """Close the HTTP client and remove extracted entries."""
        self._client.close()
        self._extracted.cleanup()

    def get(self, cache_key: str) -> ArtifactSet | None:
        url = self.entry_url(cache_key)
        logger.debug("Fetching cache entry %s", url)

        try:
            response = self._client.get(url, timeout=self._timeout)
            if response.status_code == 404:
                logger.debug("Remote cache miss for key %s", cache_key[:23])
                return None
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CacheStoreError(
                f"HTTP error fetching cache entry: "
                f"{e.response.status_code} {e.response.reason_phrase}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise CacheStoreError(
                f"Timeout fetching cache entry {url}", code="timeout"
            ) from e
        except httpx.RequestError as e:
            raise CacheStoreError(
                f"Network error fetching cache entry: {e}", code="network_error"
            ) from e

        logger.info(
            "Remote cache hit for key %s (%d bytes)",
            cache_key[:23],
            len(response.content),
        )
        return self._extracted.lookup(cache_key) or self._extracted.extract(
            cache_key, response.content
        )

    def put(self, cache_key: str, artifact_set: ArtifactSet) -> None:
        url = self.entry_url(cache_key)
        staging = Path(tempfile.mkdtemp(prefix="stagedbuild_up_"))
        try:
            shutil.copytree(artifact_set.root, staging, dirs_exist_ok=True)
            write_entry_manifest(cache_key, artifact_set, staging)
            data = pack_directory(staging)
        except OSError as e:
            raise CacheStoreError(
                f"Failed to archive artifact set for {cache_key[:23]}: {e}",
                code="write_failed",
            ) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Uploading cache entry %s (%d bytes)", url, len(data))
        try:
            response = self._client.put(
                url,
                content=data,
                headers={
                    "Content-Type": "application/gzip",
                    "If-None-Match": "*",
                },
                timeout=self._timeout,
            )
            if response.status_code == 412:
                logger.info("Remote cache entry for key %s already present", cache_key[:23])
                return
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CacheStoreError(
                f"HTTP error storing cache entry: "
                f"{e.response.status_code} {e.response.reason_phrase}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise CacheStoreError(
                f"Timeout storing cache entry {url}", code="timeout"
            ) from e
        except httpx.RequestError as e:
            raise CacheStoreError(
                f"Network error storing cache entry: {e}", code="network_error"
            ) from e


__all__ = ["REMOTE_TIMEOUT", "HttpCacheStore"]
