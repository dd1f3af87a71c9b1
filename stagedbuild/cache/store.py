"""Cache stores for dependency artifact sets.

This module provides:
- CacheStore: the narrow get/put interface the pipeline depends on
- LocalCacheStore: one directory per cache key, committed by atomic rename
- MemoryCacheStore: archives held in a dict, for tests and single runs
- open_cache_store(): pick the configured store

A store never exposes a partially written entry: readers either see a
complete artifact set or nothing.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from stagedbuild.builds.artifacts import (
    MANIFEST_FILENAME,
    ArtifactSet,
    generate_manifest,
    read_manifest,
    write_manifest,
)
from stagedbuild.cache.archive import pack_directory, unpack_archive
from stagedbuild.errors import CacheStoreError
from stagedbuild.recipe.cache_key import cache_key_slug

if TYPE_CHECKING:
    from stagedbuild.config import Settings

logger = logging.getLogger(__name__)

LOCK_DIRNAME = ".locks"
_TMP_PREFIX = ".tmp-"


@runtime_checkable
class CacheStore(Protocol):
    """Persistent store of dependency artifact sets keyed by cache key.

    Implementations must support concurrent readers. ``put`` for a key that
    is already present leaves the existing entry untouched.
    """

    def get(self, cache_key: str) -> ArtifactSet | None:
        """Return the artifact set stored for ``cache_key``, or None."""
        ...

    def put(self, cache_key: str, artifact_set: ArtifactSet) -> None:
        """Store ``artifact_set`` under ``cache_key``."""
        ...


def verify_loaded_set(cache_key: str, artifact_set: ArtifactSet) -> ArtifactSet:
    """Check that a loaded entry matches its key and is complete.

    Raises:
        CacheStoreError: If the entry is mislabelled or has missing files.
    """
    if artifact_set.cache_key != cache_key:
        raise CacheStoreError(
            f"Cache entry for {cache_key[:23]} is labelled "
            f"{artifact_set.cache_key[:23]}",
            code="key_mismatch",
        )
    missing = artifact_set.missing_entries()
    if missing:
        raise CacheStoreError(
            f"Cache entry for {cache_key[:23]} is incomplete: "
            f"missing {', '.join(missing[:5])}",
            code="incomplete_entry",
        )
    return artifact_set


def write_entry_manifest(cache_key: str, artifact_set: ArtifactSet, root: Path) -> None:
    """Write the manifest for an entry being committed under ``cache_key``."""
    manifest = generate_manifest(
        ArtifactSet(
            cache_key=cache_key,
            root=root,
            dependencies=artifact_set.dependencies,
            entries=artifact_set.entries,
            created_at=artifact_set.created_at,
        )
    )
    write_manifest(manifest, root / MANIFEST_FILENAME)


class ExtractedEntries:
    """Unpacked copies of archived entries, one directory per cache key.

    Stores that hold entries as archives unpack a key once and hand out the
    same directory on later reads. Returned artifact sets stay valid until
    ``cleanup()``, which removes every extracted directory.
    """

    def __init__(self, scratch_dir: Path | None = None) -> None:
        self._scratch_dir = scratch_dir
        self._root: Path | None = None
        self._lock = threading.Lock()

    def _extract_root(self) -> Path:
        with self._lock:
            if self._root is None:
                try:
                    if self._scratch_dir is not None:
                        self._scratch_dir.mkdir(parents=True, exist_ok=True)
                    self._root = Path(
                        tempfile.mkdtemp(prefix="stagedbuild_extract_", dir=self._scratch_dir)
                    )
                except OSError as e:
                    raise CacheStoreError(
                        f"Cannot create scratch directory for cache entries: {e}",
                        code="scratch_unavailable",
                    ) from e
            return self._root

    def lookup(self, cache_key: str) -> ArtifactSet | None:
        """Return the already extracted set for ``cache_key``, if intact."""
        entry = self._extract_root() / cache_key_slug(cache_key)
        if not (entry / MANIFEST_FILENAME).is_file():
            return None
        try:
            artifact_set = read_manifest(entry)
        except (OSError, ValueError):
            artifact_set = None
        if (
            artifact_set is None
            or artifact_set.cache_key != cache_key
            or artifact_set.missing_entries()
        ):
            logger.warning("Discarding damaged extracted copy of %s", cache_key[:23])
            shutil.rmtree(entry, ignore_errors=True)
            return None
        return artifact_set

    def extract(self, cache_key: str, data: bytes) -> ArtifactSet:
        """Unpack ``data`` as the entry for ``cache_key`` and load it.

        Raises:
            CacheStoreError: If the archive is corrupt or its manifest does
                not match the key.
        """
        root = self._extract_root()
        entry = root / cache_key_slug(cache_key)
        staging = root / f"{_TMP_PREFIX}{entry.name}-{uuid.uuid4().hex[:8]}"
        try:
            unpack_archive(data, staging)
            try:
                os.rename(staging, entry)
            except OSError as e:
                if e.errno not in (errno.EEXIST, errno.ENOTEMPTY):
                    raise CacheStoreError(
                        f"Cannot place extracted entry {entry}: {e}",
                        code="write_failed",
                    ) from e
                # A concurrent reader extracted the same key first
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        try:
            artifact_set = read_manifest(entry)
        except (OSError, ValueError) as e:
            shutil.rmtree(entry, ignore_errors=True)
            raise CacheStoreError(
                f"Unreadable cache entry for {cache_key[:23]}: {e}",
                code="corrupt_entry",
            ) from e
        return verify_loaded_set(cache_key, artifact_set)

    def cleanup(self) -> None:
        """Remove every extracted directory."""
        with self._lock:
            root, self._root = self._root, None
        if root is not None:
            shutil.rmtree(root, ignore_errors=True)


class LocalCacheStore:
    """Cache store on the local file system.

    Layout::

        <root>/sha256_<hex>/manifest.json
        <root>/sha256_<hex>/<dependency>/...
        <root>/.locks/

    Entries are staged under a temporary name inside ``root`` and renamed
    into place, so readers never observe a partial entry. The directory's
    modification time records when the entry was last used.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def lock_dir(self) -> Path:
        return self.root / LOCK_DIRNAME

    def entry_dir(self, cache_key: str) -> Path:
        """Return the directory holding the entry for ``cache_key``."""
        return self.root / cache_key_slug(cache_key)

    def get(self, cache_key: str) -> ArtifactSet | None:
        entry = self.entry_dir(cache_key)
        if not (entry / MANIFEST_FILENAME).is_file():
            logger.debug("Cache miss for key %s", cache_key[:23])
            return None

        try:
            artifact_set = read_manifest(entry)
        except (OSError, ValueError) as e:
            raise CacheStoreError(
                f"Unreadable cache entry {entry}: {e}", code="corrupt_entry"
            ) from e
        verify_loaded_set(cache_key, artifact_set)

        try:
            os.utime(entry)
        except OSError as e:
            logger.warning("Could not update last-used time of %s: %s", entry, e)

        logger.debug("Cache hit for key %s", cache_key[:23])
        return artifact_set

    def put(self, cache_key: str, artifact_set: ArtifactSet) -> None:
        entry = self.entry_dir(cache_key)
        if entry.exists():
            logger.info("Cache entry for key %s already present", cache_key[:23])
            return

        staging = self.root / f"{_TMP_PREFIX}{entry.name}-{uuid.uuid4().hex[:8]}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            shutil.copytree(artifact_set.root, staging)
            write_entry_manifest(cache_key, artifact_set, staging)
            try:
                os.rename(staging, entry)
            except OSError as e:
                if e.errno not in (errno.EEXIST, errno.ENOTEMPTY):
                    raise
                # Another writer committed the same key first
                logger.info("Cache entry for key %s committed concurrently", cache_key[:23])
                return
        except OSError as e:
            raise CacheStoreError(
                f"Failed to store cache entry {entry}: {e}", code="write_failed"
            ) from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.info("Stored cache entry for key %s at %s", cache_key[:23], entry)

    def list_entries(self) -> list[ArtifactSet]:
        """List complete cache entries, most recently used first.

        Unreadable entries are skipped with a warning.
        """
        if not self.root.is_dir():
            return []

        entries: list[tuple[float, ArtifactSet]] = []
        for path in self.root.iterdir():
            if not path.is_dir() or path.name.startswith("."):
                continue
            try:
                artifact_set = read_manifest(path)
                last_used = path.stat().st_mtime
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable cache entry %s: %s", path, e)
                continue
            entries.append((last_used, artifact_set))

        entries.sort(key=lambda item: item[0], reverse=True)
        return [artifact_set for _, artifact_set in entries]

    def remove(self, cache_key: str) -> bool:
        """Remove the entry for ``cache_key``.

        Returns:
            True if an entry was removed.
        """
        entry = self.entry_dir(cache_key)
        if not entry.exists():
            return False
        # Rename first so readers never see a half-deleted entry
        doomed = self.root / f"{_TMP_PREFIX}rm-{entry.name}-{uuid.uuid4().hex[:8]}"
        try:
            os.rename(entry, doomed)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CacheStoreError(
                f"Failed to remove cache entry {entry}: {e}", code="remove_failed"
            ) from e
        shutil.rmtree(doomed, ignore_errors=True)
        logger.info("Removed cache entry for key %s", cache_key[:23])
        return True

    def prune(self, older_than: timedelta, dry_run: bool = False) -> list[str]:
        """Remove entries not used within ``older_than``.

        Args:
            older_than: Minimum idle time for an entry to be pruned.
            dry_run: Only report what would be pruned.

        Returns:
            Cache keys that were (or would be) pruned.
        """
        cutoff = time.time() - older_than.total_seconds()
        pruned: list[str] = []
        for artifact_set in self.list_entries():
            try:
                last_used = artifact_set.root.stat().st_mtime
            except OSError:
                continue
            if last_used >= cutoff:
                continue
            if dry_run or self.remove(artifact_set.cache_key):
                pruned.append(artifact_set.cache_key)
        return pruned


class MemoryCacheStore:
    """Cache store keeping archived artifact sets in memory.

    Entries are unpacked into a private scratch directory on first ``get``
    so callers can read real files; ``close()`` removes those copies.
    """

    def __init__(self, scratch_dir: Path | None = None) -> None:
        self._entries: dict[str, bytes] = {}
        self._lock = threading.Lock()
        if scratch_dir is not None:
            scratch_dir.mkdir(parents=True, exist_ok=True)
        self._scratch_dir = scratch_dir
        self._extracted = ExtractedEntries(scratch_dir)

    def __contains__(self, cache_key: object) -> bool:
        with self._lock:
            return cache_key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, cache_key: str) -> ArtifactSet | None:
        with self._lock:
            data = self._entries.get(cache_key)
        if data is None:
            return None
        return self._extracted.lookup(cache_key) or self._extracted.extract(cache_key, data)

    def put(self, cache_key: str, artifact_set: ArtifactSet) -> None:
        staging: Path | None = None
        try:
            staging = Path(
                tempfile.mkdtemp(prefix="stagedbuild_put_", dir=self._scratch_dir)
            )
            shutil.copytree(artifact_set.root, staging, dirs_exist_ok=True)
            write_entry_manifest(cache_key, artifact_set, staging)
            data = pack_directory(staging)
        except OSError as e:
            raise CacheStoreError(
                f"Failed to archive artifact set for {cache_key[:23]}: {e}",
                code="write_failed",
            ) from e
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)

        with self._lock:
            self._entries.setdefault(cache_key, data)

    def close(self) -> None:
        self._extracted.cleanup()


def open_cache_store(settings: Settings) -> CacheStore:
    """Create the cache store selected by settings.

    Args:
        settings: Application settings.

    Returns:
        HttpCacheStore if ``cache_url`` is set, else LocalCacheStore.
    """
    if settings.cache_url:
        from stagedbuild.cache.remote import HttpCacheStore

        return HttpCacheStore(
            settings.cache_url,
            timeout=settings.remote_timeout,
            scratch_dir=settings.work_dir,
        )
    return LocalCacheStore(settings.cache_dir)


__all__ = [
    "LOCK_DIRNAME",
    "CacheStore",
    "ExtractedEntries",
    "LocalCacheStore",
    "MemoryCacheStore",
    "open_cache_store",
    "verify_loaded_set",
    "write_entry_manifest",
]
