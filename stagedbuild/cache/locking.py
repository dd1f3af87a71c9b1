"""Per-cache-key locks for single-flight dependency builds.

Builders requesting the same missing key serialize on a lock so that only
one of them compiles; the others find the entry on their second lookup.

- ThreadKeyLock coordinates threads within one process
- FileKeyLock uses fcntl locks and also coordinates separate processes
  sharing a local cache directory
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from stagedbuild.errors import BuildTimeoutError
from stagedbuild.recipe.cache_key import cache_key_slug
from stagedbuild.types import Stage

logger = logging.getLogger(__name__)

# Poll interval while waiting for a non-blocking lock
LOCK_POLL_INTERVAL = 0.1


class KeyLock(Protocol):
    """Exclusive lock scoped to one cache key."""

    def hold(self, cache_key: str, timeout: float | None = None) -> Iterator[None]:
        """Context manager holding the lock for ``cache_key``."""
        ...


def _lock_timeout(cache_key: str, timeout: float | None) -> BuildTimeoutError:
    return BuildTimeoutError(
        f"Timeout after {timeout}s waiting for build lock on {cache_key[:23]}",
        code="lock_timeout",
        stage=Stage.DEPENDENCIES,
    )


class ThreadKeyLock:
    """In-process lock registry keyed by cache key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, cache_key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(cache_key, threading.Lock())

    @contextmanager
    def hold(self, cache_key: str, timeout: float | None = None) -> Iterator[None]:
        lock = self._lock_for(cache_key)
        acquired = lock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
        if not acquired:
            raise _lock_timeout(cache_key, timeout)
        logger.debug("Build lock acquired for key: %s", cache_key[:23])
        try:
            yield
        finally:
            lock.release()
            logger.debug("Build lock released for key: %s", cache_key[:23])


class FileKeyLock:
    """File-based lock registry using fcntl.flock.

    Each key maps to ``<lock_dir>/build_<slug>.lock``. flock locks belong
    to an open file description, so separate threads of one process
    exclude each other as well.
    """

    def __init__(self, lock_dir: Path) -> None:
        self.lock_dir = lock_dir

    def lock_path(self, cache_key: str) -> Path:
        return self.lock_dir / f"build_{cache_key_slug(cache_key)[:71]}.lock"

    @contextmanager
    def hold(self, cache_key: str, timeout: float | None = None) -> Iterator[None]:
        """Acquire a lock for a build cache key.

        Args:
            cache_key: Cache key to lock on.
            timeout: Lock acquisition timeout in seconds (None = blocking).

        Yields:
            None when lock is acquired.

        Raises:
            BuildTimeoutError: If lock cannot be acquired within timeout.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        lock_file = self.lock_path(cache_key)

        logger.debug("Acquiring build lock for key: %s", cache_key[:23])

        fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
        lock_acquired = False
        try:
            if timeout is not None:
                start = time.monotonic()
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        lock_acquired = True
                        break
                    except BlockingIOError:
                        if time.monotonic() - start >= timeout:
                            raise _lock_timeout(cache_key, timeout) from None
                        time.sleep(LOCK_POLL_INTERVAL)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
                lock_acquired = True

            logger.debug("Build lock acquired for key: %s", cache_key[:23])
            yield
        finally:
            if lock_acquired:
                fcntl.flock(fd, fcntl.LOCK_UN)
                logger.debug("Build lock released for key: %s", cache_key[:23])
            os.close(fd)


__all__ = ["LOCK_POLL_INTERVAL", "FileKeyLock", "KeyLock", "ThreadKeyLock"]
