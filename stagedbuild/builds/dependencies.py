"""Dependency stage: build or restore the dependency artifact set.

This module provides the cache-aware dependency build:
1. Look up the cache key in the store; a hit returns the stored set and
   nothing is compiled, whatever happened to application source
2. On a miss, take the per-key lock and look again, since a concurrent
   builder may have populated the key meanwhile
3. Compile every dependency in isolation on a bounded worker pool
4. Store the set only when every dependency compiled, then read it back

A failure, timeout or cancellation leaves the store without an entry for
the key.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from stagedbuild.builds.artifacts import (
    ArtifactSet,
    dependency_dirname,
    finalize_artifact_set,
)
from stagedbuild.builds.toolchain import Toolchain
from stagedbuild.cache.locking import KeyLock, ThreadKeyLock
from stagedbuild.cache.store import CacheStore
from stagedbuild.errors import (
    BuildTimeoutError,
    CacheStoreError,
    DependencyBuildError,
    PipelineCancelledError,
    ToolchainError,
)
from stagedbuild.recipe.schema import Recipe
from stagedbuild.types import Stage

logger = logging.getLogger(__name__)

# How often the coordinator re-checks cancellation while workers run
CANCEL_POLL_INTERVAL = 0.1


class _CompilationAborted(Exception):
    """A queued compilation skipped because the stage is aborting."""


@dataclass
class DependencyStageResult:
    """Outcome of the dependency stage.

    Attributes:
        artifact_set: The stored artifact set.
        cache_hit: True if no compilation was needed.
        compiled: Identifiers compiled by this call.
    """

    artifact_set: ArtifactSet
    cache_hit: bool
    compiled: list[str] = field(default_factory=list)


class Deadline:
    """Monotonic deadline shared by the stages of one pipeline run."""

    def __init__(self, timeout: float | None) -> None:
        self.timeout = timeout
        self._expires = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> float | None:
        """Seconds left, or None when unbounded. Never negative."""
        if self._expires is None:
            return None
        return max(self._expires - time.monotonic(), 0.0)

    def expired(self) -> bool:
        return self._expires is not None and time.monotonic() >= self._expires

    def check(self, stage: Stage) -> None:
        """Raise BuildTimeoutError if the deadline has passed."""
        if self.expired():
            raise BuildTimeoutError(
                f"Stage '{stage.value}' exceeded the {self.timeout}s budget",
                stage=stage,
            )


def check_cancelled(cancel: threading.Event | None, stage: Stage) -> None:
    """Raise PipelineCancelledError if cancellation was requested."""
    if cancel is not None and cancel.is_set():
        raise PipelineCancelledError(f"Cancelled during stage '{stage.value}'", stage=stage)


class DependencyStageBuilder:
    """Builds or restores dependency artifact sets keyed by cache key."""

    def __init__(
        self,
        store: CacheStore,
        toolchain: Toolchain,
        lock: KeyLock | None = None,
        jobs: int = 4,
        scratch_dir: Path | None = None,
        log_dir: Path | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        if jobs < 1:
            raise ValueError("jobs must be at least 1")
        self.store = store
        self.toolchain = toolchain
        self.lock = lock or ThreadKeyLock()
        self.jobs = jobs
        self.scratch_dir = scratch_dir
        self.log_dir = log_dir
        self.lock_timeout = lock_timeout
        self._compilations = 0
        self._counter_lock = threading.Lock()

    @property
    def compilations(self) -> int:
        """Number of dependency compilations started by this builder."""
        with self._counter_lock:
            return self._compilations

    def build(
        self,
        recipe: Recipe,
        cache_key: str,
        timeout: float | Deadline | None = None,
        cancel: threading.Event | None = None,
    ) -> DependencyStageResult:
        """Return the artifact set for a recipe, compiling only on a miss.

        Args:
            recipe: Recipe describing the dependencies.
            cache_key: Cache key derived from the recipe.
            timeout: Seconds (or a shared Deadline) bounding the stage.
            cancel: Event that aborts the stage when set.

        Returns:
            DependencyStageResult with the stored artifact set.

        Raises:
            DependencyBuildError: If any dependency fails to compile.
            BuildTimeoutError: If the stage exceeds its budget.
            PipelineCancelledError: If cancelled.
            CacheStoreError: If the store fails.
        """
        deadline = timeout if isinstance(timeout, Deadline) else Deadline(timeout)
        check_cancelled(cancel, Stage.DEPENDENCIES)

        cached = self.store.get(cache_key)
        if cached is not None:
            logger.info("Dependency cache hit for key %s", cache_key[:23])
            return DependencyStageResult(artifact_set=cached, cache_hit=True)

        logger.info(
            "Dependency cache miss for key %s (%d dependencies)",
            cache_key[:23],
            len(recipe.dependencies),
        )

        with self.lock.hold(cache_key, timeout=self._lock_wait(deadline)):
            # Check again after acquiring the lock
            cached = self.store.get(cache_key)
            if cached is not None:
                logger.info(
                    "Key %s populated by a concurrent builder, reusing it",
                    cache_key[:23],
                )
                return DependencyStageResult(artifact_set=cached, cache_hit=True)

            compiled = self._build_and_store(recipe, cache_key, deadline, cancel)

        stored = self.store.get(cache_key)
        if stored is None:
            raise CacheStoreError(
                f"Cache entry for key {cache_key[:23]} missing right after storing it",
                code="lost_entry",
                stage=Stage.DEPENDENCIES,
            )
        return DependencyStageResult(artifact_set=stored, cache_hit=False, compiled=compiled)

    def _lock_wait(self, deadline: Deadline) -> float | None:
        remaining = deadline.remaining()
        if remaining is None:
            return self.lock_timeout
        if self.lock_timeout is None:
            return remaining
        return min(remaining, self.lock_timeout)

    def _build_and_store(
        self,
        recipe: Recipe,
        cache_key: str,
        deadline: Deadline,
        cancel: threading.Event | None,
    ) -> list[str]:
        if self.scratch_dir is not None:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix="stagedbuild_deps_", dir=self.scratch_dir))
        outputs = scratch / "outputs"
        outputs.mkdir()
        log_dir = self.log_dir or scratch / "logs"

        try:
            names = list(recipe.dependencies)
            self._compile_all(recipe, outputs, log_dir, deadline, cancel)

            artifact_set = finalize_artifact_set(
                outputs,
                cache_key,
                names,
                build_inputs=recipe.to_canonical_dict(),
            )
            # A late timeout or cancellation must not commit the entry
            deadline.check(Stage.DEPENDENCIES)
            check_cancelled(cancel, Stage.DEPENDENCIES)

            self.store.put(cache_key, artifact_set)
            logger.info(
                "Built and stored %d dependencies for key %s",
                len(names),
                cache_key[:23],
            )
            return names
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _compile_all(
        self,
        recipe: Recipe,
        outputs: Path,
        log_dir: Path,
        deadline: Deadline,
        cancel: threading.Event | None,
    ) -> None:
        if not recipe.dependencies:
            return

        abort = threading.Event()

        def compile_one(name: str) -> None:
            if abort.is_set() or (cancel is not None and cancel.is_set()):
                raise _CompilationAborted(name)
            dirname = dependency_dirname(name)
            with self._counter_lock:
                self._compilations += 1
            logger.debug("Compiling dependency %s", name)
            try:
                self.toolchain.compile_dependency(
                    name,
                    recipe.dependencies[name],
                    outputs / dirname,
                    log_dir / f"{dirname}.log",
                    profile=recipe.profile,
                    timeout=deadline.remaining(),
                )
            except Exception:
                # Stop queued compilations before this worker picks up the next one
                abort.set()
                raise

        workers = min(self.jobs, len(recipe.dependencies))
        executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="stagedbuild-dep"
        )
        futures: dict[Future[None], str] = {
            executor.submit(compile_one, name): name for name in recipe.dependencies
        }

        try:
            pending = set(futures)
            while pending:
                wait_for = deadline.remaining()
                if cancel is not None:
                    wait_for = (
                        CANCEL_POLL_INTERVAL
                        if wait_for is None
                        else min(wait_for, CANCEL_POLL_INTERVAL)
                    )
                done, pending = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)
                if any(f.exception() is not None for f in done):
                    abort.set()
                    break
                if cancel is not None and cancel.is_set():
                    abort.set()
                    check_cancelled(cancel, Stage.DEPENDENCIES)
                if deadline.expired():
                    abort.set()
                    deadline.check(Stage.DEPENDENCIES)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        self._raise_failures(futures)

    def _raise_failures(self, futures: dict[Future[None], str]) -> None:
        failures: dict[str, BaseException] = {}
        for future, name in futures.items():
            if future.cancelled():
                continue
            exc = future.exception()
            if exc is None or isinstance(exc, _CompilationAborted):
                continue
            failures[name] = exc

        if not failures:
            return

        for exc in failures.values():
            if isinstance(exc, (BuildTimeoutError, PipelineCancelledError)):
                exc.stage = Stage.DEPENDENCIES
                raise exc

        failed = sorted(failures)
        first = failures[failed[0]]
        code = None
        if not isinstance(first, (ToolchainError, OSError)):
            logger.error("Unexpected error compiling %s: %r", failed[0], first)
            code = "unexpected_error"
        log_path = first.log_path if isinstance(first, ToolchainError) else None
        raise DependencyBuildError(
            f"Failed to compile {len(failed)} dependenc"
            f"{'y' if len(failed) == 1 else 'ies'}: {', '.join(failed)} ({first})",
            failed=failed,
            code=code,
            log_path=log_path,
        ) from first


__all__ = [
    "CANCEL_POLL_INTERVAL",
    "Deadline",
    "DependencyStageBuilder",
    "DependencyStageResult",
    "check_cancelled",
]
