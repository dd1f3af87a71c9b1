"""Staged build pipeline.

This module drives one build through an explicit state machine::

    scanning -> recipe_built -> key_derived
        -> dependency_cache_hit | dependency_built
        -> application_built -> packaged

Any stage may move to ``failed``. Each stage hands a typed output to the
next, errors are tagged with the stage they came from and re-raised, and
nothing is retried. One deadline bounds the whole run and cancellation is
checked between stages.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from stagedbuild.builds.application import ApplicationStageBuilder
from stagedbuild.builds.artifacts import ApplicationArtifact, ArtifactSet
from stagedbuild.builds.dependencies import (
    Deadline,
    DependencyStageBuilder,
    check_cancelled,
)
from stagedbuild.builds.packager import INSTALL_PATH, package_artifact
from stagedbuild.builds.toolchain import CommandToolchain, Toolchain
from stagedbuild.cache.locking import FileKeyLock, KeyLock, ThreadKeyLock
from stagedbuild.cache.store import CacheStore, LocalCacheStore, open_cache_store
from stagedbuild.errors import InvalidTransitionError, RecipeError, StagedBuildError
from stagedbuild.recipe.builder import build_recipe
from stagedbuild.recipe.cache_key import compute_cache_key
from stagedbuild.recipe.scanner import scan_project
from stagedbuild.recipe.schema import Recipe
from stagedbuild.types import PipelineState, Stage

if TYPE_CHECKING:
    from stagedbuild.config import Settings

logger = logging.getLogger(__name__)

TRANSITIONS: dict[PipelineState | None, frozenset[PipelineState]] = {
    None: frozenset({PipelineState.SCANNING}),
    PipelineState.SCANNING: frozenset({PipelineState.RECIPE_BUILT, PipelineState.FAILED}),
    PipelineState.RECIPE_BUILT: frozenset({PipelineState.KEY_DERIVED, PipelineState.FAILED}),
    PipelineState.KEY_DERIVED: frozenset(
        {
            PipelineState.DEPENDENCY_CACHE_HIT,
            PipelineState.DEPENDENCY_BUILT,
            PipelineState.FAILED,
        }
    ),
    PipelineState.DEPENDENCY_CACHE_HIT: frozenset(
        {PipelineState.APPLICATION_BUILT, PipelineState.FAILED}
    ),
    PipelineState.DEPENDENCY_BUILT: frozenset(
        {PipelineState.APPLICATION_BUILT, PipelineState.FAILED}
    ),
    PipelineState.APPLICATION_BUILT: frozenset({PipelineState.PACKAGED, PipelineState.FAILED}),
    PipelineState.PACKAGED: frozenset(),
    PipelineState.FAILED: frozenset(),
}

StateObserver = Callable[[PipelineState], None]


class StateMachine:
    """Tracks the pipeline state and rejects illegal transitions."""

    def __init__(self, observer: StateObserver | None = None) -> None:
        self.state: PipelineState | None = None
        self.history: list[PipelineState] = []
        self._observer = observer

    def advance(self, new_state: PipelineState) -> None:
        """Move to ``new_state``.

        Raises:
            InvalidTransitionError: If the table does not allow the move.
        """
        allowed = TRANSITIONS[self.state]
        if new_state not in allowed:
            current = self.state.value if self.state else "start"
            raise InvalidTransitionError(
                f"Illegal pipeline transition {current} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)
        logger.debug("Pipeline state: %s", new_state.value)
        if self._observer is not None:
            self._observer(new_state)

    @property
    def terminal(self) -> bool:
        return self.state is not None and not TRANSITIONS[self.state]


@dataclass
class PipelineResult:
    """Typed outputs of a completed pipeline run.

    Attributes:
        recipe: Recipe the dependencies were built from.
        cache_key: Cache key derived from the recipe.
        artifact_set: Dependency artifact set used by the application stage.
        application: The compiled executable.
        packaged_path: Host path of the executable in the runtime layout.
        cache_hit: True if the dependency stage compiled nothing.
        dependency_compilations: Dependencies compiled by this run.
        history: States visited, in order.
        work_dir: Retained run directory with build logs, if kept.
    """

    recipe: Recipe
    cache_key: str
    artifact_set: ArtifactSet
    application: ApplicationArtifact
    packaged_path: Path
    cache_hit: bool
    dependency_compilations: int
    history: list[PipelineState] = field(default_factory=list)
    work_dir: Path | None = None


@contextmanager
def stage_errors(stage: Stage) -> Iterator[None]:
    """Tag errors escaping the block with ``stage`` unless already tagged."""
    try:
        yield
    except StagedBuildError as e:
        if e.stage is None:
            e.stage = stage
        raise


class Pipeline:
    """Runs the staged build against an injected cache store and toolchain."""

    def __init__(
        self,
        store: CacheStore,
        toolchain: Toolchain,
        lock: KeyLock | None = None,
        jobs: int = 4,
        profile: str = "release",
        binary_name: str | None = None,
        exclude_dirs: Iterable[str] | None = None,
        work_dir: Path | None = None,
        lock_timeout: float | None = None,
        install_path: str = INSTALL_PATH,
        keep_work: bool = False,
    ) -> None:
        self.store = store
        self.toolchain = toolchain
        self.lock = lock or ThreadKeyLock()
        self.jobs = jobs
        self.profile = profile
        self.binary_name = binary_name
        self.exclude_dirs = list(exclude_dirs) if exclude_dirs is not None else None
        self.work_dir = work_dir
        self.lock_timeout = lock_timeout
        self.install_path = install_path
        self.keep_work = keep_work

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CacheStore | None = None,
        toolchain: Toolchain | None = None,
    ) -> Pipeline:
        """Create a pipeline configured from settings.

        A local store gets a cross-process file lock under its root. Other
        stores get an in-process lock; a remote store additionally refuses
        a second writer for a key.
        """
        if store is None:
            store = open_cache_store(settings)
        lock: KeyLock
        if isinstance(store, LocalCacheStore):
            lock = FileKeyLock(store.lock_dir)
        else:
            lock = ThreadKeyLock()
        return cls(
            store=store,
            toolchain=toolchain or CommandToolchain.from_settings(settings),
            lock=lock,
            jobs=settings.jobs,
            profile=settings.profile,
            binary_name=settings.binary_name,
            exclude_dirs=settings.exclude_dirs,
            work_dir=settings.work_dir,
            lock_timeout=settings.lock_timeout,
        )

    def prepare(self, root: Path, profile: str | None = None) -> Recipe:
        """Scan a project tree and build its recipe.

        Raises:
            ScanError: If the tree cannot be scanned.
            ConflictError: If declarations disagree.
        """
        with stage_errors(Stage.SCAN):
            manifests = scan_project(root, exclude_dirs=self.exclude_dirs)
        with stage_errors(Stage.RECIPE):
            return build_recipe(manifests, profile=profile or self.profile)

    def run(
        self,
        root: Path,
        runtime_root: Path,
        recipe: Recipe | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
        observer: StateObserver | None = None,
    ) -> PipelineResult:
        """Run every stage and package the executable.

        Args:
            root: Project tree.
            runtime_root: Root of the runtime layout receiving the executable.
            recipe: Previously prepared recipe; verified against the tree.
            timeout: Budget in seconds for the whole run.
            cancel: Event that aborts the run when set.
            observer: Called with each new state.

        Returns:
            PipelineResult with every stage output.

        Raises:
            StagedBuildError: The first stage error, with ``stage`` set.
        """
        machine = StateMachine(observer)
        deadline = Deadline(timeout)
        if self.work_dir is not None:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        run_dir = Path(tempfile.mkdtemp(prefix="stagedbuild_run_", dir=self.work_dir))
        succeeded = False

        try:
            result = self._run_stages(
                machine, deadline, cancel, root, runtime_root, recipe, run_dir
            )
            succeeded = True
        except Exception as e:
            if not machine.terminal:
                machine.advance(PipelineState.FAILED)
            stage = getattr(e, "stage", None)
            logger.error(
                "Pipeline failed%s: %s (logs kept in %s)",
                f" in stage '{stage.value}'" if stage else "",
                e,
                run_dir,
            )
            raise
        finally:
            if succeeded and not self.keep_work:
                shutil.rmtree(run_dir, ignore_errors=True)

        if self.keep_work:
            result.work_dir = run_dir
        return result

    def _run_stages(
        self,
        machine: StateMachine,
        deadline: Deadline,
        cancel: threading.Event | None,
        root: Path,
        runtime_root: Path,
        supplied: Recipe | None,
        run_dir: Path,
    ) -> PipelineResult:
        machine.advance(PipelineState.SCANNING)
        profile = supplied.profile if supplied is not None else self.profile
        fresh = self.prepare(root, profile=profile)
        if supplied is not None and supplied != fresh:
            raise RecipeError(
                "Recipe is stale: dependency declarations changed since it was "
                "prepared; run prepare again",
                code="stale_recipe",
            )
        recipe = fresh
        machine.advance(PipelineState.RECIPE_BUILT)
        self._checkpoint(deadline, cancel, Stage.RECIPE)

        with stage_errors(Stage.CACHE_KEY):
            cache_key = compute_cache_key(recipe)
        logger.info("Cache key: %s", cache_key[:23])
        machine.advance(PipelineState.KEY_DERIVED)
        self._checkpoint(deadline, cancel, Stage.CACHE_KEY)

        dependency_builder = DependencyStageBuilder(
            self.store,
            self.toolchain,
            lock=self.lock,
            jobs=self.jobs,
            scratch_dir=self.work_dir,
            log_dir=run_dir / "logs" / "dependencies",
            lock_timeout=self.lock_timeout,
        )
        with stage_errors(Stage.DEPENDENCIES):
            dependencies = dependency_builder.build(recipe, cache_key, deadline, cancel)
        machine.advance(
            PipelineState.DEPENDENCY_CACHE_HIT
            if dependencies.cache_hit
            else PipelineState.DEPENDENCY_BUILT
        )
        self._checkpoint(deadline, cancel, Stage.DEPENDENCIES)

        application_builder = ApplicationStageBuilder(
            self.toolchain, binary_name=self.binary_name, profile=recipe.profile
        )
        with stage_errors(Stage.APPLICATION):
            application = application_builder.build(
                root,
                dependencies.artifact_set,
                cache_key,
                run_dir / "application",
                timeout=deadline,
            )
        machine.advance(PipelineState.APPLICATION_BUILT)
        self._checkpoint(deadline, cancel, Stage.APPLICATION)

        with stage_errors(Stage.PACKAGE):
            packaged = package_artifact(application, runtime_root, self.install_path)
        machine.advance(PipelineState.PACKAGED)

        logger.info(
            "Pipeline finished: %s (%s, %d dependencies compiled)",
            packaged,
            "cache hit" if dependencies.cache_hit else "cache miss",
            len(dependencies.compiled),
        )
        return PipelineResult(
            recipe=recipe,
            cache_key=cache_key,
            artifact_set=dependencies.artifact_set,
            application=application,
            packaged_path=packaged,
            cache_hit=dependencies.cache_hit,
            dependency_compilations=len(dependencies.compiled),
            history=list(machine.history),
        )

    @staticmethod
    def _checkpoint(
        deadline: Deadline, cancel: threading.Event | None, stage: Stage
    ) -> None:
        check_cancelled(cancel, stage)
        deadline.check(stage)


__all__ = [
    "TRANSITIONS",
    "Pipeline",
    "PipelineResult",
    "StateMachine",
    "stage_errors",
]
