"""Pipeline run service.

This module provides the recorded build API:
- execute_build(): run the pipeline and persist a PipelineRun
- get_run(), list_runs(): query the run history
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from stagedbuild.errors import StagedBuildError
from stagedbuild.pipeline.models import PipelineRun
from stagedbuild.pipeline.orchestrator import Pipeline, PipelineResult
from stagedbuild.recipe.schema import Recipe
from stagedbuild.types import RunStatus

logger = logging.getLogger(__name__)


class RunNotFoundError(StagedBuildError):
    """Raised when a pipeline run is not found."""

    default_code = "run_not_found"

    def __init__(self, run_id: int) -> None:
        super().__init__(f"Pipeline run not found: {run_id}")
        self.run_id = run_id


def execute_build(
    session: Session,
    pipeline: Pipeline,
    project_root: Path,
    runtime_root: Path,
    recipe: Recipe | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> tuple[PipelineRun, PipelineResult]:
    """Run the pipeline and record the run.

    The run record is flushed before the error propagates, so the caller
    decides whether to commit a failed run.

    Args:
        session: Database session.
        pipeline: Configured pipeline.
        project_root: Project tree to build.
        runtime_root: Runtime layout receiving the executable.
        recipe: Previously prepared recipe, if any.
        timeout: Budget in seconds for the whole run.
        cancel: Event that aborts the run when set.

    Returns:
        Tuple of (PipelineRun, PipelineResult).

    Raises:
        StagedBuildError: If any stage fails.
    """
    run = PipelineRun(
        project_root=str(project_root),
        runtime_root=str(runtime_root),
        profile=recipe.profile if recipe is not None else pipeline.profile,
        status=RunStatus.PENDING.value,
        cache_hit=False,
        dependency_compilations=0,
    )
    session.add(run)
    run.mark_running()
    session.flush()
    logger.info("Started pipeline run %d for %s", run.id, project_root)

    try:
        result = pipeline.run(
            project_root,
            runtime_root,
            recipe=recipe,
            timeout=timeout,
            cancel=cancel,
            observer=run.record_state,
        )
    except StagedBuildError as e:
        run.mark_failed(
            error_type=e.code,
            message=str(e),
            stage=e.stage.value if e.stage else None,
        )
        session.flush()
        logger.error("Pipeline run %d failed: %s", run.id, e)
        raise

    run.cache_key = result.cache_key
    run.cache_hit = result.cache_hit
    run.dependency_compilations = result.dependency_compilations
    run.packaged_path = str(result.packaged_path)
    run.mark_succeeded()
    session.flush()

    logger.info(
        "Pipeline run %d succeeded (%s)",
        run.id,
        "cache hit" if result.cache_hit else f"{result.dependency_compilations} compiled",
    )
    return run, result


def get_run(session: Session, run_id: int) -> PipelineRun:
    """Get a pipeline run by ID.

    Raises:
        RunNotFoundError: If the run does not exist.
    """
    run = session.get(PipelineRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def list_runs(
    session: Session,
    status: RunStatus | None = None,
    cache_key: str | None = None,
    limit: int = 100,
) -> list[PipelineRun]:
    """List pipeline runs, newest first.

    Args:
        session: Database session.
        status: Filter by status.
        cache_key: Filter by cache key.
        limit: Maximum results to return.

    Returns:
        List of PipelineRun instances.
    """
    stmt = select(PipelineRun)

    if status is not None:
        stmt = stmt.where(PipelineRun.status == status.value)
    if cache_key is not None:
        stmt = stmt.where(PipelineRun.cache_key == cache_key)

    stmt = stmt.order_by(PipelineRun.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "RunNotFoundError",
    "execute_build",
    "get_run",
    "list_runs",
]
