"""Pipeline run ORM model.

This module defines the PipelineRun model recording each ``build``
invocation: its outcome, the last pipeline state reached, the cache key
and whether the dependency stage was a cache hit.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from stagedbuild.db import Base
from stagedbuild.types import PipelineState, RunStatus


class PipelineRun(Base):
    """ORM model for pipeline run records.

    Attributes:
        id: Primary key.
        project_root: Project tree that was built.
        runtime_root: Runtime layout the executable was packaged into.
        profile: Build profile.
        status: Run status (pending, running, succeeded, failed).
        state: Last pipeline state reached.
        cache_key: Cache key of the recipe, once derived.
        cache_hit: Whether the dependency stage reused a cached artifact set.
        dependency_compilations: Dependencies compiled by this run.
        packaged_path: Host path of the packaged executable.
        error_type: Error code if the run failed.
        error_stage: Stage the error surfaced in.
        error_message: Error message if the run failed.
        requested_at: Timestamp when the run was requested.
        started_at: Timestamp when the run started.
        finished_at: Timestamp when the run finished.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    project_root: Mapped[str] = mapped_column(String(500), nullable=False)
    runtime_root: Mapped[str] = mapped_column(String(500), nullable=False)
    profile: Mapped[str] = mapped_column(String(20), nullable=False, default="release")

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.PENDING.value, index=True
    )
    state: Mapped[str | None] = mapped_column(String(40), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Outputs
    cache_key: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)
    dependency_compilations: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    packaged_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_stage: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_pipeline_runs_status_requested", "status", "requested_at"),)

    def __repr__(self) -> str:
        key = self.cache_key[:23] if self.cache_key else None
        return f"<PipelineRun(id={self.id}, status='{self.status}', cache_key='{key}')>"

    def mark_running(self) -> None:
        """Mark this run as running."""
        self.status = RunStatus.RUNNING.value
        self.started_at = datetime.now()

    def record_state(self, state: PipelineState) -> None:
        self.state = state.value

    def mark_succeeded(self) -> None:
        """Mark this run as succeeded."""
        self.status = RunStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self,
        error_type: str | None = None,
        message: str | None = None,
        stage: str | None = None,
    ) -> None:
        """Mark this run as failed.

        Args:
            error_type: Error code.
            message: Error message details.
            stage: Stage the error surfaced in.
        """
        self.status = RunStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message
        if stage:
            self.error_stage = stage

    def is_succeeded(self) -> bool:
        """Check if this run succeeded."""
        return self.status == RunStatus.SUCCEEDED.value


__all__ = ["PipelineRun"]
