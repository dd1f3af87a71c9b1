"""Thin CLI wrapper for stagedbuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
import signal
import threading
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from stagedbuild import __version__
from stagedbuild.config import Settings, get_settings, print_settings_json
from stagedbuild.errors import StagedBuildError

app = typer.Typer(
    name="stagedbuild",
    help="Staged builds with a reusable dependency artifact cache",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"stagedbuild version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _fail(error: StagedBuildError, json_output: bool = False) -> NoReturn:
    """Report a pipeline error and exit with its exit code."""
    stage = error.stage.value if error.stage else None
    log_path = getattr(error, "log_path", None)
    if json_output:
        console.print_json(
            data={
                "error": error.code,
                "message": str(error),
                "stage": stage,
                "log_path": str(log_path) if log_path else None,
            }
        )
    else:
        where = f" in stage '{stage}'" if stage else ""
        console.print(f"[red]Error{where}:[/red] {escape(str(error))}")
        if log_path:
            console.print(f"  See log: {log_path}")
    raise typer.Exit(code=error.exit_code) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """Staged builds with a reusable dependency artifact cache."""
    configure_logging((log_level or get_settings().log_level).upper())


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
    else:
        work_dir_display = (
            str(settings.work_dir) if settings.work_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Remote cache:        {settings.cache_url or '(none)'}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Work directory:      {work_dir_display}")
        console.print(f"  Runtime directory:   {settings.runtime_dir}")
        console.print(f"  Recipe path:         {settings.recipe_path}")
        console.print()
        console.print("[bold]Build:[/bold]")
        console.print(f"  Profile:             {settings.profile}")
        console.print(f"  Binary name:         {settings.binary_name or '(inferred)'}")
        console.print(f"  Dependency command:  {escape(settings.dependency_command)}")
        console.print(f"  Application command: {escape(settings.application_command)}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Jobs:                {settings.jobs}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout or '(none)'}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")
        console.print(f"  Remote timeout:      {settings.remote_timeout}")


@app.command()
def prepare(
    project: Annotated[Path, typer.Argument(help="Project tree to scan")],
    recipe_path: Annotated[
        Path | None,
        typer.Option("--recipe-path", "-r", help="Where to write the recipe"),
    ] = None,
    profile: Annotated[
        str | None,
        typer.Option("--profile", help="Build profile (release or dev)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Scan a project and write its dependency recipe."""
    from stagedbuild.recipe.builder import prepare_recipe, write_recipe
    from stagedbuild.recipe.cache_key import compute_cache_key

    settings = get_settings()
    output = recipe_path or settings.recipe_path

    try:
        recipe = prepare_recipe(
            project,
            profile=profile or settings.profile,
            exclude_dirs=settings.exclude_dirs,
        )
        write_recipe(recipe, output)
    except StagedBuildError as e:
        _fail(e, json_output)

    cache_key = compute_cache_key(recipe)
    if json_output:
        console.print_json(
            data={
                "recipe_path": str(output),
                "cache_key": cache_key,
                "profile": recipe.profile,
                "dependencies": len(recipe.dependencies),
                "locks": sorted(recipe.locks),
            }
        )
    else:
        console.print(f"[green]Wrote recipe to {output}[/green]")
        console.print(f"  Dependencies: {len(recipe.dependencies)}")
        console.print(f"  Cache key:    {cache_key}")


def _build_settings(
    settings: Settings,
    jobs: int | None,
    timeout: int | None,
    binary: str | None,
    profile: str | None,
) -> Settings:
    """Apply CLI flag overrides on top of settings."""
    overrides: dict[str, Any] = {}
    if jobs is not None:
        overrides["jobs"] = jobs
    if timeout is not None:
        overrides["build_timeout"] = timeout
    if binary is not None:
        overrides["binary_name"] = binary
    if profile is not None:
        overrides["profile"] = profile
    if not overrides:
        return settings
    return Settings.model_validate({**settings.model_dump(), **overrides})


@app.command()
def build(
    project: Annotated[Path, typer.Argument(help="Project tree to build")],
    recipe_path: Annotated[
        Path | None,
        typer.Option(
            "--recipe-path", "-r", help="Prepared recipe (scans the project if omitted)"
        ),
    ] = None,
    runtime_dir: Annotated[
        Path | None,
        typer.Option("--runtime-dir", help="Runtime layout receiving the executable"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, max=64, help="Parallel dependency builds"),
    ] = None,
    timeout: Annotated[
        int | None,
        typer.Option("--timeout", min=1, help="Budget in seconds for the whole build"),
    ] = None,
    binary: Annotated[
        str | None,
        typer.Option("--binary", help="Name of the executable to package"),
    ] = None,
    profile: Annotated[
        str | None,
        typer.Option("--profile", help="Build profile (release or dev)"),
    ] = None,
    keep_work: Annotated[
        bool,
        typer.Option("--keep-work", help="Keep the run directory with build logs"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a project, reusing cached dependency artifacts."""
    from pydantic import ValidationError

    from stagedbuild.db import open_run_history
    from stagedbuild.pipeline.orchestrator import Pipeline
    from stagedbuild.pipeline.service import execute_build
    from stagedbuild.recipe.builder import read_recipe

    try:
        settings = _build_settings(get_settings(), jobs, timeout, binary, profile)
    except ValidationError as e:
        console.print(f"[red]Invalid option: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    runtime_root = runtime_dir or settings.runtime_dir

    try:
        recipe = read_recipe(recipe_path) if recipe_path else None
    except StagedBuildError as e:
        _fail(e, json_output)

    pipeline = Pipeline.from_settings(settings)
    pipeline.keep_work = keep_work

    factory = open_run_history(settings.db_url)

    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
    error: StagedBuildError | None = None
    try:
        with factory() as session:
            try:
                run, result = execute_build(
                    session,
                    pipeline,
                    project,
                    runtime_root,
                    recipe=recipe,
                    timeout=settings.build_timeout,
                    cancel=cancel,
                )
            except StagedBuildError as e:
                error = e
            session.commit()
    finally:
        signal.signal(signal.SIGINT, previous)
        close = getattr(pipeline.store, "close", None)
        if close is not None:
            close()

    if error is not None:
        _fail(error, json_output)

    if json_output:
        console.print_json(
            data={
                "run_id": run.id,
                "cache_key": result.cache_key,
                "cache_hit": result.cache_hit,
                "dependency_compilations": result.dependency_compilations,
                "binary": result.application.name,
                "sha256": result.application.sha256,
                "packaged_path": str(result.packaged_path),
                "states": [s.value for s in result.history],
                "work_dir": str(result.work_dir) if result.work_dir else None,
            }
        )
    else:
        hit = "[green]hit[/green]" if result.cache_hit else "[yellow]miss[/yellow]"
        console.print(f"[bold]Build #{run.id} succeeded[/bold]")
        console.print(f"  Cache key:     {result.cache_key}")
        console.print(f"  Dependencies:  {hit} ({result.dependency_compilations} compiled)")
        console.print(f"  Executable:    {result.packaged_path}")
        if result.work_dir:
            console.print(f"  Work dir:      {result.work_dir}")


@app.command()
def key(
    recipe_path: Annotated[Path, typer.Argument(help="Recipe file")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Print the cache key of a recipe file."""
    from stagedbuild.recipe.builder import read_recipe
    from stagedbuild.recipe.cache_key import compute_cache_key

    try:
        recipe = read_recipe(recipe_path)
    except StagedBuildError as e:
        _fail(e, json_output)

    cache_key = compute_cache_key(recipe)
    if json_output:
        console.print_json(data={"recipe_path": str(recipe_path), "cache_key": cache_key})
    else:
        console.print(cache_key)


cache_app = typer.Typer(help="Manage the local dependency artifact cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cached dependency artifact sets."""
    from stagedbuild.cache.store import LocalCacheStore

    store = LocalCacheStore(get_settings().cache_dir)
    try:
        entries = store.list_entries()
    except StagedBuildError as e:
        _fail(e, json_output)

    if not entries:
        if json_output:
            console.print("[]")
        else:
            console.print("[yellow]No cached artifact sets found[/yellow]")
        return

    if json_output:
        console.print_json(
            data=[
                {
                    "cache_key": s.cache_key,
                    "path": str(s.root),
                    "dependencies": s.dependencies,
                    "entry_count": len(s.entries),
                    "size_bytes": s.size_bytes,
                    "created_at": s.created_at,
                }
                for s in entries
            ]
        )
    else:
        console.print(f"[bold]Found {len(entries)} artifact set(s):[/bold]")
        console.print()
        for s in entries:
            console.print(f"  [green]{s.cache_key}[/green]")
            console.print(f"    Dependencies: {len(s.dependencies)}")
            console.print(f"    Size: {s.size_bytes} bytes")
            console.print(f"    Created: {s.created_at or 'N/A'}")
            console.print()


@cache_app.command("remove")
def cache_remove(
    cache_key: Annotated[str, typer.Argument(help="Cache key to remove")],
) -> None:
    """Remove one cached artifact set."""
    from stagedbuild.cache.store import LocalCacheStore

    store = LocalCacheStore(get_settings().cache_dir)
    try:
        removed = store.remove(cache_key)
    except StagedBuildError as e:
        _fail(e)

    if not removed:
        console.print(f"[red]No cache entry for key: {cache_key}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Removed {cache_key}[/green]")


@cache_app.command("prune")
def cache_prune(
    older_than_days: Annotated[
        int,
        typer.Option(
            "--older-than-days", min=0, help="Remove entries unused for this many days"
        ),
    ],
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be pruned without actually pruning"
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Prune cached artifact sets that have not been used recently."""
    from datetime import timedelta

    from stagedbuild.cache.store import LocalCacheStore

    store = LocalCacheStore(get_settings().cache_dir)
    try:
        pruned = store.prune(timedelta(days=older_than_days), dry_run=dry_run)
    except StagedBuildError as e:
        _fail(e, json_output)

    if json_output:
        console.print_json(data={"dry_run": dry_run, "pruned": pruned})
    elif not pruned:
        console.print("[yellow]No cache entries to prune[/yellow]")
    else:
        prefix = "[DRY RUN] Would prune" if dry_run else "Pruned"
        noun = "entry" if len(pruned) == 1 else "entries"
        console.print(f"[bold]{escape(prefix)} {len(pruned)} cache {noun}:[/bold]")
        for cache_key in pruned:
            console.print(f"  - {cache_key}")


def _run_to_dict(run: Any) -> dict[str, Any]:
    return {
        "id": run.id,
        "project_root": run.project_root,
        "runtime_root": run.runtime_root,
        "profile": run.profile,
        "status": run.status,
        "state": run.state,
        "cache_key": run.cache_key,
        "cache_hit": run.cache_hit,
        "dependency_compilations": run.dependency_compilations,
        "packaged_path": run.packaged_path,
        "requested_at": run.requested_at.isoformat() if run.requested_at else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "error_type": run.error_type,
        "error_stage": run.error_stage,
        "error_message": run.error_message,
    }


runs_app = typer.Typer(help="Inspect recorded pipeline runs")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded pipeline runs."""
    from stagedbuild.db import open_run_history
    from stagedbuild.pipeline.service import list_runs
    from stagedbuild.types import RunStatus

    factory = open_run_history()

    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    with factory() as session:
        runs = list_runs(session, status=status_filter, limit=limit)

        if not runs:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No pipeline runs found[/yellow]")
            return

        if json_output:
            console.print_json(data=[_run_to_dict(r) for r in runs])
        else:
            console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
            console.print()
            for r in runs:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "running": "blue",
                    "pending": "yellow",
                }.get(r.status, "white")
                console.print(f"  [{status_color}]Run #{r.id}[/{status_color}]")
                console.print(f"    Project: {r.project_root}")
                console.print(f"    Status: {r.status} ({r.state or 'N/A'})")
                console.print(f"    Cache hit: {r.cache_hit}")
                if r.error_message:
                    console.print(f"    Error: {escape(r.error_message)}")
                console.print()


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="ID of the run to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show one recorded pipeline run."""
    from stagedbuild.db import open_run_history
    from stagedbuild.pipeline.service import RunNotFoundError, get_run

    factory = open_run_history()

    with factory() as session:
        try:
            run = get_run(session, run_id)
        except RunNotFoundError as e:
            if json_output:
                console.print_json(data={"error": e.code, "message": str(e)})
            else:
                console.print(f"[red]{escape(str(e))}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            console.print_json(data=_run_to_dict(run))
            return

        console.print(f"[bold]Run #{run.id}[/bold]")
        console.print(f"  Project: {run.project_root}")
        console.print(f"  Runtime: {run.runtime_root}")
        console.print(f"  Profile: {run.profile}")
        console.print(f"  Status: {run.status} ({run.state or 'N/A'})")
        console.print(f"  Cache key: {run.cache_key or 'N/A'}")
        console.print(f"  Cache hit: {run.cache_hit}")
        console.print(f"  Dependencies compiled: {run.dependency_compilations}")
        if run.packaged_path:
            console.print(f"  Executable: {run.packaged_path}")
        if run.requested_at:
            console.print(f"  Requested: {run.requested_at.isoformat()}")
        if run.finished_at:
            console.print(f"  Finished: {run.finished_at.isoformat()}")
        if run.error_message:
            console.print(
                f"  [red]Error ({run.error_type}, stage {run.error_stage}):[/red] "
                f"{escape(run.error_message)}"
            )


if __name__ == "__main__":
    app()
