"""Toolchain execution for dependency and application compilation.

This module handles:
- Rendering compile command templates from recipe data
- Executing commands with subprocess
- Capturing stdout/stderr to log files
- Enforcing compile timeouts

Command templates are split with shlex and each argument is rendered with
``str.format``. Available placeholders:

- dependency: ``{name}``, ``{version}``, ``{source}``, ``{features}``,
  ``{default_features}`` (``true``/``false``), ``{output}``, ``{profile}``,
  ``{profile_dir}``
- application: ``{source_dir}``, ``{deps}``, ``{output}``, ``{binary}``,
  ``{profile}``, ``{profile_dir}``
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from stagedbuild.errors import BuildTimeoutError, ToolchainError

if TYPE_CHECKING:
    from stagedbuild.config import Settings
    from stagedbuild.recipe.schema import DependencyConstraint

logger = logging.getLogger(__name__)

# Environment variable pointing application builds at prebuilt dependencies
DEPS_DIR_ENV = "STAGEDBUILD_DEPS_DIR"

PROFILE_DIRS = {"release": "release", "dev": "debug"}


class Toolchain(Protocol):
    """Compiles dependencies and applications."""

    def compile_dependency(
        self,
        name: str,
        constraint: DependencyConstraint,
        output_dir: Path,
        log_path: Path,
        profile: str = "release",
        timeout: float | None = None,
    ) -> None:
        """Compile one dependency into ``output_dir``."""
        ...

    def compile_application(
        self,
        source_dir: Path,
        dependency_dir: Path,
        output_dir: Path,
        binary_name: str,
        log_path: Path,
        profile: str = "release",
        timeout: float | None = None,
    ) -> Path:
        """Compile the application and return the executable's path."""
        ...


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        exit_code: Process exit code.
        log_path: Path to the log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
    """

    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str


def render_command(template: str, values: dict[str, str]) -> list[str]:
    """Render a command template into an argument list.

    Args:
        template: Command template, e.g. ``"cargo build --target-dir {output}"``.
        values: Placeholder values.

    Returns:
        Command as list of strings suitable for subprocess.

    Raises:
        ToolchainError: If the template is empty or uses unknown placeholders.
    """
    try:
        args = [arg.format_map(values) for arg in shlex.split(template)]
    except (KeyError, IndexError, ValueError) as e:
        raise ToolchainError(
            f"Invalid command template {template!r}: {e}",
            code="bad_template",
        ) from e
    if not args:
        raise ToolchainError("Command template is empty", code="bad_template")
    return args


def run_command(
    cmd: list[str],
    cwd: Path,
    log_path: Path,
    timeout: float | None = None,
    env_override: dict[str, str] | None = None,
) -> CommandResult:
    """Execute a compile command with output captured to a log file.

    Args:
        cmd: Command argument list.
        cwd: Working directory.
        log_path: Log file receiving stdout and stderr.
        timeout: Timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        CommandResult for a zero exit code.

    Raises:
        BuildTimeoutError: If the command exceeds the timeout.
        ToolchainError: If the command cannot start or exits non-zero.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)
    logger.debug("Working directory: %s", cwd)

    started_at = datetime.now(timezone.utc)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

    except subprocess.TimeoutExpired as e:
        message = f"Command timed out after {timeout:.1f} seconds: {cmd_str}"
        logger.error("%s. See log: %s", message, log_path)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise BuildTimeoutError(message, code="build_timeout") from e

    except OSError as e:
        message = f"Failed to execute {cmd_str}: {e}"
        logger.error(message)
        raise ToolchainError(message, log_path=log_path, code="execution_error") from e

    finished_at = datetime.now(timezone.utc)
    exit_code = result.returncode

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if exit_code != 0:
        message = f"Command failed with exit code {exit_code}: {cmd_str}"
        logger.error("%s. See log: %s", message, log_path)
        raise ToolchainError(message, exit_code=exit_code, log_path=log_path)

    return CommandResult(
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
    )


class CommandToolchain:
    """Toolchain driven by configurable command templates."""

    def __init__(
        self,
        dependency_command: str,
        application_command: str,
        binary_path: str = "{profile_dir}/{binary}",
        env_override: dict[str, str] | None = None,
    ) -> None:
        self.dependency_command = dependency_command
        self.application_command = application_command
        self.binary_path = binary_path
        self.env_override = env_override or {}

    @classmethod
    def from_settings(cls, settings: Settings) -> CommandToolchain:
        return cls(
            dependency_command=settings.dependency_command,
            application_command=settings.application_command,
            binary_path=settings.binary_path,
        )

    def compile_dependency(
        self,
        name: str,
        constraint: DependencyConstraint,
        output_dir: Path,
        log_path: Path,
        profile: str = "release",
        timeout: float | None = None,
    ) -> None:
        output_dir.mkdir(parents=True, exist_ok=True)
        values = {
            "name": name,
            "version": constraint.version or "*",
            "source": constraint.source,
            "features": ",".join(constraint.features),
            "default_features": str(constraint.default_features).lower(),
            "output": str(output_dir),
            "profile": profile,
            "profile_dir": PROFILE_DIRS.get(profile, profile),
        }
        cmd = render_command(self.dependency_command, values)
        # The output directory is the working directory, so application
        # source is never visible to dependency compilation
        run_command(
            cmd,
            cwd=output_dir,
            log_path=log_path,
            timeout=timeout,
            env_override=self.env_override or None,
        )

    def compile_application(
        self,
        source_dir: Path,
        dependency_dir: Path,
        output_dir: Path,
        binary_name: str,
        log_path: Path,
        profile: str = "release",
        timeout: float | None = None,
    ) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        values = {
            "source_dir": str(source_dir),
            "deps": str(dependency_dir),
            "output": str(output_dir),
            "binary": binary_name,
            "profile": profile,
            "profile_dir": PROFILE_DIRS.get(profile, profile),
        }
        cmd = render_command(self.application_command, values)
        env = {**self.env_override, DEPS_DIR_ENV: str(dependency_dir)}
        run_command(
            cmd,
            cwd=source_dir,
            log_path=log_path,
            timeout=timeout,
            env_override=env,
        )
        try:
            relative = self.binary_path.format_map(values)
        except (KeyError, IndexError, ValueError) as e:
            raise ToolchainError(
                f"Invalid binary path template {self.binary_path!r}: {e}",
                code="bad_template",
            ) from e
        return output_dir / relative


__all__ = [
    "DEPS_DIR_ENV",
    "PROFILE_DIRS",
    "CommandResult",
    "CommandToolchain",
    "Toolchain",
    "render_command",
    "run_command",
]
