"""Shared fixtures for stagedbuild tests."""

import hashlib
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from stagedbuild.builds.toolchain import PROFILE_DIRS
from stagedbuild.errors import BuildTimeoutError, ToolchainError
from stagedbuild.recipe.schema import DependencyConstraint

LIBFOO_CARGO_TOML = """\
[package]
name = "kserver"
version = "0.1.0"

[dependencies]
libfoo = "1.2"
serde = { version = "1.0", features = ["derive"] }
"""

MAIN_RS = 'fn main() { println!("hello"); }\n'


class FakeToolchain:
    """Toolchain double that writes small files instead of compiling.

    Attributes:
        compiled: Dependency identifiers in the order compilation started.
        application_builds: Number of application compilations.
        dependency_dirs: Dependency directories seen by application builds.
    """

    def __init__(
        self,
        fail: set[str] | None = None,
        delay: float = 0.0,
        on_compile: Callable[[str], None] | None = None,
        executable: bool = True,
        produce_binary: bool = True,
        fail_application: bool = False,
        empty: set[str] | None = None,
    ) -> None:
        self.fail = fail or set()
        self.empty = empty or set()
        self.delay = delay
        self.on_compile = on_compile
        self.executable = executable
        self.produce_binary = produce_binary
        self.fail_application = fail_application
        self.compiled: list[str] = []
        self.application_builds = 0
        self.dependency_dirs: list[Path] = []
        self._lock = threading.Lock()

    @property
    def compilations(self) -> int:
        with self._lock:
            return len(self.compiled)

    def compile_dependency(
        self,
        name: str,
        constraint: DependencyConstraint,
        output_dir: Path,
        log_path: Path,
        profile: str = "release",
        timeout: float | None = None,
    ) -> None:
        with self._lock:
            self.compiled.append(name)
        if self.on_compile is not None:
            self.on_compile(name)
        if self.delay:
            if timeout is not None and self.delay > timeout:
                time.sleep(timeout)
                raise BuildTimeoutError(f"compile of {name} timed out", code="build_timeout")
            time.sleep(self.delay)

        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"compiling {name}\n")
        if name in self.fail:
            raise ToolchainError(
                f"Command failed with exit code 101: compile {name}",
                exit_code=101,
                log_path=log_path,
            )
        output_dir.mkdir(parents=True, exist_ok=True)
        if name in self.empty:
            return
        (output_dir / f"lib{name.replace('/', '_')}.rlib").write_text(
            f"{name} {constraint.version} {','.join(constraint.features)} {profile}\n"
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
        with self._lock:
            self.application_builds += 1
            self.dependency_dirs.append(dependency_dir)

        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"building {binary_name}\n")
        if self.fail_application:
            raise ToolchainError(
                "Command failed with exit code 101: build application",
                exit_code=101,
                log_path=log_path,
            )

        binary = output_dir / PROFILE_DIRS.get(profile, profile) / binary_name
        if not self.produce_binary:
            return binary
        binary.parent.mkdir(parents=True, exist_ok=True)
        deps = sorted(p.name for p in dependency_dir.iterdir() if p.is_dir())
        sources = sorted(p.read_text() for p in source_dir.rglob("*.rs"))
        binary.write_text(
            "#!/bin/sh\n"
            f"# deps: {' '.join(deps)}\n"
            f"# sources: {hashlib.sha256(''.join(sources).encode()).hexdigest()[:16]}\n"
            f"echo {binary_name}\n"
        )
        binary.chmod(0o755 if self.executable else 0o644)
        return binary


@pytest.fixture
def toolchain() -> FakeToolchain:
    """Create a fake toolchain."""
    return FakeToolchain()


@pytest.fixture
def make_project(tmp_path: Path) -> Callable[..., Path]:
    """Return a helper that writes a project tree from a file mapping."""

    def _make(files: dict[str, str], name: str = "project") -> Path:
        root = tmp_path / name
        for relative, content in files.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return root

    return _make


@pytest.fixture
def libfoo_project(make_project: Callable[..., Path]) -> Path:
    """Create a project depending on libfoo 1.2 and serde."""
    return make_project(
        {
            "Cargo.toml": LIBFOO_CARGO_TOML,
            "src/main.rs": MAIN_RS,
        }
    )
