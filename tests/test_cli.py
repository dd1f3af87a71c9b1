"""Tests for the CLI.

Builds run real shell commands in place of a compiler: each dependency
compilation appends a line to a counter file, so recompilations can be
counted from outside the pipeline.
"""

import json
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from stagedbuild import __version__
from stagedbuild.cli import app

runner = CliRunner()

APP_SH = "#!/bin/sh\necho {message}\n"


@pytest.fixture
def counter(tmp_path: Path) -> Path:
    """File receiving one line per dependency compilation."""
    return tmp_path / "compilations.txt"


@pytest.fixture
def cli_env(tmp_path: Path, counter: Path):
    """Point every configurable path at the test directory."""
    env = {
        "STAGEDBUILD_CACHE_DIR": str(tmp_path / "cache"),
        "STAGEDBUILD_DB_URL": f"sqlite:///{tmp_path / 'db' / 'runs.db'}",
        "STAGEDBUILD_WORK_DIR": str(tmp_path / "work"),
        "STAGEDBUILD_RUNTIME_DIR": str(tmp_path / "runtime"),
        "STAGEDBUILD_LOG_LEVEL": "WARNING",
        "STAGEDBUILD_BINARY_NAME": "app",
        "STAGEDBUILD_DEPENDENCY_COMMAND": (
            f'sh -c "echo {{name}} {{version}} > lib.out && echo {{name}} >> {counter}"'
        ),
        "STAGEDBUILD_APPLICATION_COMMAND": (
            'sh -c "mkdir -p {output}/{profile_dir} '
            "&& cp app.sh {output}/{profile_dir}/{binary} "
            '&& chmod 755 {output}/{profile_dir}/{binary}"'
        ),
    }
    with patch.dict("os.environ", env):
        yield env


@pytest.fixture
def tree_a(tmp_path: Path) -> Path:
    """A project declaring libfoo 1.0 with one application file."""
    root = tmp_path / "tree_a"
    root.mkdir()
    (root / "deps.json").write_text('{"dependencies": {"libfoo": "1.0"}}')
    (root / "app.sh").write_text(APP_SH.format(message="v1"))
    return root


def _compilations(counter: Path) -> list[str]:
    if not counter.exists():
        return []
    return counter.read_text().split()


class TestCLIBasics:
    """Test version and configuration commands."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_help(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "build" in result.stdout
        assert "prepare" in result.stdout

    def test_config_json(self, cli_env, tmp_path: Path) -> None:
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["cache_dir"] == str(tmp_path / "cache")
        assert data["binary_name"] == "app"
        assert data["profile"] == "release"

    def test_config_text(self, cli_env) -> None:
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Effective Configuration" in result.stdout


class TestPrepareAndKey:
    """Test prepare and key commands."""

    def test_prepare_json(self, cli_env, tree_a: Path, tmp_path: Path) -> None:
        recipe_path = tmp_path / "recipe.json"

        result = runner.invoke(
            app, ["prepare", str(tree_a), "-r", str(recipe_path), "--json"]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["dependencies"] == 1
        assert data["cache_key"].startswith("sha256:")
        assert recipe_path.is_file()

        key_result = runner.invoke(app, ["key", str(recipe_path), "--json"])
        assert key_result.exit_code == 0
        assert json.loads(key_result.stdout)["cache_key"] == data["cache_key"]

    def test_prepare_is_deterministic(self, cli_env, tree_a: Path, tmp_path: Path) -> None:
        first = tmp_path / "first.json"
        second = tmp_path / "second.json"
        runner.invoke(app, ["prepare", str(tree_a), "-r", str(first)])
        runner.invoke(app, ["prepare", str(tree_a), "-r", str(second)])

        assert first.read_bytes() == second.read_bytes()

    def test_prepare_conflict_exit_code(self, cli_env, tmp_path: Path) -> None:
        root = tmp_path / "conflict"
        (root / "sub").mkdir(parents=True)
        (root / "deps.json").write_text('{"dependencies": {"libfoo": "1.0"}}')
        (root / "sub" / "deps.yaml").write_text("dependencies:\n  libfoo: '2.0'\n")

        result = runner.invoke(app, ["prepare", str(root), "-r", str(tmp_path / "r.json")])

        assert result.exit_code == 11

    def test_prepare_missing_tree(self, cli_env, tmp_path: Path) -> None:
        result = runner.invoke(app, ["prepare", str(tmp_path / "missing"), "--json"])
        assert result.exit_code == 10
        assert json.loads(result.stdout)["error"] == "missing_tree"

    def test_prepare_unwritable_recipe_path(self, cli_env, tree_a: Path, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")

        result = runner.invoke(
            app, ["prepare", str(tree_a), "-r", str(blocker / "recipe.json"), "--json"]
        )

        assert result.exit_code == 18
        assert json.loads(result.stdout)["error"] == "write_failed"

    def test_key_unreadable_recipe(self, cli_env, tmp_path: Path) -> None:
        recipe_path = tmp_path / "broken.json"
        recipe_path.write_text("{not json")

        result = runner.invoke(app, ["key", str(recipe_path)])

        assert result.exit_code == 18


class TestBuild:
    """Test the build command end to end."""

    def test_miss_then_hit(self, cli_env, tree_a: Path, tmp_path: Path, counter: Path) -> None:
        first = runner.invoke(app, ["build", str(tree_a), "--json"])

        assert first.exit_code == 0, first.output
        data = json.loads(first.stdout)
        assert data["cache_hit"] is False
        assert data["dependency_compilations"] == 1
        assert data["states"][-1] == "packaged"
        packaged = tmp_path / "runtime" / "usr" / "local" / "bin" / "app"
        assert data["packaged_path"] == str(packaged)
        assert packaged.read_text() == APP_SH.format(message="v1")
        assert json.loads((tmp_path / "runtime" / "entrypoint.json").read_text()) == {
            "entrypoint": ["/usr/local/bin/app"],
            "args": [],
        }
        assert _compilations(counter) == ["libfoo"]

        (tree_a / "app.sh").write_text(APP_SH.format(message="v2"))
        second = runner.invoke(app, ["build", str(tree_a), "--json"])

        assert second.exit_code == 0, second.output
        data2 = json.loads(second.stdout)
        assert data2["cache_hit"] is True
        assert data2["dependency_compilations"] == 0
        assert data2["cache_key"] == data["cache_key"]
        assert data2["sha256"] != data["sha256"]
        assert "dependency_cache_hit" in data2["states"]
        assert packaged.read_text() == APP_SH.format(message="v2")
        assert _compilations(counter) == ["libfoo"]

    def test_version_change_recompiles(
        self, cli_env, tree_a: Path, counter: Path
    ) -> None:
        runner.invoke(app, ["build", str(tree_a)])
        (tree_a / "deps.json").write_text('{"dependencies": {"libfoo": "1.1"}}')

        result = runner.invoke(app, ["build", str(tree_a), "--json"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["cache_hit"] is False
        assert _compilations(counter) == ["libfoo", "libfoo"]

    def test_build_from_prepared_recipe(
        self, cli_env, tree_a: Path, tmp_path: Path
    ) -> None:
        recipe_path = tmp_path / "recipe.json"
        runner.invoke(app, ["prepare", str(tree_a), "-r", str(recipe_path)])

        result = runner.invoke(app, ["build", str(tree_a), "-r", str(recipe_path)])

        assert result.exit_code == 0, result.output
        assert "succeeded" in result.stdout

    def test_stale_recipe_exit_code(self, cli_env, tree_a: Path, tmp_path: Path, counter) -> None:
        recipe_path = tmp_path / "recipe.json"
        runner.invoke(app, ["prepare", str(tree_a), "-r", str(recipe_path)])
        (tree_a / "deps.json").write_text('{"dependencies": {"libfoo": "2.0"}}')

        result = runner.invoke(app, ["build", str(tree_a), "-r", str(recipe_path)])

        assert result.exit_code == 18
        assert _compilations(counter) == []

    def test_dependency_failure_exit_code(self, cli_env, tree_a: Path, tmp_path: Path) -> None:
        with patch.dict("os.environ", {"STAGEDBUILD_DEPENDENCY_COMMAND": "sh -c 'exit 3'"}):
            result = runner.invoke(app, ["build", str(tree_a)])

        assert result.exit_code == 12
        assert not (tmp_path / "cache").exists() or not list(
            (tmp_path / "cache").glob("sha256_*")
        )

    def test_missing_binary_exit_code(self, cli_env, tree_a: Path) -> None:
        with patch.dict("os.environ", {"STAGEDBUILD_APPLICATION_COMMAND": "true"}):
            result = runner.invoke(app, ["build", str(tree_a)])

        assert result.exit_code == 14

    def test_keep_work(self, cli_env, tree_a: Path) -> None:
        result = runner.invoke(app, ["build", str(tree_a), "--keep-work", "--json"])

        assert result.exit_code == 0, result.output
        work_dir = Path(json.loads(result.stdout)["work_dir"])
        assert (work_dir / "logs" / "dependencies" / "libfoo.log").is_file()

    def test_invalid_profile(self, cli_env, tree_a: Path) -> None:
        result = runner.invoke(app, ["build", str(tree_a), "--profile", "fast"])
        assert result.exit_code == 1


class TestCacheCommands:
    """Test cache list, remove and prune commands."""

    def test_list_empty(self, cli_env) -> None:
        result = runner.invoke(app, ["cache", "list", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_list_remove(self, cli_env, tree_a: Path) -> None:
        build = runner.invoke(app, ["build", str(tree_a), "--json"])
        cache_key = json.loads(build.stdout)["cache_key"]

        listed = runner.invoke(app, ["cache", "list", "--json"])
        assert listed.exit_code == 0
        entries = json.loads(listed.stdout)
        assert [e["cache_key"] for e in entries] == [cache_key]
        assert entries[0]["dependencies"] == ["libfoo"]

        removed = runner.invoke(app, ["cache", "remove", cache_key])
        assert removed.exit_code == 0
        assert json.loads(runner.invoke(app, ["cache", "list", "--json"]).stdout) == []

    def test_remove_unknown_key(self, cli_env) -> None:
        result = runner.invoke(app, ["cache", "remove", "sha256:" + "0" * 64])
        assert result.exit_code == 1

    def test_prune(self, cli_env, tree_a: Path) -> None:
        build = runner.invoke(app, ["build", str(tree_a), "--json"])
        cache_key = json.loads(build.stdout)["cache_key"]
        entry = json.loads(runner.invoke(app, ["cache", "list", "--json"]).stdout)[0]
        old = time.time() - 3 * 86400
        os.utime(entry["path"], (old, old))

        fresh = runner.invoke(app, ["cache", "prune", "--older-than-days", "7", "--json"])
        assert json.loads(fresh.stdout)["pruned"] == []

        dry = runner.invoke(
            app, ["cache", "prune", "--older-than-days", "1", "--dry-run", "--json"]
        )
        assert json.loads(dry.stdout) == {"dry_run": True, "pruned": [cache_key]}
        assert len(json.loads(runner.invoke(app, ["cache", "list", "--json"]).stdout)) == 1

        real = runner.invoke(app, ["cache", "prune", "--older-than-days", "1", "--json"])
        assert json.loads(real.stdout)["pruned"] == [cache_key]
        assert json.loads(runner.invoke(app, ["cache", "list", "--json"]).stdout) == []


class TestRunsCommands:
    """Test runs list and show commands."""

    def test_empty(self, cli_env) -> None:
        result = runner.invoke(app, ["runs", "list", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_records_builds(self, cli_env, tree_a: Path) -> None:
        runner.invoke(app, ["build", str(tree_a)])
        with patch.dict("os.environ", {"STAGEDBUILD_DEPENDENCY_COMMAND": "false"}):
            (tree_a / "deps.json").write_text('{"dependencies": {"libbar": "0.1"}}')
            runner.invoke(app, ["build", str(tree_a)])

        result = runner.invoke(app, ["runs", "list", "--json"])

        assert result.exit_code == 0
        runs = json.loads(result.stdout)
        assert [r["status"] for r in runs] == ["failed", "succeeded"]
        assert runs[0]["error_stage"] == "dependencies"
        assert runs[1]["state"] == "packaged"

        failed = runner.invoke(app, ["runs", "list", "--status", "failed", "--json"])
        assert len(json.loads(failed.stdout)) == 1

    def test_invalid_status(self, cli_env) -> None:
        result = runner.invoke(app, ["runs", "list", "--status", "bogus"])
        assert result.exit_code == 1

    def test_show_run(self, cli_env, tree_a: Path) -> None:
        runner.invoke(app, ["build", str(tree_a)])
        run_id = json.loads(runner.invoke(app, ["runs", "list", "--json"]).stdout)[0]["id"]

        result = runner.invoke(app, ["runs", "show", str(run_id), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["id"] == run_id
        assert data["status"] == "succeeded"
        assert data["cache_key"].startswith("sha256:")
        assert data["packaged_path"].endswith("app")

        text = runner.invoke(app, ["runs", "show", str(run_id)])
        assert text.exit_code == 0
        assert f"Run #{run_id}" in text.stdout

    def test_show_unknown_run(self, cli_env) -> None:
        result = runner.invoke(app, ["runs", "show", "999", "--json"])

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"] == "run_not_found"

        text = runner.invoke(app, ["runs", "show", "999"])
        assert text.exit_code == 1
        assert "not found" in text.stdout
