"""Tests for builds/application.py module."""

from pathlib import Path

import pytest

from conftest import FakeToolchain
from stagedbuild.builds.application import (
    ApplicationStageBuilder,
    resolve_binary_name,
    validate_artifact_set,
)
from stagedbuild.builds.artifacts import ArtifactSet, finalize_artifact_set
from stagedbuild.errors import ApplicationBuildError, MissingDependencyArtifactError
from stagedbuild.types import Stage

KEY = "sha256:" + "1" * 64
OTHER_KEY = "sha256:" + "2" * 64


@pytest.fixture
def artifact_set(tmp_path: Path) -> ArtifactSet:
    """Create a complete artifact set for KEY."""
    root = tmp_path / "deps"
    (root / "libfoo").mkdir(parents=True)
    (root / "libfoo" / "liblibfoo.rlib").write_text("libfoo\n")
    return finalize_artifact_set(root, KEY, ["libfoo"])


class TestResolveBinaryName:
    """Test resolve_binary_name function."""

    def test_override_wins(self, libfoo_project: Path) -> None:
        assert resolve_binary_name(libfoo_project, "custom") == "custom"

    def test_package_name(self, libfoo_project: Path) -> None:
        assert resolve_binary_name(libfoo_project) == "kserver"

    def test_bin_target_preferred(self, make_project) -> None:
        root = make_project(
            {"Cargo.toml": '[package]\nname = "pkg"\n\n[[bin]]\nname = "server"\n'}
        )
        assert resolve_binary_name(root) == "server"

    def test_generic_manifest_binary(self, make_project) -> None:
        root = make_project({"deps.yaml": "binary: tool\ndependencies: {}\n"})
        assert resolve_binary_name(root) == "tool"

    def test_unresolvable(self, make_project) -> None:
        root = make_project({"deps.json": '{"dependencies": {}}'})
        with pytest.raises(ApplicationBuildError) as exc_info:
            resolve_binary_name(root)
        assert exc_info.value.code == "binary_name"


class TestValidateArtifactSet:
    """Test validate_artifact_set function."""

    def test_valid(self, artifact_set: ArtifactSet) -> None:
        assert validate_artifact_set(artifact_set, KEY) is artifact_set

    def test_absent(self) -> None:
        with pytest.raises(MissingDependencyArtifactError) as exc_info:
            validate_artifact_set(None, KEY)
        assert exc_info.value.code == "no_artifact_set"
        assert exc_info.value.stage is Stage.APPLICATION

    def test_key_mismatch(self, artifact_set: ArtifactSet) -> None:
        with pytest.raises(MissingDependencyArtifactError) as exc_info:
            validate_artifact_set(artifact_set, OTHER_KEY)
        assert exc_info.value.code == "artifact_key_mismatch"

    def test_incomplete(self, artifact_set: ArtifactSet) -> None:
        (artifact_set.root / "libfoo" / "liblibfoo.rlib").unlink()
        with pytest.raises(MissingDependencyArtifactError) as exc_info:
            validate_artifact_set(artifact_set, KEY)
        assert exc_info.value.code == "artifact_incomplete"


class TestApplicationStageBuilder:
    """Test ApplicationStageBuilder."""

    def test_builds_executable(self, libfoo_project, artifact_set, tmp_path) -> None:
        toolchain = FakeToolchain()
        builder = ApplicationStageBuilder(toolchain)

        artifact = builder.build(libfoo_project, artifact_set, KEY, tmp_path / "out")

        assert artifact.name == "kserver"
        assert artifact.path == tmp_path / "out" / "release" / "kserver"
        assert artifact.cache_key == KEY
        assert len(artifact.sha256) == 64
        assert toolchain.dependency_dirs == [artifact_set.root]
        assert toolchain.compiled == []

    def test_refuses_without_artifacts(self, libfoo_project, tmp_path) -> None:
        toolchain = FakeToolchain()
        with pytest.raises(MissingDependencyArtifactError):
            ApplicationStageBuilder(toolchain).build(libfoo_project, None, KEY, tmp_path)
        assert toolchain.application_builds == 0

    def test_refuses_mismatched_artifacts(self, libfoo_project, artifact_set, tmp_path) -> None:
        toolchain = FakeToolchain()
        with pytest.raises(MissingDependencyArtifactError):
            ApplicationStageBuilder(toolchain).build(
                libfoo_project, artifact_set, OTHER_KEY, tmp_path / "out"
            )
        assert toolchain.application_builds == 0

    def test_compile_failure(self, libfoo_project, artifact_set, tmp_path) -> None:
        with pytest.raises(ApplicationBuildError) as exc_info:
            ApplicationStageBuilder(FakeToolchain(fail_application=True)).build(
                libfoo_project, artifact_set, KEY, tmp_path / "out"
            )
        assert exc_info.value.log_path == tmp_path / "out" / "application.log"
        assert exc_info.value.stage is Stage.APPLICATION

    def test_missing_binary(self, libfoo_project, artifact_set, tmp_path) -> None:
        with pytest.raises(ApplicationBuildError) as exc_info:
            ApplicationStageBuilder(FakeToolchain(produce_binary=False)).build(
                libfoo_project, artifact_set, KEY, tmp_path / "out"
            )
        assert exc_info.value.code == "missing_binary"

    def test_not_executable(self, libfoo_project, artifact_set, tmp_path) -> None:
        with pytest.raises(ApplicationBuildError) as exc_info:
            ApplicationStageBuilder(FakeToolchain(executable=False)).build(
                libfoo_project, artifact_set, KEY, tmp_path / "out"
            )
        assert exc_info.value.code == "not_executable"

    def test_dev_profile_output(self, libfoo_project, artifact_set, tmp_path) -> None:
        artifact = ApplicationStageBuilder(FakeToolchain(), profile="dev").build(
            libfoo_project, artifact_set, KEY, tmp_path / "out"
        )
        assert artifact.path.parent.name == "debug"
