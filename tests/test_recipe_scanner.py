"""Tests for recipe/scanner.py module."""

import os
from pathlib import Path

import pytest

from stagedbuild.errors import ScanError
from stagedbuild.recipe.scanner import classify_manifest, scan_project
from stagedbuild.types import ManifestKind, Stage


class TestClassifyManifest:
    """Test manifest classification by file name."""

    @pytest.mark.parametrize(
        ("filename", "kind"),
        [
            ("Cargo.toml", ManifestKind.CARGO),
            ("Cargo.lock", ManifestKind.CARGO_LOCK),
            ("deps.yaml", ManifestKind.YAML),
            ("deps.yml", ManifestKind.YAML),
            ("deps.json", ManifestKind.JSON),
        ],
    )
    def test_known_names(self, filename: str, kind: ManifestKind) -> None:
        assert classify_manifest(filename) is kind

    def test_source_files_ignored(self) -> None:
        assert classify_manifest("main.rs") is None
        assert classify_manifest("cargo.toml") is None


class TestScanProject:
    """Test scan_project function."""

    def test_finds_manifests_sorted(self, make_project) -> None:
        root = make_project(
            {
                "Cargo.toml": "",
                "Cargo.lock": "",
                "crates/zeta/Cargo.toml": "",
                "crates/alpha/deps.yaml": "",
                "src/main.rs": "fn main() {}\n",
            }
        )

        manifests = scan_project(root)

        assert [m.relative_path for m in manifests] == [
            "Cargo.lock",
            "Cargo.toml",
            "crates/alpha/deps.yaml",
            "crates/zeta/Cargo.toml",
        ]
        assert manifests[2].kind is ManifestKind.YAML
        assert manifests[0].path == root / "Cargo.lock"

    def test_excluded_directories_skipped(self, make_project) -> None:
        root = make_project(
            {
                "Cargo.toml": "",
                "target/debug/build/foo/Cargo.toml": "",
                ".git/Cargo.toml": "",
            }
        )

        manifests = scan_project(root)

        assert [m.relative_path for m in manifests] == ["Cargo.toml"]

    def test_custom_exclude_dirs(self, make_project) -> None:
        root = make_project({"Cargo.toml": "", "vendor/x/Cargo.toml": ""})

        manifests = scan_project(root, exclude_dirs=["vendor"])

        assert [m.relative_path for m in manifests] == ["Cargo.toml"]

    def test_no_manifests_is_not_an_error(self, make_project) -> None:
        root = make_project({"src/main.rs": "fn main() {}\n"})
        assert scan_project(root) == []

    def test_missing_tree(self, tmp_path: Path) -> None:
        with pytest.raises(ScanError) as exc_info:
            scan_project(tmp_path / "nope")
        assert exc_info.value.code == "missing_tree"
        assert exc_info.value.stage is Stage.SCAN

    def test_file_instead_of_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "file.txt"
        path.write_text("x")
        with pytest.raises(ScanError) as exc_info:
            scan_project(path)
        assert exc_info.value.code == "not_a_directory"

    def test_empty_tree(self, tmp_path: Path) -> None:
        root = tmp_path / "empty"
        root.mkdir()
        with pytest.raises(ScanError) as exc_info:
            scan_project(root)
        assert exc_info.value.code == "empty_tree"

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    def test_unreadable_subdirectory(self, make_project) -> None:
        root = make_project({"Cargo.toml": "", "locked/deps.yaml": ""})
        locked = root / "locked"
        locked.chmod(0)
        try:
            with pytest.raises(ScanError) as exc_info:
                scan_project(root)
            assert exc_info.value.code == "unreadable_tree"
        finally:
            locked.chmod(0o755)
