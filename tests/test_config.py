"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from stagedbuild.config import (
    DEFAULT_EXCLUDE_DIRS,
    Settings,
    get_settings,
    print_settings_json,
)


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.cache_dir == Path.home() / ".cache" / "stagedbuild" / "artifacts"
        assert "sqlite" in settings.db_url
        assert settings.cache_url is None
        assert settings.profile == "release"
        assert settings.jobs == 4
        assert settings.build_timeout is None
        assert settings.runtime_dir == Path("runtime")
        assert settings.recipe_path == Path("recipe.json")
        assert settings.exclude_dirs == DEFAULT_EXCLUDE_DIRS
        assert settings.log_level == "INFO"

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "STAGEDBUILD_JOBS": "8",
                "STAGEDBUILD_PROFILE": "dev",
                "STAGEDBUILD_BUILD_TIMEOUT": "600",
                "STAGEDBUILD_CACHE_URL": "http://cache.local/artifacts",
                "STAGEDBUILD_LOG_LEVEL": "DEBUG",
            },
        ):
            settings = Settings()
            assert settings.jobs == 8
            assert settings.profile == "dev"
            assert settings.build_timeout == 600
            assert settings.cache_url == "http://cache.local/artifacts"
            assert settings.log_level == "DEBUG"

    def test_cache_dir_from_env(self) -> None:
        """Cache dir should be configurable via env."""
        with patch.dict(os.environ, {"STAGEDBUILD_CACHE_DIR": "/tmp/test-cache"}):
            settings = Settings()
            assert settings.cache_dir == Path("/tmp/test-cache")

    def test_jobs_bounds(self) -> None:
        """jobs must stay within 1..64."""
        with pytest.raises(ValidationError):
            Settings(jobs=0)
        with pytest.raises(ValidationError):
            Settings(jobs=65)

    def test_invalid_profile_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(profile="fast")

    def test_cache_url_normalized(self) -> None:
        assert Settings(cache_url="https://cache.local/a/").cache_url == "https://cache.local/a"
        assert Settings(cache_url="  ").cache_url is None

    def test_cache_url_scheme_required(self) -> None:
        with pytest.raises(ValidationError):
            Settings(cache_url="ftp://cache.local")

    @pytest.mark.parametrize("name", ["", "bin/app", ".."])
    def test_binary_name_must_be_plain(self, name: str) -> None:
        with pytest.raises(ValidationError):
            Settings(binary_name=name)


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        parsed = json.loads(print_settings_json(Settings()))

        assert "cache_dir" in parsed
        assert "dependency_command" in parsed
        assert parsed["jobs"] >= 1
