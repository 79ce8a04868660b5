"""Tests for application configuration and settings.

This module contains unit tests for the Settings Pydantic model in
parcelmap.core.config: default values, environment overrides, output
directory creation and get_settings caching.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pydantic
import pytest

from parcelmap.core import config

if TYPE_CHECKING:
    import pathlib


def test_settings_defaults() -> None:
    """Test that Settings has expected default values."""
    settings = config.Settings()
    assert settings.tile_extent == 4096
    assert settings.tile_buffer == 64
    assert settings.projection_failure_policy is (
        config.ProjectionFailurePolicy.DROP_FEATURE
    )
    assert settings.allow_projection_fallback is False
    assert settings.allow_origins == ["*"]


def test_settings_output_tree(tmp_path: pathlib.Path) -> None:
    """Test that the output subdirectories hang off output_dir."""
    settings = config.Settings(output_dir=tmp_path)
    assert settings.temp_dir == tmp_path / "temp"
    assert settings.properties_dir == tmp_path / "properties"
    assert settings.tiles_dir == tmp_path / "tiles"


def test_settings_ensure_directories(tmp_path: pathlib.Path) -> None:
    """Test that ensure_directories creates the output tree."""
    settings = config.Settings(output_dir=tmp_path / "out", tiles_subdir="pmtiles")
    assert not settings.output_dir.exists()
    settings.ensure_directories()
    assert settings.temp_dir.is_dir()
    assert settings.properties_dir.is_dir()
    assert (tmp_path / "out" / "pmtiles").is_dir()


def test_settings_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that environment variables override defaults."""
    monkeypatch.setenv("MAX_WORKERS", "8")
    monkeypatch.setenv("PROJECTION_FAILURE_POLICY", "fail_build")
    monkeypatch.setenv("ALLOW_PROJECTION_FALLBACK", "true")
    settings = config.Settings()
    assert settings.max_workers == 8
    assert settings.projection_failure_policy is (
        config.ProjectionFailurePolicy.FAIL_BUILD
    )
    assert settings.allow_projection_fallback is True


def test_settings_rejects_zero_workers() -> None:
    """Test that the worker pool needs at least one worker."""
    with pytest.raises(pydantic.ValidationError):
        config.Settings(max_workers=0)


def test_get_settings_cached() -> None:
    """Test that get_settings returns cached instance."""
    config.get_settings.cache_clear()
    settings1 = config.get_settings()
    settings2 = config.get_settings()
    assert settings1 is settings2
    config.get_settings.cache_clear()


def test_get_settings_creates_directories(
    monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path
) -> None:
    """Test that get_settings ensures the output tree exists."""
    config.get_settings.cache_clear()
    monkeypatch.setenv("OUTPUT_DIR", str(tmp_path / "out"))
    try:
        result = config.get_settings()
        assert result.tiles_dir.is_dir()
        assert result.properties_dir.is_dir()
    finally:
        config.get_settings.cache_clear()
