"""Pytest configuration: package imports and shared fixtures."""

from __future__ import annotations

import pathlib
import sys

import pytest

BACKEND_ROOT = pathlib.Path(__file__).resolve().parent

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from parcelmap.core import config  # noqa: E402
from parcelmap.db import models as db_models  # noqa: E402


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    """Settings rooted in a temporary directory."""
    return config.Settings(
        raw_dir=tmp_path / "raw",
        output_dir=tmp_path / "out",
        max_workers=2,
    )


@pytest.fixture
def encoded_tiles() -> list[db_models.EncodedTile]:
    """A few tiles with distinct payloads over three zoom levels."""
    keys = [
        db_models.TileKey(0, 0, 0),
        db_models.TileKey(1, 0, 0),
        db_models.TileKey(1, 1, 0),
        db_models.TileKey(1, 1, 1),
        db_models.TileKey(2, 3, 1),
    ]
    return [
        db_models.EncodedTile(key=key, payload=f"tile {key}".encode())
        for key in keys
    ]
