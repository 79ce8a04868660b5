"""Spherical-mercator tile arithmetic.

Coordinates are handled in a normalized mercator plane where the world spans
``[0, 1]`` on both axes, x growing east and y growing south, so that tile
``(z, x, y)`` covers ``[x / 2^z, (x + 1) / 2^z)`` horizontally. This is the
same plane the tile index clips in.
"""

from __future__ import annotations

import math

import numpy as np

MAX_LATITUDE = 85.05112877980659


def lonlat_to_mercator(lon: float, lat: float) -> tuple[float, float]:
    """Project a WGS84 position into the normalized mercator plane."""
    lat = max(-MAX_LATITUDE, min(MAX_LATITUDE, lat))
    sin = math.sin(math.radians(lat))
    x = lon / 360.0 + 0.5
    y = 0.5 - 0.25 * math.log((1 + sin) / (1 - sin)) / math.pi
    return x, y


def mercator_to_lonlat(x: float, y: float) -> tuple[float, float]:
    lon = (x - 0.5) * 360.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y))))
    return lon, lat


def lonlat_array_to_mercator(coords: np.ndarray) -> np.ndarray:
    """Vectorized :func:`lonlat_to_mercator` over an ``(n, 2)`` array."""
    lon = coords[:, 0]
    lat = np.clip(coords[:, 1], -MAX_LATITUDE, MAX_LATITUDE)
    sin = np.sin(np.radians(lat))
    x = lon / 360.0 + 0.5
    y = 0.5 - 0.25 * np.log((1 + sin) / (1 - sin)) / np.pi
    return np.column_stack((x, y))


def tile_bounds(
    z: int, x: int, y: int, buffer: float = 0.0
) -> tuple[float, float, float, float]:
    """Mercator-plane bounds of a tile, grown by ``buffer`` tile units."""
    size = 1.0 / (1 << z)
    return (
        (x - buffer) * size,
        (y - buffer) * size,
        (x + 1 + buffer) * size,
        (y + 1 + buffer) * size,
    )


def tile_range(
    bounds: tuple[float, float, float, float], z: int, buffer: float = 0.0
) -> tuple[int, int, int, int]:
    """Inclusive tile column/row range touched by mercator ``bounds``.

    Tiles whose buffered extent intersects ``bounds`` are included; the range
    is clamped to the valid tiles at zoom ``z``.
    """
    n = 1 << z
    minx, miny, maxx, maxy = bounds
    x0 = max(0, math.floor(minx * n - buffer))
    y0 = max(0, math.floor(miny * n - buffer))
    x1 = min(n - 1, math.floor(maxx * n + buffer))
    y1 = min(n - 1, math.floor(maxy * n + buffer))
    return x0, y0, x1, y1


def is_valid_tile(z: int, x: int, y: int) -> bool:
    return 0 <= z <= 31 and 0 <= x < (1 << z) and 0 <= y < (1 << z)
