"""Per-zoom tile index over projected features.

Features are moved into the normalized mercator plane once, then for every
zoom in the configured range each geometry is simplified with a tolerance of
``simplify_tolerance`` tile pixels, and clipped to every tile its bounding box
touches. The clip rectangle is the tile grown by ``tile_buffer`` pixels on
each side so that strokes do not show seams at tile edges. Only tiles that
end up holding at least one non-empty geometry are materialized.

Example:
    Index a handful of features and list the tiles:
        >>> from parcelmap.services.tile_index import TileIndex
        >>> index = TileIndex(extent=4096, buffer=64, tolerance=3.0)
        >>> index.build(projected_features, min_zoom=12, max_zoom=14)
        >>> for key, tile_features in index.tiles():
        ...     print(key, len(tile_features))
        12/3490/1588 42
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import shapely
from shapely import geometry as shapely_geometry

from parcelmap.db import models as db_models
from parcelmap.utils import tile_math

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from shapely.geometry.base import BaseGeometry

    from parcelmap.core import config

logger = logging.getLogger(__name__)

_POINT_TYPES = ("Point", "MultiPoint")


class TileIndex:
    """Sparse mapping of TileKey to the features clipped into that tile.

    Attributes:
        extent: Tile extent in pixels.
        buffer: Clip buffer in pixels.
        tolerance: Simplification tolerance in pixels.
    """

    def __init__(
        self, extent: int = 4096, buffer: int = 64, tolerance: float = 3.0
    ) -> None:
        self.extent = extent
        self.buffer = buffer
        self.tolerance = tolerance
        self._tiles: dict[db_models.TileKey, list[db_models.TileFeature]] = {}

    @classmethod
    def from_settings(cls, settings: config.Settings) -> TileIndex:
        return cls(
            extent=settings.tile_extent,
            buffer=settings.tile_buffer,
            tolerance=settings.simplify_tolerance,
        )

    def __len__(self) -> int:
        return len(self._tiles)

    def __contains__(self, key: object) -> bool:
        return key in self._tiles

    def get(self, key: db_models.TileKey) -> list[db_models.TileFeature] | None:
        return self._tiles.get(key)

    def keys(self) -> set[db_models.TileKey]:
        return set(self._tiles)

    def tiles(
        self,
    ) -> Iterator[tuple[db_models.TileKey, list[db_models.TileFeature]]]:
        """Yield ``(key, features)`` pairs in (z, x, y) order."""
        for key in sorted(self._tiles):
            yield key, self._tiles[key]

    def build(
        self,
        features: Sequence[db_models.ProjectedFeature],
        min_zoom: int,
        max_zoom: int,
    ) -> TileIndex:
        """Index ``features`` for every zoom in ``[min_zoom, max_zoom]``.

        Any previously indexed tiles are discarded.

        Args:
            features: Features in geographic coordinates.
            min_zoom: Lowest zoom level to materialize.
            max_zoom: Highest zoom level to materialize.

        Returns:
            The index itself, for chaining.
        """
        if min_zoom > max_zoom:
            raise ValueError("min_zoom must not exceed max_zoom")

        self._tiles = {}
        mercator = [
            shapely.transform(feature.geometry, tile_math.lonlat_array_to_mercator)
            for feature in features
        ]
        for z in range(min_zoom, max_zoom + 1):
            before = len(self._tiles)
            for feature_index, (feature, geometry) in enumerate(
                zip(features, mercator, strict=True)
            ):
                self._add_feature(z, feature_index, feature, geometry)
            logger.debug("zoom %d: %d tiles", z, len(self._tiles) - before)
        return self

    def _add_feature(
        self,
        z: int,
        feature_index: int,
        feature: db_models.ProjectedFeature,
        geometry: BaseGeometry,
    ) -> None:
        if geometry.is_empty:
            return
        is_point = geometry.geom_type in _POINT_TYPES
        if not is_point:
            geometry = geometry.simplify(
                self.tolerance / self.extent / (1 << z), preserve_topology=True
            )
            if geometry.is_empty:
                return

        buffer = self.buffer / self.extent
        x0, y0, x1, y1 = tile_math.tile_range(geometry.bounds, z, buffer)
        for x in range(x0, x1 + 1):
            for y in range(y0, y1 + 1):
                rect = tile_math.tile_bounds(z, x, y, buffer)
                if is_point:
                    clipped = geometry.intersection(shapely_geometry.box(*rect))
                else:
                    clipped = shapely.clip_by_rect(geometry, *rect)
                if clipped.is_empty:
                    continue
                key = db_models.TileKey(z, x, y)
                self._tiles.setdefault(key, []).append(
                    db_models.TileFeature(
                        geometry=clipped,
                        properties=feature.properties,
                        feature_index=feature_index,
                    )
                )
