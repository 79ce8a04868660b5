"""Tests for tile arithmetic and the per-zoom tile index."""

from __future__ import annotations

import pytest
from shapely import geometry as shapely_geometry

from parcelmap.db import models as db_models
from parcelmap.services import tile_index
from parcelmap.utils import tile_math


def _feature(geometry, **properties) -> db_models.ProjectedFeature:
    return db_models.ProjectedFeature(geometry=geometry, properties=properties)


def test_mercator_round_trip() -> None:
    """Test the mercator projection round trip."""
    x, y = tile_math.lonlat_to_mercator(126.73, 37.45)
    lon, lat = tile_math.mercator_to_lonlat(x, y)
    assert lon == pytest.approx(126.73)
    assert lat == pytest.approx(37.45)
    assert tile_math.lonlat_to_mercator(0, 0) == pytest.approx((0.5, 0.5))


def test_tile_range_clamps_and_buffers() -> None:
    """Test tile ranges and bounds."""
    assert tile_math.tile_range((0.0, 0.0, 1.0, 1.0), 1) == (0, 0, 1, 1)
    assert tile_math.tile_range((0.3, 0.3, 0.4, 0.4), 1) == (0, 0, 0, 0)
    assert tile_math.tile_range((0.3, 0.3, 0.49, 0.4), 1, buffer=0.05) == (0, 0, 1, 0)
    assert tile_math.tile_bounds(1, 1, 0) == (0.5, 0.0, 1.0, 0.5)
    assert tile_math.is_valid_tile(1, 1, 1)
    assert not tile_math.is_valid_tile(1, 2, 0)


def test_only_non_empty_tiles_are_materialized() -> None:
    """A multipolygon whose bbox spans the world only touches two tiles."""
    multi = shapely_geometry.MultiPolygon(
        [
            shapely_geometry.box(-100, 40, -90, 50),
            shapely_geometry.box(90, -50, 100, -40),
        ]
    )
    index = tile_index.TileIndex(buffer=0).build([_feature(multi)], 1, 1)
    assert index.keys() == {db_models.TileKey(1, 0, 0), db_models.TileKey(1, 1, 1)}


def test_every_zoom_is_indexed() -> None:
    """Test that every zoom in range is indexed."""
    parcel = shapely_geometry.box(126.730, 37.450, 126.732, 37.452)
    index = tile_index.TileIndex().build([_feature(parcel, PNU="1")], 10, 14)
    assert sorted({key.z for key in index.keys()}) == [10, 11, 12, 13, 14]
    for key, tile_features in index.tiles():
        assert len(tile_features) == 1
        assert tile_features[0].properties == {"PNU": "1"}
        assert tile_features[0].feature_index == 0


def test_feature_visible_in_every_intersecting_tile() -> None:
    """At each zoom the feature lands in exactly the tiles it intersects."""
    area = shapely_geometry.box(126.70, 37.40, 126.80, 37.50)
    index = tile_index.TileIndex(buffer=0).build([_feature(area)], 8, 12)
    mercator = shapely_geometry.box(
        *tile_math.lonlat_to_mercator(126.70, 37.50),
        *tile_math.lonlat_to_mercator(126.80, 37.40),
    )
    for z in range(8, 13):
        expected = set()
        x0, y0, x1, y1 = tile_math.tile_range(mercator.bounds, z)
        for x in range(x0, x1 + 1):
            for y in range(y0, y1 + 1):
                tile = shapely_geometry.box(*tile_math.tile_bounds(z, x, y))
                if tile.intersection(mercator).area > 0:
                    expected.add(db_models.TileKey(z, x, y))
        assert {key for key in index.keys() if key.z == z} == expected


def test_buffer_overlap_duplicates_only_near_edges() -> None:
    """A feature straddling lon 0 appears on both sides, a distant one once."""
    straddling = shapely_geometry.box(-1, 10, 1, 20)
    distant = shapely_geometry.box(-100, 10, -90, 20)
    index = tile_index.TileIndex().build(
        [_feature(straddling, id=1), _feature(distant, id=2)], 1, 1
    )
    west = index.get(db_models.TileKey(1, 0, 0))
    east = index.get(db_models.TileKey(1, 1, 0))
    assert sorted(f.properties["id"] for f in west) == [1, 2]
    assert [f.properties["id"] for f in east] == [1]
    for clipped in east:
        assert clipped.geometry.bounds[0] >= 0.5 - 64 / 4096 / 2 - 1e-12


def test_points_are_clipped_not_simplified() -> None:
    """Test point features."""
    point = shapely_geometry.Point(126.73, 37.45)
    index = tile_index.TileIndex().build([_feature(point)], 14, 14)
    [(key, [tile_feature])] = list(index.tiles())
    assert key.z == 14
    assert tile_feature.geometry.geom_type == "Point"
    x, y = tile_math.lonlat_to_mercator(126.73, 37.45)
    assert tile_feature.geometry.x == pytest.approx(x)
    assert tile_feature.geometry.y == pytest.approx(y)


def test_rebuild_discards_previous_tiles() -> None:
    """Test that build starts from an empty index."""
    index = tile_index.TileIndex()
    index.build([_feature(shapely_geometry.Point(126.73, 37.45))], 5, 5)
    index.build([], 5, 5)
    assert len(index) == 0


def test_invalid_zoom_range() -> None:
    """Test that an inverted zoom range raises."""
    with pytest.raises(ValueError):
        tile_index.TileIndex().build([], 5, 4)


def test_from_settings(settings) -> None:
    """Test building an index from settings."""
    index = tile_index.TileIndex.from_settings(settings)
    assert (index.extent, index.buffer, index.tolerance) == (4096, 64, 3.0)
