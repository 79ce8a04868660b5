"""Tests for shapefile reading and feature transformation.

Covers the attribute rename and region filter behaviors, visual centers of
simple polygons, and the end-to-end FeatureTransformer over a shapefile
written with pyshp, including dropped features.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from shapely import geometry as shapely_geometry

from parcelmap.core import config, errors, sources
from parcelmap.db import models as db_models
from parcelmap.services import features, projection

from shapes import ORIGIN_X, ORIGIN_Y, square_ring, write_polygon_shapefile

if TYPE_CHECKING:
    import pathlib

SIG_CODE = sources.ComputedField(name="sigCode", source="PNU", start=0, end=5)


def test_rename_map() -> None:
    """Test that attributes are renamed."""
    cfg = sources.TransformConfig(rename={"A1": "code", "A2": "name"})
    result = features.transform_properties({"A1": "28110101", "A2": "중구"}, cfg)
    assert result == {"code": "28110101", "name": "중구"}


def test_keep_list_and_computed_fields() -> None:
    """Test the keep-list and derived code fields of parcels."""
    cfg = sources.get_source("parcels").transform
    raw = {
        "PNU": "2820010100100010000",
        "JIBUN": "1-1 대",
        "BCHK": "1",
        "UNUSED": "x",
    }
    result = features.transform_properties(raw, cfg)
    assert result == {
        "PNU": "2820010100100010000",
        "jibun": "1-1 대",
        "BCHK": "1",
        "sigCode": "28200",
        "emdCode": "2820010100",
    }
    assert raw["JIBUN"] == "1-1 대"


def test_computed_field_reads_renamed_attribute() -> None:
    """Test that derived fields see renamed attributes."""
    cfg = sources.TransformConfig(
        rename={"A2": "PNU"},
        computed=[SIG_CODE],
    )
    result = features.transform_properties({"A2": "2820010100"}, cfg)
    assert result == {"PNU": "2820010100", "sigCode": "28200"}


def test_computed_field_skips_missing_source() -> None:
    """Test that an empty source attribute derives nothing."""
    cfg = sources.TransformConfig(
        computed=[SIG_CODE],
    )
    assert features.transform_properties({"PNU": ""}, cfg) == {"PNU": ""}


def test_region_filter_prefix() -> None:
    """Test matching on a code prefix."""
    region = features.RegionFilter("28")
    assert region.matches({"A1": "28110101"})
    assert not region.matches({"A1": "11110101"})


def test_region_filter_absent_field() -> None:
    """Test that only the configured fields are inspected."""
    region = features.RegionFilter("28", fields=["A2"])
    assert region.matches({"A2": "28110101"})
    assert not region.matches({"A1": "28110101"})
    assert not region.matches({"A2": None})


def test_region_filter_name_and_numbers() -> None:
    """Test name matching and numeric codes."""
    region = features.RegionFilter("28", name="인천")
    assert region.matches({"NAME": "인천광역시 남동구"})
    assert region.matches({"CODE": 28200})
    assert not region.matches({"FLAG": True})


def test_decode_properties() -> None:
    """Test decoding of byte attributes with the source codepage."""
    raw = {"NAME": "남동구".encode("euc-kr"), "CODE": 28200}
    assert features.decode_properties(raw, "euc-kr") == {"NAME": "남동구", "CODE": 28200}


def test_rectangle_visual_center() -> None:
    """Test the visual center of a rectangle."""
    rectangle = shapely_geometry.Polygon([(0, 0), (10, 0), (10, 4), (0, 4)])
    x, y = features.visual_center(rectangle, precision=0.01)
    assert x == pytest.approx(5, abs=0.01)
    assert y == pytest.approx(2, abs=0.01)


def test_convex_visual_center_is_inside() -> None:
    """The incenter of the 6-8-10 right triangle is (2, 2) with radius 2."""
    triangle = shapely_geometry.Polygon([(0, 0), (6, 0), (0, 8)])
    center = features.visual_center(triangle, precision=0.001)
    point = shapely_geometry.Point(center)
    assert triangle.contains(point)
    assert point.distance(triangle.exterior) == pytest.approx(2, abs=0.001)
    assert point.distance(shapely_geometry.Point(2, 2)) < 0.05


def test_multipolygon_visual_center_uses_largest_part() -> None:
    """Test that a multipolygon is labelled on its largest part."""
    multi = shapely_geometry.MultiPolygon(
        [
            shapely_geometry.box(0, 0, 1, 1),
            shapely_geometry.box(10, 10, 20, 14),
        ]
    )
    x, y = features.visual_center(multi, precision=0.01)
    assert 10 < x < 20
    assert 10 < y < 14


def test_visual_center_other_geometries() -> None:
    """Test points, lines and empty geometries."""
    assert features.visual_center(shapely_geometry.Point(1.5, 2.5)) == [1.5, 2.5]
    assert features.visual_center(shapely_geometry.LineString([(0, 0), (1, 1)])) is None
    assert features.visual_center(None) is None
    assert features.visual_center(shapely_geometry.Polygon()) is None


def _source(**transform: object) -> sources.DataSourceConfig:
    return sources.DataSourceConfig(
        name="test",
        description="test parcels",
        raw_file="test.shp",
        transform=sources.TransformConfig(**transform),
    )


def _resolver() -> projection.ProjectionResolver:
    return projection.ProjectionResolver(projection.default_registry(), "EPSG:5186")


def test_read_shapefile(tmp_path: pathlib.Path) -> None:
    """Test reading records, null shapes and the .prj sidecar."""
    path = write_polygon_shapefile(
        tmp_path / "parcels.shp",
        ["PNU", "NAME"],
        [
            (square_ring(ORIGIN_X, ORIGIN_Y), {"PNU": "2820010100", "NAME": "구월동"}),
            (None, {"PNU": "2820010200", "NAME": "간석동"}),
        ],
        encoding="euc-kr",
    )
    raw = list(features.read_shapefile(path, "euc-kr"))
    assert len(raw) == 2
    assert raw[0].geometry["type"] == "Polygon"
    assert raw[0].properties == {"PNU": "2820010100", "NAME": "구월동"}
    assert raw[1].geometry is None
    assert features.read_projection_descriptor(path).startswith("PROJCS")
    assert features.read_projection_descriptor(tmp_path / "missing.shp") is None


def test_transformer_end_to_end(tmp_path: pathlib.Path) -> None:
    """Test filtering, renaming and projecting a shapefile."""
    path = write_polygon_shapefile(
        tmp_path / "parcels.shp",
        ["A1", "A2"],
        [
            (square_ring(ORIGIN_X, ORIGIN_Y), {"A1": "28200101", "A2": "구월동"}),
            (square_ring(ORIGIN_X + 400, ORIGIN_Y), {"A1": "11110101", "A2": "청운동"}),
            (None, {"A1": "28200102", "A2": "간석동"}),
        ],
    )
    source = _source(
        filter_region=sources.RegionFilterConfig(prefix="28", fields=["A1"]),
        rename={"A1": "code", "A2": "name"},
    )
    result = features.FeatureTransformer(source, _resolver()).transform(
        features.read_shapefile(path)
    )
    assert (result.total, result.included, result.dropped) == (3, 2, 1)
    [feature] = result.features
    assert feature.properties["code"] == "28200101"
    assert feature.properties["name"] == "구월동"
    assert "A1" not in feature.properties
    lon, lat = feature.properties["coord"]
    assert 126.7 < lon < 126.8
    assert 37.4 < lat < 37.5
    assert feature.geometry.contains(shapely_geometry.Point(lon, lat))


class _FailingResolver:
    def to_geographic(self, geometry: dict) -> dict:
        raise errors.CoordinateTransformError((1.0, 2.0), "outside domain")


def _raw() -> list[db_models.RawFeature]:
    ring = square_ring(ORIGIN_X, ORIGIN_Y)
    geometry = {"type": "Polygon", "coordinates": [ring]}
    return [db_models.RawFeature(geometry, {"A1": "1"})]


def test_transformer_drops_unprojectable_feature() -> None:
    """Test the drop_feature policy."""
    transformer = features.FeatureTransformer(_source(), _FailingResolver())
    result = transformer.transform(_raw())
    assert result.features == []
    assert result.dropped == 1


def test_transformer_fail_build_policy() -> None:
    """Test the fail_build policy."""
    transformer = features.FeatureTransformer(
        _source(),
        _FailingResolver(),
        policy=config.ProjectionFailurePolicy.FAIL_BUILD,
    )
    with pytest.raises(errors.CoordinateTransformError):
        transformer.transform(_raw())
