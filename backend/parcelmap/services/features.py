"""Shapefile reading, attribute transformation and visual centers.

Records are read with pyshp in the source's DBF codepage, filtered by a
region predicate, reprojected through a
:class:`~parcelmap.services.projection.ProjectionResolver`, reshaped by the
source's keep/rename/computed rules and annotated with ``coord``, the
polygon's pole of inaccessibility in ``[lon, lat]``.

Example:
    Transform the records of a registered source:
        >>> from parcelmap.core import sources
        >>> from parcelmap.services import features, projection
        >>> source = sources.get_source("sig")
        >>> registry = projection.default_registry()
        >>> resolver = projection.ProjectionResolver(registry, "EPSG:5186")
        >>> transformer = features.FeatureTransformer(source, resolver)
        >>> result = transformer.transform(
        ...     features.read_shapefile(shp_path, source.encoding)
        ... )
        >>> result.included, result.dropped
        (250, 0)
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any

import shapefile
import shapely.errors
import shapely.ops
from shapely import geometry as shapely_geometry

from parcelmap.core import config, errors
from parcelmap.db import models as db_models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable, Iterator

    from shapely.geometry.base import BaseGeometry

    from parcelmap.core import sources
    from parcelmap.services import projection

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10_000


def read_shapefile(
    path: pathlib.Path, encoding: str = "utf-8"
) -> Iterator[db_models.RawFeature]:
    """Yield the records of a shapefile as raw features.

    Text attributes are decoded with ``encoding``; undecodable bytes are
    replaced rather than failing the whole file. Null shapes yield a feature
    whose geometry is None.

    Args:
        path: Path to the ``.shp`` file; the ``.dbf``/``.shx`` sidecars must
            sit next to it.
        encoding: DBF codepage, e.g. ``"euc-kr"``.

    Yields:
        One RawFeature per record, in file order.
    """
    with shapefile.Reader(
        str(path), encoding=encoding, encodingErrors="replace"
    ) as reader:
        for shape_record in reader.iterShapeRecords():
            shape = shape_record.shape
            geometry = (
                None
                if shape.shapeType == shapefile.NULL
                else shape.__geo_interface__
            )
            yield db_models.RawFeature(
                geometry=geometry, properties=shape_record.record.as_dict()
            )


def read_projection_descriptor(path: pathlib.Path) -> str | None:
    """Return the text of the ``.prj`` sidecar of ``path``, if there is one."""
    prj_path = path.with_suffix(".prj")
    if not prj_path.exists():
        return None
    return prj_path.read_text(encoding="utf-8", errors="replace")


def decode_properties(properties: dict[str, Any], encoding: str) -> dict[str, Any]:
    """Decode any ``bytes`` attribute values with the source codepage."""
    return {
        key: (
            value.decode(encoding, errors="replace")
            if isinstance(value, bytes | bytearray)
            else value
        )
        for key, value in properties.items()
    }


class RegionFilter:
    """Predicate selecting the features that belong to one region.

    A string attribute matches when it starts with ``prefix`` or contains
    ``name``; a numeric attribute matches when its decimal representation
    starts with ``prefix``. Attributes that are absent or None never match.

    Args:
        prefix: Region code prefix, e.g. ``"28"``.
        name: Optional region name matched as a substring.
        fields: Attributes to inspect. When None every attribute is scanned.
    """

    def __init__(
        self,
        prefix: str,
        name: str | None = None,
        fields: list[str] | None = None,
    ) -> None:
        self.prefix = prefix
        self.name = name
        self.fields = fields

    @classmethod
    def from_config(cls, cfg: sources.RegionFilterConfig) -> RegionFilter:
        return cls(prefix=cfg.prefix, name=cfg.name, fields=cfg.fields)

    def _value_matches(self, value: Any) -> bool:
        if isinstance(value, str):
            if value.startswith(self.prefix):
                return True
            return bool(self.name) and self.name in value
        if isinstance(value, int | float) and not isinstance(value, bool):
            return str(value).startswith(self.prefix)
        return False

    def matches(self, properties: dict[str, Any]) -> bool:
        if self.fields is None:
            values = properties.values()
        else:
            values = [properties.get(field) for field in self.fields]
        return any(self._value_matches(value) for value in values)


def transform_properties(
    properties: dict[str, Any], transform: sources.TransformConfig
) -> dict[str, Any]:
    """Apply the keep-list, rename map and computed fields of a source.

    Computed fields read their source attribute from the raw ``properties``
    first and fall back to the already renamed result, so a derived field can
    reference either name.

    Args:
        properties: Decoded raw attributes.
        transform: Keep/rename/computed rules.

    Returns:
        A new attribute dict; ``properties`` is left untouched.

    Example:
        >>> cfg = sources.TransformConfig(rename={"A1": "code", "A2": "name"})
        >>> transform_properties({"A1": "28110101", "A2": "중구"}, cfg)
        {'code': '28110101', 'name': '중구'}
    """
    if transform.properties is not None:
        result = {
            key: properties[key] for key in transform.properties if key in properties
        }
    else:
        result = dict(properties)

    for old, new in transform.rename.items():
        if old in result:
            result[new] = result.pop(old)

    for computed in transform.computed:
        value = properties.get(computed.source)
        if value is None:
            value = result.get(computed.source)
        if value is None or value == "":
            continue
        result[computed.name] = str(value)[computed.start : computed.end]

    return result


def _pole_of_inaccessibility(polygon: shapely_geometry.Polygon, precision: float):
    try:
        return shapely.ops.polylabel(polygon, tolerance=precision)
    except (shapely.errors.TopologicalError, shapely.errors.GEOSException) as exc:
        logger.warning(
            "polylabel failed (%s); using a representative point instead", exc
        )
        return polygon.representative_point()


def visual_center(
    geometry: BaseGeometry | None, precision: float = 0.00001
) -> list[float] | None:
    """Return the point used to place a marker or label on ``geometry``.

    Polygons use the pole of inaccessibility, the interior point farthest
    from every edge, found to within ``precision``. Multi-polygons use their
    largest-area member. Points return their own position. Other geometry
    types, and empty geometries, have no visual center.
    """
    if geometry is None or geometry.is_empty:
        return None
    if isinstance(geometry, shapely_geometry.Point):
        return [geometry.x, geometry.y]
    if isinstance(geometry, shapely_geometry.MultiPolygon):
        geometry = max(geometry.geoms, key=lambda polygon: polygon.area)
    if isinstance(geometry, shapely_geometry.Polygon):
        point = _pole_of_inaccessibility(geometry, precision)
        return [point.x, point.y]
    return None


@dataclasses.dataclass
class TransformResult:
    """Outcome of transforming one source's records.

    Attributes:
        features: Features that passed the filter and projected cleanly.
        total: Records read.
        included: Records that passed the region filter.
        dropped: Included records discarded because they had no geometry or
            a coordinate failed to project.
    """

    features: list[db_models.ProjectedFeature]
    total: int = 0
    included: int = 0
    dropped: int = 0


class FeatureTransformer:
    """Turns raw shapefile records of one source into projected features."""

    def __init__(
        self,
        source: sources.DataSourceConfig,
        resolver: projection.ProjectionResolver,
        policy: config.ProjectionFailurePolicy = (
            config.ProjectionFailurePolicy.DROP_FEATURE
        ),
        precision: float = 0.00001,
    ) -> None:
        self.source = source
        self.resolver = resolver
        self.policy = policy
        self.precision = precision
        filter_cfg = source.transform.filter_region
        self.region_filter = (
            RegionFilter.from_config(filter_cfg) if filter_cfg else None
        )

    def _project(self, raw: db_models.RawFeature) -> BaseGeometry | None:
        try:
            mapping = self.resolver.to_geographic(raw.geometry)
        except errors.CoordinateTransformError:
            if self.policy is config.ProjectionFailurePolicy.FAIL_BUILD:
                raise
            logger.warning(
                "[%s] dropping feature with unprojectable coordinates",
                self.source.name,
                exc_info=True,
            )
            return None
        return shapely_geometry.shape(mapping)

    def transform(
        self, raw_features: Iterable[db_models.RawFeature]
    ) -> TransformResult:
        """Filter, reproject and reshape ``raw_features``.

        Raises:
            CoordinateTransformError: When a coordinate fails to project and
                the policy is ``fail_build``.
        """
        result = TransformResult(features=[])
        for raw in raw_features:
            result.total += 1
            props = decode_properties(raw.properties, self.source.encoding)
            if self.region_filter and not self.region_filter.matches(props):
                continue
            result.included += 1

            if not raw.geometry:
                result.dropped += 1
                continue
            geometry = self._project(raw)
            if geometry is None:
                result.dropped += 1
                continue

            properties = transform_properties(props, self.source.transform)
            center = visual_center(geometry, self.precision)
            if center is not None:
                properties["coord"] = center
            result.features.append(
                db_models.ProjectedFeature(geometry=geometry, properties=properties)
            )
            if len(result.features) % PROGRESS_EVERY == 0:
                logger.debug(
                    "[%s] %d features transformed", self.source.name,
                    len(result.features),
                )

        logger.info(
            "[%s] %d of %d records included, %d dropped",
            self.source.name,
            result.included,
            result.total,
            result.dropped,
        )
        return result
