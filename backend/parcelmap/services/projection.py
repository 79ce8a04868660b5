"""Source CRS detection and reprojection to geographic coordinates.

Korean government shapefiles ship in one of a handful of local Transverse
Mercator projections (GRS80 "Korea 2000" belts or the older Bessel-based
systems). The ``.prj`` sidecar is classified by substring signatures into one
of the definitions held by a :class:`ProjectionRegistry`, and a
:class:`ProjectionResolver` then reprojects GeoJSON-like geometry mappings to
EPSG:4326 (longitude/latitude) using pyproj.

A coordinate that cannot be transformed raises
:class:`~parcelmap.core.errors.CoordinateTransformError`; the caller decides
whether to drop the feature or fail the build. Untransformed coordinates are
never passed through.

Example:
    Detect the CRS of a shapefile and reproject a point:
        >>> from parcelmap.services import projection
        >>> registry = projection.default_registry()
        >>> detection = projection.detect_crs(prj_text, registry)
        >>> resolver = projection.ProjectionResolver(registry, detection.name)
        >>> resolver.to_geographic({"type": "Point",
        ...                         "coordinates": [200000.0, 600000.0]})
        {'type': 'Point', 'coordinates': [127.0, 38.0]}
"""

from __future__ import annotations

import dataclasses
import logging
import math
from typing import TYPE_CHECKING, Any, NamedTuple

import pyproj
import pyproj.exceptions

from parcelmap.core import errors

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)

GEOGRAPHIC_CRS = "EPSG:4326"

_BESSEL_TOWGS84 = "+towgs84=-115.80,474.99,674.11,1.16,-2.31,-1.63,6.43"

KOREAN_PROJECTIONS: dict[str, str] = {
    "EPSG:5174": (
        "+proj=tmerc +lat_0=38 +lon_0=127.0028902777778 +k=1 +x_0=200000 "
        f"+y_0=500000 +ellps=bessel +units=m +no_defs {_BESSEL_TOWGS84}"
    ),
    "EPSG:5179": (
        "+proj=tmerc +lat_0=38 +lon_0=127.5 +k=0.9996 +x_0=1000000 "
        "+y_0=2000000 +ellps=GRS80 +units=m +no_defs"
    ),
    "EPSG:5186": (
        "+proj=tmerc +lat_0=38 +lon_0=127 +k=1 +x_0=200000 +y_0=600000 "
        "+ellps=GRS80 +units=m +no_defs"
    ),
    "EPSG:5187": (
        "+proj=tmerc +lat_0=38 +lon_0=129 +k=1 +x_0=200000 +y_0=600000 "
        "+ellps=GRS80 +units=m +no_defs"
    ),
    "EPSG:2097": (
        "+proj=tmerc +lat_0=38 +lon_0=127 +k=1 +x_0=200000 +y_0=500000 "
        f"+ellps=bessel +units=m +no_defs {_BESSEL_TOWGS84}"
    ),
}

DEFAULT_PROJECTION = "EPSG:5186"


@dataclasses.dataclass
class ProjectionRegistry:
    """Named projection definitions plus the fallback used for unknown input.

    Attributes:
        definitions: CRS name to PROJ string.
        default: Name used when detection finds no signature and the caller
            allows falling back.
    """

    definitions: dict[str, str]
    default: str = DEFAULT_PROJECTION

    def __post_init__(self) -> None:
        if self.default not in self.definitions:
            raise ValueError(f"default projection {self.default} is not defined")

    def crs(self, name: str) -> pyproj.CRS:
        try:
            definition = self.definitions[name]
        except KeyError:
            raise errors.UnknownProjectionError(
                f"projection {name} is not registered"
            ) from None
        return pyproj.CRS.from_proj4(definition)


def default_registry() -> ProjectionRegistry:
    """Registry of the Korean projections the government datasets use."""
    return ProjectionRegistry(definitions=dict(KOREAN_PROJECTIONS))


class CrsDetection(NamedTuple):
    name: str
    matched: bool


def _classify(prj_text: str) -> str | None:
    if "Korea_2000" in prj_text or "Korean_2000" in prj_text:
        if "Central_Belt" in prj_text or "127.0" in prj_text:
            return "EPSG:5186"
        if "East_Belt" in prj_text or "129" in prj_text:
            return "EPSG:5187"
        return "EPSG:5179"
    if "Bessel" in prj_text:
        if "127.00" in prj_text:
            return "EPSG:5174"
        return "EPSG:2097"
    return None


def detect_crs(
    prj_text: str | None,
    registry: ProjectionRegistry,
    allow_fallback: bool = False,
) -> CrsDetection:
    """Classify a ``.prj`` descriptor into one of the registered projections.

    Args:
        prj_text: Contents of the ``.prj`` file, or None when it is missing.
        registry: Known projections and the fallback.
        allow_fallback: Return the registry default instead of raising when
            no signature matches. The fallback is logged as a warning and
            reported through ``CrsDetection.matched``.

    Returns:
        The detected (or fallback) projection name.

    Raises:
        UnknownProjectionError: If nothing matches and fallback is disallowed,
            or the matched projection is not in the registry.
    """
    name = _classify(prj_text) if prj_text else None
    if name is None:
        if not allow_fallback:
            raise errors.UnknownProjectionError(
                "projection descriptor matches no known signature"
                if prj_text
                else "projection descriptor is missing"
            )
        logger.warning(
            "Unrecognised projection descriptor, falling back to %s",
            registry.default,
        )
        return CrsDetection(registry.default, matched=False)
    if name not in registry.definitions:
        raise errors.UnknownProjectionError(f"projection {name} is not registered")
    return CrsDetection(name, matched=True)


Coordinate = list[float]


class ProjectionResolver:
    """Reprojects geometry mappings between one source CRS and EPSG:4326."""

    def __init__(self, registry: ProjectionRegistry, source_crs: str) -> None:
        self.source_crs = source_crs
        crs = registry.crs(source_crs)
        self._forward = pyproj.Transformer.from_crs(
            crs, GEOGRAPHIC_CRS, always_xy=True
        )
        self._inverse = pyproj.Transformer.from_crs(
            GEOGRAPHIC_CRS, crs, always_xy=True
        )

    def to_geographic(self, geometry: dict[str, Any] | None) -> dict[str, Any] | None:
        """Reproject a geometry mapping from the source CRS to lon/lat."""
        return _transform_geometry(geometry, self._forward.transform)

    def to_source(self, geometry: dict[str, Any] | None) -> dict[str, Any] | None:
        """Inverse of :meth:`to_geographic`."""
        return _transform_geometry(geometry, self._inverse.transform)


def _transform_ring(
    ring: Sequence[Sequence[float]],
    transform: Callable[..., tuple[Any, Any]],
) -> list[Coordinate]:
    if not ring:
        return []
    xs = [c[0] for c in ring]
    ys = [c[1] for c in ring]
    try:
        out_x, out_y = transform(xs, ys, errcheck=True)
    except pyproj.exceptions.ProjError as exc:
        bad = _first_failing(ring, transform)
        raise errors.CoordinateTransformError(bad, str(exc)) from exc
    result: list[Coordinate] = []
    for source, x, y in zip(ring, out_x, out_y, strict=True):
        if not (math.isfinite(x) and math.isfinite(y)):
            raise errors.CoordinateTransformError(
                tuple(source), "non-finite result"
            )
        result.append([float(x), float(y), *source[2:]])
    return result


def _first_failing(
    ring: Sequence[Sequence[float]],
    transform: Callable[..., tuple[Any, Any]],
) -> tuple[float, ...]:
    for coordinate in ring:
        try:
            transform(coordinate[0], coordinate[1], errcheck=True)
        except pyproj.exceptions.ProjError:
            return tuple(coordinate)
    return tuple(ring[0])


def _transform_geometry(
    geometry: dict[str, Any] | None,
    transform: Callable[..., tuple[Any, Any]],
) -> dict[str, Any] | None:
    if not geometry:
        return geometry

    geom_type = geometry["type"]
    if geom_type == "GeometryCollection":
        return {
            "type": geom_type,
            "geometries": [
                _transform_geometry(g, transform) for g in geometry["geometries"]
            ],
        }

    coordinates = geometry["coordinates"]
    if geom_type == "Point":
        transformed: Any = _transform_ring([coordinates], transform)[0]
    elif geom_type in ("LineString", "MultiPoint"):
        transformed = _transform_ring(coordinates, transform)
    elif geom_type in ("Polygon", "MultiLineString"):
        transformed = [_transform_ring(ring, transform) for ring in coordinates]
    elif geom_type == "MultiPolygon":
        transformed = [
            [_transform_ring(ring, transform) for ring in polygon]
            for polygon in coordinates
        ]
    else:
        raise ValueError(f"unsupported geometry type: {geom_type}")
    return {"type": geom_type, "coordinates": transformed}
