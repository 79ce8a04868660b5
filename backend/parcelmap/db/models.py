"""Data models for features, tiles and archives.

This module defines the core data structures that flow through the build
pipeline, from raw shapefile records to archive directory entries, and the
descriptor the tile service keeps for every archive it knows about.

Example:
    Describing a tile and its encoded payload:
        >>> from parcelmap.db.models import TileKey, EncodedTile
        >>> key = TileKey(z=14, x=13956, y=6353)
        >>> tile = EncodedTile(key=key, payload=bytes(10))
        >>> tile.length
        10

    A directory entry addressing three consecutive tiles sharing one blob:
        >>> from parcelmap.db.models import DirectoryEntry
        >>> DirectoryEntry(tile_id=1400, offset=0, length=512, run_length=3)
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import TYPE_CHECKING, Any, NamedTuple

from shapely import geometry as shapely_geometry

if TYPE_CHECKING:
    import pathlib

    from shapely.geometry.base import BaseGeometry

BBox = tuple[float, float, float, float]


class Compression(enum.IntEnum):
    UNKNOWN = 0
    NONE = 1
    GZIP = 2
    BROTLI = 3
    ZSTD = 4


class TileType(enum.IntEnum):
    UNKNOWN = 0
    MVT = 1
    PNG = 2
    JPEG = 3
    WEBP = 4
    AVIF = 5


@dataclasses.dataclass
class RawFeature:
    """A shapefile record before any transformation.

    Attributes:
        geometry: GeoJSON-like geometry mapping in the source CRS, or None
            for null shapes.
        properties: DBF attributes; values may still be undecoded ``bytes``.
    """

    geometry: dict[str, Any] | None
    properties: dict[str, Any]


@dataclasses.dataclass(frozen=True)
class ProjectedFeature:
    """A feature in geographic coordinates with transformed attributes.

    ``properties`` carries the renamed/derived attributes and, for polygons
    and points, ``coord``: the ``[lon, lat]`` visual center.
    """

    geometry: BaseGeometry
    properties: dict[str, Any]

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "properties": self.properties,
            "geometry": shapely_geometry.mapping(self.geometry),
        }


class TileKey(NamedTuple):
    z: int
    x: int
    y: int

    def __str__(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"


@dataclasses.dataclass(frozen=True)
class TileFeature:
    """A feature clipped to one tile (plus buffer), still in mercator units."""

    geometry: BaseGeometry
    properties: dict[str, Any]
    feature_index: int


@dataclasses.dataclass(frozen=True)
class EncodedTile:
    key: TileKey
    payload: bytes

    @property
    def length(self) -> int:
        return len(self.payload)


@dataclasses.dataclass
class DirectoryEntry:
    """One directory row.

    ``run_length`` > 0 addresses tiles ``tile_id .. tile_id + run_length - 1``
    that all share the blob at ``[offset, offset + length)``; 0 marks a
    pointer to a leaf directory.
    """

    tile_id: int
    offset: int
    length: int
    run_length: int = 1


@dataclasses.dataclass
class ArchiveHeader:
    """The fixed 127-byte archive header, field for field."""

    root_offset: int
    root_length: int
    metadata_offset: int
    metadata_length: int
    leaf_directory_offset: int
    leaf_directory_length: int
    tile_data_offset: int
    tile_data_length: int
    addressed_tiles_count: int
    tile_entries_count: int
    tile_contents_count: int
    clustered: bool
    internal_compression: Compression
    tile_compression: Compression
    tile_type: TileType
    min_zoom: int
    max_zoom: int
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float
    center_zoom: int
    center_lon: float
    center_lat: float

    @property
    def bounds(self) -> BBox:
        return (self.min_lon, self.min_lat, self.max_lon, self.max_lat)


@dataclasses.dataclass
class ArchiveDescriptor:
    """An archive file the tile service can serve.

    Attributes:
        name: Archive name used in tile URLs (file stem).
        path: Location of the archive file.
        size_bytes: File size at registration time.
        modified_at: File modification time at registration time.
    """

    name: str
    path: pathlib.Path
    size_bytes: int
    modified_at: datetime.datetime
