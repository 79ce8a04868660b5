"""Single-file tile archive writer (PMTiles v3 layout).

An archive is laid out as::

    header (127 bytes) | root directory | metadata | leaf directories | tile data

Tiles are addressed by a 64-bit identifier: the number of tiles on all lower
zoom levels, ``(4^z - 1) / 3``, plus the tile's distance along a Hilbert
curve over its own zoom level. Sorting by identifier therefore groups
spatially close tiles, and consecutive identifiers are cheap to store as
deltas.

A directory is a gzip-compressed sequence of unsigned LEB128 varints: the
entry count, then column by column the identifier deltas, run lengths, byte
lengths and offsets. An offset that starts exactly where the previous entry
ended is stored as 0, any other offset as ``offset + 1``. Tiles with
byte-identical payloads share one blob, and runs of consecutive identifiers
sharing a blob collapse into a single entry. When the root directory would
not fit in the first 16 KiB together with the header, entries move into
leaf directories and the root only points at the leaves (``run_length`` 0).

Example:
    Write an archive from encoded tiles:
        >>> from parcelmap.services import archive_writer
        >>> metadata = archive_writer.build_metadata(
        ...     name="parcels", description="남동구 필지",
        ...     layer_name="parcels", min_zoom=12, max_zoom=17,
        ...     properties=[f.properties for f in features],
        ... )
        >>> header = archive_writer.write_archive(
        ...     path, batch.tiles, metadata, min_zoom=12, max_zoom=17,
        ...     bounds=(126.6, 37.3, 126.8, 37.5),
        ... )
        >>> header.addressed_tiles_count
        5120
"""

from __future__ import annotations

import gzip
import hashlib
import io
import json
import logging
import os
import struct
from typing import TYPE_CHECKING, Any, BinaryIO

from parcelmap.core import errors
from parcelmap.db import models as db_models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable, Sequence

logger = logging.getLogger(__name__)

MAGIC = b"PMTiles"
SPEC_VERSION = 3
HEADER_SIZE = 127
ROOT_DIRECTORY_MAX_BYTES = 16384 - HEADER_SIZE
INITIAL_LEAF_SIZE = 4096
GENERATOR = "parcelmap"

HEADER_STRUCT = struct.Struct("<7sBQQQQQQQQQQQBBBBBBiiiiBii")


# Tile identifiers


def _rotate(n: int, x: int, y: int, rx: int, ry: int) -> tuple[int, int]:
    if ry == 0:
        if rx == 1:
            x = n - 1 - x
            y = n - 1 - y
        x, y = y, x
    return x, y


def zxy_to_tile_id(z: int, x: int, y: int) -> int:
    """Flatten tile coordinates into their archive identifier.

    Raises:
        ValueError: If the zoom exceeds 31 or the column/row is outside the
            zoom level.
    """
    if z > 31:
        raise ValueError(f"zoom {z} exceeds the 64-bit identifier range")
    n = 1 << z
    if not (0 <= x < n and 0 <= y < n):
        raise ValueError(f"tile {z}/{x}/{y} is outside zoom level {z}")

    tile_id = ((1 << (2 * z)) - 1) // 3
    s = n >> 1
    while s > 0:
        rx = 1 if x & s else 0
        ry = 1 if y & s else 0
        tile_id += s * s * ((3 * rx) ^ ry)
        x, y = _rotate(n, x, y, rx, ry)
        s >>= 1
    return tile_id


def tile_id_to_zxy(tile_id: int) -> tuple[int, int, int]:
    """Inverse of :func:`zxy_to_tile_id`."""
    if tile_id < 0:
        raise ValueError("tile identifiers are unsigned")
    acc = 0
    for z in range(32):
        level_size = 1 << (2 * z)
        if tile_id < acc + level_size:
            return (z, *_position_on_level(z, tile_id - acc))
        acc += level_size
    raise ValueError(f"tile identifier {tile_id} is beyond zoom 31")


def _position_on_level(z: int, position: int) -> tuple[int, int]:
    n = 1 << z
    t = position
    x = y = 0
    s = 1
    while s < n:
        rx = 1 & (t // 2)
        ry = 1 & (t ^ rx)
        x, y = _rotate(s, x, y, rx, ry)
        x += s * rx
        y += s * ry
        t //= 4
        s *= 2
    return x, y


# Varints and directories


def write_varint(stream: BinaryIO, value: int) -> None:
    if value < 0:
        raise ValueError("varints are unsigned")
    while value >= 0x80:
        stream.write(bytes(((value & 0x7F) | 0x80,)))
        value >>= 7
    stream.write(bytes((value,)))


def read_varint(stream: BinaryIO) -> int:
    value = 0
    shift = 0
    while True:
        raw = stream.read(1)
        if not raw:
            raise errors.ArchiveFormatError("truncated varint")
        byte = raw[0]
        value |= (byte & 0x7F) << shift
        if byte < 0x80:
            return value
        shift += 7
        if shift > 63:
            raise errors.ArchiveFormatError("varint exceeds 64 bits")


def _gzip(data: bytes) -> bytes:
    return gzip.compress(data, mtime=0)


def serialize_directory(entries: Sequence[db_models.DirectoryEntry]) -> bytes:
    """Encode and gzip-compress a directory."""
    buffer = io.BytesIO()
    write_varint(buffer, len(entries))
    last_id = 0
    for entry in entries:
        write_varint(buffer, entry.tile_id - last_id)
        last_id = entry.tile_id
    for entry in entries:
        write_varint(buffer, entry.run_length)
    for entry in entries:
        write_varint(buffer, entry.length)
    for i, entry in enumerate(entries):
        previous = entries[i - 1] if i > 0 else None
        if previous is not None and entry.offset == previous.offset + previous.length:
            write_varint(buffer, 0)
        else:
            write_varint(buffer, entry.offset + 1)
    return _gzip(buffer.getvalue())


def deserialize_directory(data: bytes) -> list[db_models.DirectoryEntry]:
    """Decompress and decode a directory written by :func:`serialize_directory`."""
    try:
        stream = io.BytesIO(gzip.decompress(data))
    except (OSError, EOFError) as exc:
        raise errors.ArchiveFormatError(f"corrupt directory: {exc}") from exc

    count = read_varint(stream)
    entries = []
    last_id = 0
    for _ in range(count):
        last_id += read_varint(stream)
        entries.append(db_models.DirectoryEntry(tile_id=last_id, offset=0, length=0))
    for entry in entries:
        entry.run_length = read_varint(stream)
    for entry in entries:
        entry.length = read_varint(stream)
    for i, entry in enumerate(entries):
        raw = read_varint(stream)
        if raw == 0 and i > 0:
            previous = entries[i - 1]
            entry.offset = previous.offset + previous.length
        else:
            entry.offset = raw - 1
    return entries


def _build_roots_and_leaves(
    entries: Sequence[db_models.DirectoryEntry], leaf_size: int
) -> tuple[bytes, bytes, int]:
    root_entries = []
    leaves = io.BytesIO()
    for start in range(0, len(entries), leaf_size):
        chunk = entries[start : start + leaf_size]
        serialized = serialize_directory(chunk)
        root_entries.append(
            db_models.DirectoryEntry(
                tile_id=chunk[0].tile_id,
                offset=leaves.tell(),
                length=len(serialized),
                run_length=0,
            )
        )
        leaves.write(serialized)
    return serialize_directory(root_entries), leaves.getvalue(), len(root_entries)


def build_directories(
    entries: Sequence[db_models.DirectoryEntry],
    root_max_bytes: int = ROOT_DIRECTORY_MAX_BYTES,
) -> tuple[bytes, bytes, int]:
    """Split ``entries`` into a root directory and leaf directories.

    Returns:
        ``(root_bytes, leaf_bytes, leaf_count)``; ``leaf_bytes`` is empty and
        ``leaf_count`` is 0 when every entry fits in the root.
    """
    root = serialize_directory(entries)
    if len(root) <= root_max_bytes:
        return root, b"", 0

    leaf_size = INITIAL_LEAF_SIZE
    while True:
        root, leaves, leaf_count = _build_roots_and_leaves(entries, leaf_size)
        if len(root) <= root_max_bytes:
            logger.debug(
                "Directory split into %d leaves of up to %d entries",
                leaf_count,
                leaf_size,
            )
            return root, leaves, leaf_count
        leaf_size *= 2


# Header


def _e7(value: float) -> int:
    return int(round(value * 10_000_000))


def serialize_header(header: db_models.ArchiveHeader) -> bytes:
    return HEADER_STRUCT.pack(
        MAGIC,
        SPEC_VERSION,
        header.root_offset,
        header.root_length,
        header.metadata_offset,
        header.metadata_length,
        header.leaf_directory_offset,
        header.leaf_directory_length,
        header.tile_data_offset,
        header.tile_data_length,
        header.addressed_tiles_count,
        header.tile_entries_count,
        header.tile_contents_count,
        1 if header.clustered else 0,
        header.internal_compression,
        header.tile_compression,
        header.tile_type,
        header.min_zoom,
        header.max_zoom,
        _e7(header.min_lon),
        _e7(header.min_lat),
        _e7(header.max_lon),
        _e7(header.max_lat),
        header.center_zoom,
        _e7(header.center_lon),
        _e7(header.center_lat),
    )


def deserialize_header(data: bytes) -> db_models.ArchiveHeader:
    """Parse the fixed-size header at the start of an archive.

    Raises:
        ArchiveFormatError: If the data is short, the magic tag is wrong or
            the version is not 3.
    """
    if len(data) < HEADER_SIZE:
        raise errors.ArchiveFormatError(
            f"header needs {HEADER_SIZE} bytes, got {len(data)}"
        )
    fields = HEADER_STRUCT.unpack(data[:HEADER_SIZE])
    magic, version, *rest = fields
    if magic != MAGIC:
        raise errors.ArchiveFormatError("not a PMTiles archive")
    if version != SPEC_VERSION:
        raise errors.ArchiveFormatError(f"unsupported archive version {version}")
    (
        root_offset, root_length, metadata_offset, metadata_length,
        leaf_offset, leaf_length, data_offset, data_length,
        addressed, entry_count, contents, clustered,
        internal_compression, tile_compression, tile_type,
        min_zoom, max_zoom, min_lon, min_lat, max_lon, max_lat,
        center_zoom, center_lon, center_lat,
    ) = rest
    return db_models.ArchiveHeader(
        root_offset=root_offset,
        root_length=root_length,
        metadata_offset=metadata_offset,
        metadata_length=metadata_length,
        leaf_directory_offset=leaf_offset,
        leaf_directory_length=leaf_length,
        tile_data_offset=data_offset,
        tile_data_length=data_length,
        addressed_tiles_count=addressed,
        tile_entries_count=entry_count,
        tile_contents_count=contents,
        clustered=clustered == 1,
        internal_compression=db_models.Compression(internal_compression),
        tile_compression=db_models.Compression(tile_compression),
        tile_type=db_models.TileType(tile_type),
        min_zoom=min_zoom,
        max_zoom=max_zoom,
        min_lon=min_lon / 10_000_000,
        min_lat=min_lat / 10_000_000,
        max_lon=max_lon / 10_000_000,
        max_lat=max_lat / 10_000_000,
        center_zoom=center_zoom,
        center_lon=center_lon / 10_000_000,
        center_lat=center_lat / 10_000_000,
    )


# Metadata


def _field_type(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "Boolean"
    if isinstance(value, int | float):
        return "Number"
    return "String"


def build_metadata(
    name: str,
    description: str,
    layer_name: str,
    min_zoom: int,
    max_zoom: int,
    properties: Iterable[dict[str, Any]] = (),
) -> dict[str, Any]:
    """Archive metadata including the vector layer and its attribute types.

    An attribute seen with more than one type is declared ``String``.
    """
    fields: dict[str, str] = {}
    for props in properties:
        for key, value in props.items():
            field_type = _field_type(value)
            if field_type is None:
                continue
            if fields.setdefault(key, field_type) != field_type:
                fields[key] = "String"
    return {
        "name": name,
        "description": description,
        "version": "2",
        "type": "overlay",
        "format": "pbf",
        "minzoom": min_zoom,
        "maxzoom": max_zoom,
        "generator": GENERATOR,
        "vector_layers": [
            {
                "id": layer_name,
                "description": description,
                "minzoom": min_zoom,
                "maxzoom": max_zoom,
                "fields": dict(sorted(fields.items())),
            }
        ],
    }


# Archive


def build_entries(
    tiles: Iterable[db_models.EncodedTile],
) -> tuple[list[db_models.DirectoryEntry], bytes, int]:
    """Lay out tile data and the directory entries that address it.

    Tiles are ordered by identifier. A payload identical to one already laid
    out reuses its blob, and consecutive identifiers on the same blob extend
    the previous entry's run.

    Returns:
        ``(entries, tile_data, contents_count)``.

    Raises:
        ValueError: If two tiles share the same coordinates.
    """
    ordered = sorted(
        ((zxy_to_tile_id(*tile.key), tile) for tile in tiles),
        key=lambda item: item[0],
    )
    data = io.BytesIO()
    blobs: dict[bytes, tuple[int, int]] = {}
    entries: list[db_models.DirectoryEntry] = []
    previous_id = -1
    for tile_id, tile in ordered:
        if tile_id == previous_id:
            raise ValueError(f"duplicate tile {tile.key}")
        previous_id = tile_id

        digest = hashlib.sha256(tile.payload).digest()
        blob = blobs.get(digest)
        if blob is None:
            blob = (data.tell(), tile.length)
            blobs[digest] = blob
            data.write(tile.payload)

        offset, length = blob
        last = entries[-1] if entries else None
        if (
            last is not None
            and last.offset == offset
            and last.tile_id + last.run_length == tile_id
        ):
            last.run_length += 1
        else:
            entries.append(
                db_models.DirectoryEntry(
                    tile_id=tile_id, offset=offset, length=length, run_length=1
                )
            )
    return entries, data.getvalue(), len(blobs)


def write_archive(
    path: pathlib.Path,
    tiles: Sequence[db_models.EncodedTile],
    metadata: dict[str, Any],
    min_zoom: int,
    max_zoom: int,
    bounds: db_models.BBox,
    center_zoom: int | None = None,
) -> db_models.ArchiveHeader:
    """Write ``tiles`` and ``metadata`` to a new archive at ``path``.

    The archive is written to a sibling temporary file and moved into place,
    so readers never observe a partially written file.

    Args:
        path: Destination file.
        tiles: Gzip-compressed MVT tiles; the order does not matter.
        metadata: JSON-serializable metadata.
        min_zoom: Lowest zoom stored in the header.
        max_zoom: Highest zoom stored in the header.
        bounds: ``(min_lon, min_lat, max_lon, max_lat)`` of the data.
        center_zoom: Header center zoom, clamped to the zoom range. Defaults
            to ``min_zoom``.

    Returns:
        The header that was written.
    """
    entries, tile_data, contents_count = build_entries(tiles)
    root, leaves, leaf_count = build_directories(entries, ROOT_DIRECTORY_MAX_BYTES)
    metadata_bytes = _gzip(
        json.dumps(metadata, ensure_ascii=False, separators=(",", ":")).encode()
    )

    root_offset = HEADER_SIZE
    metadata_offset = root_offset + len(root)
    leaf_offset = metadata_offset + len(metadata_bytes)
    data_offset = leaf_offset + len(leaves)
    min_lon, min_lat, max_lon, max_lat = bounds
    zoom = min_zoom if center_zoom is None else center_zoom

    header = db_models.ArchiveHeader(
        root_offset=root_offset,
        root_length=len(root),
        metadata_offset=metadata_offset,
        metadata_length=len(metadata_bytes),
        leaf_directory_offset=leaf_offset,
        leaf_directory_length=len(leaves),
        tile_data_offset=data_offset,
        tile_data_length=len(tile_data),
        addressed_tiles_count=len(tiles),
        tile_entries_count=len(entries),
        tile_contents_count=contents_count,
        clustered=True,
        internal_compression=db_models.Compression.GZIP,
        tile_compression=db_models.Compression.GZIP,
        tile_type=db_models.TileType.MVT,
        min_zoom=min_zoom,
        max_zoom=max_zoom,
        min_lon=min_lon,
        min_lat=min_lat,
        max_lon=max_lon,
        max_lat=max_lat,
        center_zoom=max(min_zoom, min(max_zoom, zoom)),
        center_lon=(min_lon + max_lon) / 2,
        center_lat=(min_lat + max_lat) / 2,
    )

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("wb") as f:
        f.write(serialize_header(header))
        f.write(root)
        f.write(metadata_bytes)
        f.write(leaves)
        f.write(tile_data)
    os.replace(tmp_path, path)

    logger.info(
        "Wrote %s: %d tiles, %d entries, %d unique blobs, %d leaves, %d bytes",
        path,
        header.addressed_tiles_count,
        header.tile_entries_count,
        header.tile_contents_count,
        leaf_count,
        data_offset + len(tile_data),
    )
    return header
