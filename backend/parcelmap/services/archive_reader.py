"""Random access to tiles stored in an archive written by archive_writer.

Lookups go through the ``pmtiles`` package reader over a memory-mapped
file: it decodes the header, descends from the root directory into at most
a few leaf directories and returns the stored tile bytes untouched, still
gzip-compressed. This module adds what the service needs on top: a typed
header, coordinate validation, section bounds checks at open time and a
single :class:`~parcelmap.core.errors.ArchiveFormatError` for everything
that is wrong with the file.

Example:
    Read one tile:
        >>> from parcelmap.services.archive_reader import ArchiveReader
        >>> with ArchiveReader(path) as reader:
        ...     payload = reader.get_tile(14, 13956, 6353)
        ...     reader.header.max_zoom
        17
"""

from __future__ import annotations

import contextlib
import zlib
from typing import TYPE_CHECKING, Any

from pmtiles import reader as pmtiles_reader
from pmtiles import tile as pmtiles_tile

from parcelmap.core import errors
from parcelmap.db import models as db_models
from parcelmap.services import archive_writer

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterator

MAX_DIRECTORY_DEPTH = 4

# Everything pmtiles raises on bytes that are not a valid archive.
_FORMAT_ERRORS = (
    pmtiles_tile.MagicNumberNotFound,
    pmtiles_tile.SpecVersionUnsupported,
    EOFError,
    IndexError,
    OSError,
    ValueError,
    zlib.error,
)


@contextlib.contextmanager
def _format_errors(path: pathlib.Path, what: str) -> Iterator[None]:
    try:
        yield
    except _FORMAT_ERRORS as exc:
        raise errors.ArchiveFormatError(f"{path}: corrupt {what}: {exc!r}") from exc


def _e7(value: int) -> float:
    return value / 10_000_000


def _to_header(raw: pmtiles_tile.HeaderDict) -> db_models.ArchiveHeader:
    return db_models.ArchiveHeader(
        root_offset=raw["root_offset"],
        root_length=raw["root_length"],
        metadata_offset=raw["metadata_offset"],
        metadata_length=raw["metadata_length"],
        leaf_directory_offset=raw["leaf_directory_offset"],
        leaf_directory_length=raw["leaf_directory_length"],
        tile_data_offset=raw["tile_data_offset"],
        tile_data_length=raw["tile_data_length"],
        addressed_tiles_count=raw["addressed_tiles_count"],
        tile_entries_count=raw["tile_entries_count"],
        tile_contents_count=raw["tile_contents_count"],
        clustered=raw["clustered"],
        internal_compression=db_models.Compression(raw["internal_compression"].value),
        tile_compression=db_models.Compression(raw["tile_compression"].value),
        tile_type=db_models.TileType(raw["tile_type"].value),
        min_zoom=raw["min_zoom"],
        max_zoom=raw["max_zoom"],
        min_lon=_e7(raw["min_lon_e7"]),
        min_lat=_e7(raw["min_lat_e7"]),
        max_lon=_e7(raw["max_lon_e7"]),
        max_lat=_e7(raw["max_lat_e7"]),
        center_zoom=raw["center_zoom"],
        center_lon=_e7(raw["center_lon_e7"]),
        center_lat=_e7(raw["center_lat_e7"]),
    )


def _to_entry(entry: pmtiles_tile.Entry) -> db_models.DirectoryEntry:
    return db_models.DirectoryEntry(
        tile_id=entry.tile_id,
        offset=entry.offset,
        length=entry.length,
        run_length=entry.run_length,
    )


class ArchiveReader:
    """Read-only view of one archive file.

    Args:
        path: Archive file.

    Raises:
        ArchiveFormatError: If the file is empty, truncated or not an archive.
    """

    def __init__(self, path: pathlib.Path) -> None:
        self.path = path
        self._file = path.open("rb")
        try:
            self._get_bytes = pmtiles_reader.MmapSource(self._file)
        except ValueError as exc:
            self._file.close()
            raise errors.ArchiveFormatError(f"{path} is empty") from exc
        self._reader = pmtiles_reader.Reader(self._get_bytes)
        self._size = path.stat().st_size
        try:
            with _format_errors(path, "header"):
                self.header = _to_header(self._reader.header())
            self._check_section(
                self.header.tile_data_offset, self.header.tile_data_length
            )
            self._check_section(
                self.header.metadata_offset, self.header.metadata_length
            )
            self._root = self._read_directory(
                self.header.root_offset, self.header.root_length
            )
        except errors.ArchiveFormatError:
            self.close()
            raise

    def __enter__(self) -> ArchiveReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        # The mapping itself is released with the last reference to the reader.
        self._file.close()

    def _check_section(self, offset: int, length: int) -> None:
        if offset + length > self._size:
            raise errors.ArchiveFormatError(
                f"section [{offset}, {offset + length}) exceeds file size "
                f"{self._size}"
            )

    def _read_directory(
        self, offset: int, length: int
    ) -> list[db_models.DirectoryEntry]:
        self._check_section(offset, length)
        with _format_errors(self.path, "directory"):
            raw = pmtiles_tile.deserialize_directory(self._get_bytes(offset, length))
        return [_to_entry(entry) for entry in raw]

    def metadata(self) -> dict[str, Any]:
        with _format_errors(self.path, "metadata"):
            return self._reader.metadata()

    def get_tile(self, z: int, x: int, y: int) -> bytes | None:
        """Return the stored bytes of tile ``z/x/y``, or None if it has none.

        Raises:
            ValueError: If the coordinates are outside the zoom level.
        """
        archive_writer.zxy_to_tile_id(z, x, y)
        with _format_errors(self.path, f"directory for tile {z}/{x}/{y}"):
            return self._reader.get(z, x, y)

    def entries(self) -> Iterator[db_models.DirectoryEntry]:
        """Yield every tile entry in identifier order, leaves expanded."""
        yield from self._walk(self._root, 0)

    def _walk(
        self, directory: list[db_models.DirectoryEntry], depth: int
    ) -> Iterator[db_models.DirectoryEntry]:
        if depth >= MAX_DIRECTORY_DEPTH:
            raise errors.ArchiveFormatError("directory nesting is too deep")
        for entry in directory:
            if entry.run_length > 0:
                yield entry
            else:
                leaf = self._read_directory(
                    self.header.leaf_directory_offset + entry.offset, entry.length
                )
                yield from self._walk(leaf, depth + 1)
