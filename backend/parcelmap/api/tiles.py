"""XYZ tile serving endpoint backed by the tile archives.

Tiles are returned exactly as stored in the archive: a gzip-compressed Mapbox
Vector Tile, announced with ``Content-Encoding: gzip`` so that browsers and
map clients inflate it transparently. A tile the build never materialized
(no data there) is answered with 204 No Content rather than 404, which map
clients treat as an empty tile.

Example:
    Request a parcel tile:
        >>> response = client.get("/tiles/parcels/14/13956/6353.pbf")
        >>> response.headers["content-type"]
        'application/x-protobuf'

    Use in MapLibre GL JS:
        >>> map.addSource('vt-parcels', {
        ...     type: 'vector',
        ...     tiles: ['http://api/tiles/parcels/{z}/{x}/{y}.pbf'],
        ...     promoteId: 'PNU'
        ... });
"""

import logging

import fastapi
from fastapi import responses

from parcelmap.core import config, errors
from parcelmap.db import database
from parcelmap.db import models as db_models

logger = logging.getLogger(__name__)

router = fastapi.APIRouter(prefix="/tiles", tags=["tiles"])

CACHE_CONTROL = "public, max-age=86400, immutable"
TILE_MEDIA_TYPE = "application/x-protobuf"

_CONTENT_ENCODING = {
    db_models.Compression.GZIP: "gzip",
    db_models.Compression.BROTLI: "br",
    db_models.Compression.ZSTD: "zstd",
}


def _get_repo(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.ArchiveRepositoryProtocol:
    """Resolve the archive repository dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        ArchiveRepositoryProtocol implementation
            (FileSystemArchiveRepository in production).
    """
    return database.get_archive_repository(settings)


def _parse_coordinate(value: str, name: str) -> int:
    """Parse one path segment as a non-negative integer tile coordinate.

    Raises:
        HTTPException: 400 if the segment is not a non-negative integer.
    """
    if not value.isdigit():
        raise fastapi.HTTPException(
            status_code=400,
            detail=f"Invalid tile coordinate {name}={value!r}",
        )
    return int(value)


@router.get("/{layer}/{z}/{x}/{y}")
async def get_tile(
    layer: str,
    z: str,
    x: str,
    y: str,
    repo: database.ArchiveRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
) -> responses.Response:
    """Return the stored bytes of tile ``z/x/y`` from archive ``layer``.

    The row may carry a ``.pbf`` suffix.

    Args:
        layer: Archive name (file stem in the tiles directory).
        z: Zoom level.
        x: Tile column.
        y: Tile row, optionally suffixed with ``.pbf``.
        repo: Archive repository (injected via FastAPI Depends).

    Returns:
        The tile bytes (200), or an empty 204 response when the tile holds no
        data.

    Raises:
        HTTPException: 400 for malformed or out-of-range coordinates, 404 for
            unknown archives, 500 for corrupt archives.
    """
    zoom = _parse_coordinate(z, "z")
    column = _parse_coordinate(x, "x")
    row = _parse_coordinate(y.removesuffix(".pbf"), "y")

    try:
        reader = repo.open(layer)
    except errors.ArchiveFormatError as exc:
        logger.error("Archive %s is unreadable: %s", layer, exc)
        raise fastapi.HTTPException(
            status_code=500, detail="Corrupt archive"
        ) from exc
    if reader is None:
        raise fastapi.HTTPException(status_code=404, detail="Archive not found")

    try:
        payload = reader.get_tile(zoom, column, row)
    except ValueError as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc
    except errors.ArchiveFormatError as exc:
        logger.error(
            "Tile %s/%d/%d/%d is unreadable: %s", layer, zoom, column, row, exc
        )
        raise fastapi.HTTPException(
            status_code=500, detail="Corrupt archive"
        ) from exc

    if not payload:
        return responses.Response(status_code=204)

    headers = {"Cache-Control": CACHE_CONTROL}
    encoding = _CONTENT_ENCODING.get(reader.header.tile_compression)
    if encoding:
        headers["Content-Encoding"] = encoding
    return responses.Response(
        content=payload,
        media_type=TILE_MEDIA_TYPE,
        headers=headers,
    )
