"""Archive discovery endpoints.

Example:
    List the archives the service can serve:
        >>> response = client.get("/api/archives")
        >>> [a["name"] for a in response.json()]
        ['complex', 'parcels', 'sig']

    Describe one archive:
        >>> response = client.get("/api/archives/parcels")
        >>> response.json()["header"]["max_zoom"]
        17
"""

import dataclasses
from typing import Any

import fastapi

from parcelmap.api import tiles
from parcelmap.core import errors
from parcelmap.db import database
from parcelmap.db import models as db_models

router = fastapi.APIRouter(prefix="/api/archives", tags=["archives"])


def _descriptor_to_dict(descriptor: db_models.ArchiveDescriptor) -> dict[str, Any]:
    return {
        "name": descriptor.name,
        "size_bytes": descriptor.size_bytes,
        "modified_at": descriptor.modified_at.isoformat(),
        "tiles_url": f"{tiles.router.prefix}/{descriptor.name}/{{z}}/{{x}}/{{y}}.pbf",
    }


def _header_to_dict(header: db_models.ArchiveHeader) -> dict[str, Any]:
    result = dataclasses.asdict(header)
    result["internal_compression"] = header.internal_compression.name.lower()
    result["tile_compression"] = header.tile_compression.name.lower()
    result["tile_type"] = header.tile_type.name.lower()
    result["bounds"] = list(header.bounds)
    return result


@router.get("")
async def list_archives(
    repo: database.ArchiveRepositoryProtocol = fastapi.Depends(tiles._get_repo),  # noqa: B008
) -> list[dict[str, Any]]:
    """List every archive in the tiles directory, ordered by name.

    Args:
        repo: Archive repository (injected via FastAPI Depends).

    Returns:
        One dictionary per archive with name, size, modification time and
        the tile URL template.
    """
    return [_descriptor_to_dict(descriptor) for descriptor in repo.all()]


@router.get("/{name}")
async def get_archive(
    name: str,
    repo: database.ArchiveRepositoryProtocol = fastapi.Depends(tiles._get_repo),  # noqa: B008
) -> dict[str, Any]:
    """Describe one archive: file facts, decoded header and JSON metadata.

    Args:
        name: Archive name.
        repo: Archive repository (injected via FastAPI Depends).

    Returns:
        Dictionary with the descriptor fields plus ``header`` and
        ``metadata``.

    Raises:
        HTTPException: 404 if the archive is unknown, 500 if it is corrupt.
    """
    descriptor = repo.get(name)
    if descriptor is None:
        raise fastapi.HTTPException(status_code=404, detail="Archive not found")
    try:
        reader = repo.open(name)
        if reader is None:
            raise fastapi.HTTPException(status_code=404, detail="Archive not found")
        header = _header_to_dict(reader.header)
        metadata = reader.metadata()
    except errors.ArchiveFormatError as exc:
        raise fastapi.HTTPException(status_code=500, detail=str(exc)) from exc

    result = _descriptor_to_dict(descriptor)
    result["header"] = header
    result["metadata"] = metadata
    return result
