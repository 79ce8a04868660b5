"""Tile service application.

``create_app`` assembles the read-only service in front of the archive
repository: the ``/tiles`` and ``/api/archives`` routers, CORS for GET
requests from the map client, and ``/health``. The lifespan logs which
archives are being served and closes every memory-mapped reader on
shutdown.

Example:
    Serve the archives of the configured output tree:
        $ OUTPUT_DIR=/data/out uvicorn parcelmap.main:app
"""

import contextlib
import logging
from collections.abc import AsyncIterator

import fastapi
from fastapi.middleware import cors

from parcelmap.api import archives, tiles
from parcelmap.core import config
from parcelmap.db import database

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    settings = config.get_settings()
    repo = database.get_archive_repository(settings)
    names = [descriptor.name for descriptor in repo.all()]
    logger.info(
        "Serving %d archives from %s: %s",
        len(names),
        settings.tiles_dir,
        ", ".join(names) or "none yet",
    )
    try:
        yield
    finally:
        repo.close()


def create_app() -> fastapi.FastAPI:
    """Build the tile service.

    Only GET (and CORS preflight) requests are accepted; the archives are
    written by ``parcelmap-build`` and never modified by the service.
    """
    settings = config.get_settings()
    app = fastapi.FastAPI(
        title="Parcel Map Tiles", version="0.1.0", lifespan=lifespan
    )
    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )
    app.include_router(tiles.router)
    app.include_router(archives.router)

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        return {"status": "ok"}

    return app


app = create_app()
