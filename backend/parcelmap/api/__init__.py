"""API router subpackage for the tile service.

Submodules:
    - tiles: Serves stored vector tiles by z/x/y from the archives.
    - archives: Lists archives and describes their header and metadata.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.
"""
