"""Domain models and the archive repository.

The repository is the tile service's view of the output tree: which archives
exist and an open reader for each. It sits behind a protocol so routers can be
tested against an in-memory store.

Example:
    Use in a FastAPI dependency:
        >>> from parcelmap.db import database
        >>> repo = database.get_archive_repository(settings)
        >>> reader = repo.open("parcels")
"""
