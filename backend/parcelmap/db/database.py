"""Archive repositories for the tile service."""

from __future__ import annotations

import collections
import datetime
import functools
import logging
import threading
from typing import TYPE_CHECKING, Protocol

from parcelmap.db import models as db_models
from parcelmap.services import archive_reader

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

    from parcelmap.core import config

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".pmtiles"


def describe_archive(path: pathlib.Path) -> db_models.ArchiveDescriptor:
    """Descriptor for the archive file at ``path``, named after its stem."""
    stat = path.stat()
    return db_models.ArchiveDescriptor(
        name=path.stem,
        path=path,
        size_bytes=stat.st_size,
        modified_at=datetime.datetime.fromtimestamp(stat.st_mtime, datetime.UTC),
    )


class ArchiveRepositoryProtocol(Protocol):
    """Protocol interface for discovering and opening tile archives.

    Implementations know a set of archives by name and hand out readers for
    them, supporting both in-memory (testing) and directory-backed
    (production) stores.
    """

    def get(self, name: str) -> db_models.ArchiveDescriptor | None: ...

    def all(self) -> Iterable[db_models.ArchiveDescriptor]: ...

    def open(self, name: str) -> archive_reader.ArchiveReader | None: ...

    def close(self) -> None: ...


class _ReaderCache:
    """Bounded LRU of open readers, keyed by path and modification time.

    A rebuilt archive replaces the file, which changes its mtime, so the stale
    reader is closed and the new file opened on next access.
    """

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self._readers: collections.OrderedDict[
            pathlib.Path, tuple[float, archive_reader.ArchiveReader]
        ] = collections.OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._readers)

    def get(self, path: pathlib.Path, mtime: float) -> archive_reader.ArchiveReader:
        with self._lock:
            cached = self._readers.get(path)
            if cached is not None and cached[0] == mtime:
                self._readers.move_to_end(path)
                return cached[1]
            if cached is not None:
                logger.info("Archive %s changed on disk, reopening", path)
                cached[1].close()
            reader = archive_reader.ArchiveReader(path)
            self._readers[path] = (mtime, reader)
            while len(self._readers) > self.max_size:
                evicted, (_, old) = self._readers.popitem(last=False)
                logger.debug("Closing least recently used archive %s", evicted)
                old.close()
            return reader

    def close(self) -> None:
        with self._lock:
            for _, reader in self._readers.values():
                reader.close()
            self._readers.clear()


class InMemoryArchiveRepository(ArchiveRepositoryProtocol):
    """Explicitly registered archives, for tests and local development."""

    def __init__(self, cache_size: int = 16) -> None:
        self._store: dict[str, db_models.ArchiveDescriptor] = {}
        self._readers = _ReaderCache(cache_size)

    def add(
        self, descriptor: db_models.ArchiveDescriptor
    ) -> db_models.ArchiveDescriptor:
        self._store[descriptor.name] = descriptor
        return descriptor

    def get(self, name: str) -> db_models.ArchiveDescriptor | None:
        return self._store.get(name)

    def all(self) -> Iterable[db_models.ArchiveDescriptor]:
        return sorted(self._store.values(), key=lambda d: d.name)

    def open(self, name: str) -> archive_reader.ArchiveReader | None:
        descriptor = self.get(name)
        if descriptor is None or not descriptor.path.exists():
            return None
        return self._readers.get(descriptor.path, descriptor.path.stat().st_mtime)

    def close(self) -> None:
        self._readers.close()


class FileSystemArchiveRepository(ArchiveRepositoryProtocol):
    """Archives found in the tiles directory of the output tree.

    The directory is listed on every lookup, so archives written by a build
    running alongside the service are picked up without a restart. Open
    readers are kept in an LRU of ``Settings.reader_cache_size`` entries.
    """

    def __init__(self, tiles_dir: pathlib.Path, cache_size: int = 16) -> None:
        self.tiles_dir = tiles_dir
        self._readers = _ReaderCache(cache_size)

    def _path(self, name: str) -> pathlib.Path | None:
        # Archive names are file stems; anything path-like is not one.
        if not name or "/" in name or "\\" in name or name.startswith("."):
            return None
        path = self.tiles_dir / f"{name}{ARCHIVE_SUFFIX}"
        return path if path.is_file() else None

    def get(self, name: str) -> db_models.ArchiveDescriptor | None:
        path = self._path(name)
        return describe_archive(path) if path else None

    def all(self) -> Iterable[db_models.ArchiveDescriptor]:
        if not self.tiles_dir.is_dir():
            return []
        return [
            describe_archive(path)
            for path in sorted(self.tiles_dir.glob(f"*{ARCHIVE_SUFFIX}"))
            if path.is_file()
        ]

    def open(self, name: str) -> archive_reader.ArchiveReader | None:
        path = self._path(name)
        if path is None:
            return None
        return self._readers.get(path, path.stat().st_mtime)

    def close(self) -> None:
        self._readers.close()


@functools.lru_cache
def _repository_for(
    tiles_dir: pathlib.Path, cache_size: int
) -> FileSystemArchiveRepository:
    return FileSystemArchiveRepository(tiles_dir, cache_size)


def get_archive_repository(settings: config.Settings) -> ArchiveRepositoryProtocol:
    """Factory function returning the process-wide repository for ``settings``.

    One repository (and so one reader cache) is shared per tiles directory.
    """
    return _repository_for(settings.tiles_dir, settings.reader_cache_size)
