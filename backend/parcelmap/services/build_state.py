"""Ledger of completed build stages, kept in ``temp/build-state.json``.

Each source runs up to three stages, one per output: ``geojson`` (the
intermediate feature collection), ``properties`` (the attribute records)
and ``tiles`` (the archive). When a stage finishes, the ledger records when
it finished and a fingerprint of the inputs it was built from: file sizes
and modification times of the input files, plus the source configuration.
A later build whose requested stages are all recorded with the same
fingerprint, and whose outputs still exist, has nothing to do.

Example:
    Check whether a tiles-only rebuild of the parcels is needed:
        >>> state = BuildState.load(settings.temp_dir / STATE_FILE)
        >>> state.is_current("parcels", {BuildStage.TILES: archive}, fp)
        False
"""

from __future__ import annotations

import datetime
import enum
import hashlib
import logging
import os
from typing import TYPE_CHECKING

import pydantic

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable, Mapping

    from parcelmap.core import sources

logger = logging.getLogger(__name__)

STATE_FILE = "build-state.json"

# Sidecar files read together with a shapefile.
SHAPEFILE_SIDECARS = (".shp", ".dbf", ".prj", ".cpg")


class BuildStage(enum.StrEnum):
    GEOJSON = "geojson"
    PROPERTIES = "properties"
    TILES = "tiles"


class StageRecord(pydantic.BaseModel):
    fingerprint: str
    completed_at: datetime.datetime


class SourceState(pydantic.BaseModel):
    stages: dict[BuildStage, StageRecord] = {}


class BuildState(pydantic.BaseModel):
    """Completed stages per source, plus the time of the last build."""

    last_build: datetime.datetime | None = None
    sources: dict[str, SourceState] = {}

    @classmethod
    def load(cls, path: pathlib.Path) -> BuildState:
        """Read the ledger at ``path``; an empty one if it is missing.

        An unreadable ledger is logged and treated as empty.
        """
        if not path.exists():
            return cls()
        try:
            return cls.model_validate_json(path.read_bytes())
        except pydantic.ValidationError as exc:
            logger.warning("Ignoring unreadable build state %s: %s", path, exc)
            return cls()

    def save(self, path: pathlib.Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def completed(self, name: str) -> dict[BuildStage, StageRecord]:
        state = self.sources.get(name)
        return dict(state.stages) if state else {}

    def is_current(
        self,
        name: str,
        outputs: Mapping[BuildStage, pathlib.Path],
        fingerprint: str,
    ) -> bool:
        """Whether every stage in ``outputs`` was built from these inputs."""
        done = self.completed(name)
        return all(
            stage in done
            and done[stage].fingerprint == fingerprint
            and path.exists()
            for stage, path in outputs.items()
        )

    def record(
        self,
        name: str,
        stages: Iterable[BuildStage],
        fingerprint: str,
        when: datetime.datetime | None = None,
    ) -> None:
        when = when or datetime.datetime.now(datetime.UTC)
        state = self.sources.setdefault(name, SourceState())
        for stage in stages:
            state.stages[stage] = StageRecord(
                fingerprint=fingerprint, completed_at=when
            )
        self.last_build = when


def input_files(path: pathlib.Path) -> list[pathlib.Path]:
    """``path`` and, for a shapefile, its sidecar files that exist."""
    if path.suffix.lower() != ".shp":
        return [path]
    siblings = (path.with_suffix(suffix) for suffix in SHAPEFILE_SIDECARS)
    return [sibling for sibling in siblings if sibling.exists()]


def fingerprint(
    inputs: Iterable[pathlib.Path], source: sources.DataSourceConfig
) -> str:
    """Digest of the input file stats and the source configuration."""
    digest = hashlib.sha256(source.model_dump_json().encode())
    for path in inputs:
        stat = path.stat()
        digest.update(f"{path.name}:{stat.st_size}:{stat.st_mtime_ns}".encode())
    return digest.hexdigest()
