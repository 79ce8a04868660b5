"""Build pipeline: shapefile in, GeoJSON, properties JSON and archive out.

Sources are built one after another; within a source, tile encoding runs on
the worker pool of :mod:`parcelmap.services.tile_encoder`. A failing source is
logged with its traceback and recorded in the :class:`BuildReport`; the
remaining sources are still built. A source whose input is missing, or that
declares no outputs, is skipped and its previous outputs stay in place.

Outputs for a source, relative to ``Settings.output_dir``, one per stage:

* ``geojson``, ``temp/<output_geojson>``: projected features as a GeoJSON
  collection;
* ``properties``, ``properties/<output_properties>``: attributes only, plus
  ``id`` promoted from the id property and ``coord``;
* ``tiles``, ``tiles/<output_archive>``: the tile archive.

A subset of the stages can be run; without the geojson stage the features
are reloaded from the intermediate GeoJSON. Completed stages are recorded in
``temp/build-state.json`` (see :mod:`parcelmap.services.build_state`), and a
source whose requested stages are current is skipped unless forced.

Example:
    Build two sources, then re-encode only the parcel tiles:
        >>> from parcelmap.core.config import get_settings
        >>> from parcelmap.services import build
        >>> report = build.build_sources(["sig", "emd"], get_settings())
        >>> [(r.name, r.status) for r in report.results]
        [('sig', 'built'), ('emd', 'skipped')]
        >>> report.ok
        True
        >>> build.build_sources(
        ...     ["parcels"], get_settings(), stages=[build.BuildStage.TILES]
        ... ).ok
        True
"""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
import os
import time
from typing import TYPE_CHECKING, Any

import shapely
from shapely import geometry as shapely_geometry

from parcelmap.core import errors, sources
from parcelmap.db import models as db_models
from parcelmap.services import (
    archive_writer,
    build_state,
    features,
    projection,
    tile_encoder,
    tile_index,
)

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Collection, Sequence

    from parcelmap.core import config

BuildStage = build_state.BuildStage

logger = logging.getLogger(__name__)


class BuildStatus(enum.StrEnum):
    BUILT = "built"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclasses.dataclass
class SourceResult:
    """Outcome of building one source.

    Attributes:
        name: Source name.
        status: built, skipped or failed.
        crs: Detected source CRS.
        total: Records read from the shapefile.
        included: Records that passed the region filter.
        dropped: Included records discarded (no geometry or unprojectable).
        tiles: Tiles written to the archive.
        archive_path: Archive written, if any.
        message: Skip reason or error description.
        duration_seconds: Wall-clock time spent on the source.
    """

    name: str
    status: BuildStatus
    crs: str | None = None
    total: int = 0
    included: int = 0
    dropped: int = 0
    tiles: int = 0
    archive_path: pathlib.Path | None = None
    message: str | None = None
    duration_seconds: float = 0.0


@dataclasses.dataclass
class BuildReport:
    results: list[SourceResult] = dataclasses.field(default_factory=list)

    @property
    def failed(self) -> list[SourceResult]:
        return [r for r in self.results if r.status is BuildStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed


def _write_json(path: pathlib.Path, payload: Any, indent: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=indent)
    os.replace(tmp_path, path)


def feature_collection(
    projected: Sequence[db_models.ProjectedFeature],
) -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [feature.to_geojson() for feature in projected],
    }


def load_feature_collection(path: pathlib.Path) -> list[db_models.ProjectedFeature]:
    """Read back an intermediate GeoJSON written by the geojson stage."""
    with path.open(encoding="utf-8") as f:
        collection = json.load(f)
    return [
        db_models.ProjectedFeature(
            geometry=shapely_geometry.shape(feature["geometry"]),
            properties=feature.get("properties") or {},
        )
        for feature in collection.get("features", [])
        if feature.get("geometry")
    ]


def properties_records(
    projected: Sequence[db_models.ProjectedFeature], id_property: str | None
) -> list[dict[str, Any]]:
    """Attribute records for the properties file, with ``id`` promoted."""
    records = []
    for feature in projected:
        props = dict(feature.properties)
        if id_property and props.get(id_property):
            props["id"] = props[id_property]
        records.append(props)
    return records


def data_bounds(
    projected: Sequence[db_models.ProjectedFeature],
) -> db_models.BBox:
    """Lon/lat bounds of all features; zeros when there are none."""
    if not projected:
        return (0.0, 0.0, 0.0, 0.0)
    minx, miny, maxx, maxy = shapely.total_bounds(
        [feature.geometry for feature in projected]
    )
    return (float(minx), float(miny), float(maxx), float(maxy))


def _encode_archive(
    source: sources.DataSourceConfig,
    projected: list[db_models.ProjectedFeature],
    settings: config.Settings,
) -> tuple[list[db_models.EncodedTile], dict[str, Any]]:
    options = source.tile_options
    if options is None:
        raise ValueError(f"source {source.name} does not build an archive")

    index = tile_index.TileIndex.from_settings(settings).build(
        projected, options.min_zoom, options.max_zoom
    )
    batch = tile_encoder.encode_tiles(
        index, options.layer_name, settings, id_property=options.id_property
    )
    if not batch.ok:
        raise errors.ParcelMapError(
            f"{len(batch.errors)} of {len(index)} tiles failed to encode"
        )

    metadata = archive_writer.build_metadata(
        name=source.name,
        description=source.description,
        layer_name=options.layer_name,
        min_zoom=options.min_zoom,
        max_zoom=options.max_zoom,
        properties=(feature.properties for feature in projected),
    )
    return batch.tiles, metadata


def stage_outputs(
    source: sources.DataSourceConfig, settings: config.Settings
) -> dict[BuildStage, pathlib.Path]:
    """Output file of every stage ``source`` declares."""
    outputs = {}
    if source.output_geojson:
        outputs[BuildStage.GEOJSON] = settings.temp_dir / source.output_geojson
    if source.output_properties:
        outputs[BuildStage.PROPERTIES] = (
            settings.properties_dir / source.output_properties
        )
    if source.builds_archive and source.output_archive:
        outputs[BuildStage.TILES] = settings.tiles_dir / source.output_archive
    return outputs


def _transform_raw(
    source: sources.DataSourceConfig,
    raw_path: pathlib.Path,
    settings: config.Settings,
    registry: projection.ProjectionRegistry | None,
    result: SourceResult,
) -> list[db_models.ProjectedFeature]:
    logger.info("[%s] building %s from %s", source.name, source.description, raw_path)
    registry = registry or projection.default_registry()
    detection = projection.detect_crs(
        features.read_projection_descriptor(raw_path),
        registry,
        allow_fallback=settings.allow_projection_fallback,
    )
    result.crs = detection.name
    logger.info(
        "[%s] source CRS %s, encoding %s",
        source.name,
        detection.name,
        source.encoding,
    )

    transformer = features.FeatureTransformer(
        source,
        projection.ProjectionResolver(registry, detection.name),
        policy=settings.projection_failure_policy,
        precision=settings.polylabel_precision,
    )
    transformed = transformer.transform(
        features.read_shapefile(raw_path, source.encoding)
    )
    result.total = transformed.total
    result.included = transformed.included
    result.dropped = transformed.dropped
    return transformed.features


def build_source(
    source: sources.DataSourceConfig,
    settings: config.Settings,
    registry: projection.ProjectionRegistry | None = None,
    stages: Collection[BuildStage] | None = None,
    state: build_state.BuildState | None = None,
    force: bool = False,
) -> SourceResult:
    """Run the pipeline stages for one source.

    Features come from the raw shapefile when the geojson stage runs (or the
    source has no intermediate GeoJSON); otherwise they are reloaded from
    the intermediate GeoJSON of an earlier build. Tiles are encoded before
    any output is written, and every output is moved into place only once
    it is complete, so a failing build leaves the previous outputs intact.

    Args:
        source: The source to build.
        settings: Directories, tiling parameters and failure policies.
        registry: Known projections; the Korean defaults when omitted.
        stages: Stages to run; all of them when omitted.
        state: Ledger of completed stages. When given, a source whose
            requested stages are recorded for unchanged inputs is skipped,
            and the stages run here are recorded.
        force: Run the stages even when the ledger says they are current.

    Returns:
        A built or skipped result.

    Raises:
        ParcelMapError: On unknown projections, coordinates that fail to
            project under the ``fail_build`` policy, or tile encoding errors.
    """
    started = time.perf_counter()
    result = SourceResult(name=source.name, status=BuildStatus.SKIPPED)

    outputs = stage_outputs(source, settings)
    if not outputs:
        result.message = "no outputs configured"
        logger.info("[%s] skipped: %s", source.name, result.message)
        return result
    requested = set(stages or BuildStage)
    outputs = {stage: path for stage, path in outputs.items() if stage in requested}
    if not outputs:
        result.message = "no outputs for stages " + ", ".join(sorted(requested))
        logger.info("[%s] skipped: %s", source.name, result.message)
        return result

    reload = BuildStage.GEOJSON not in outputs and bool(source.output_geojson)
    if reload:
        input_path = settings.temp_dir / str(source.output_geojson)
        missing = f"intermediate GeoJSON not found: {input_path}"
    else:
        input_path = settings.raw_dir / source.raw_file
        missing = f"raw input not found: {input_path}"
    if not input_path.exists():
        result.message = missing
        logger.warning("[%s] skipped: %s", source.name, result.message)
        return result

    fingerprint = build_state.fingerprint(
        build_state.input_files(input_path), source
    )
    if state is not None and not force:
        if state.is_current(source.name, outputs, fingerprint):
            result.message = "up to date"
            logger.info("[%s] skipped: %s", source.name, result.message)
            return result

    if reload:
        projected = load_feature_collection(input_path)
        result.total = result.included = len(projected)
        logger.info(
            "[%s] reloaded %d features from %s",
            source.name,
            len(projected),
            input_path,
        )
    else:
        projected = _transform_raw(source, input_path, settings, registry, result)

    encoded = None
    if BuildStage.TILES in outputs:
        encoded = _encode_archive(source, projected, settings)
    if BuildStage.GEOJSON in outputs:
        _write_json(outputs[BuildStage.GEOJSON], feature_collection(projected))
    if BuildStage.PROPERTIES in outputs:
        id_property = source.tile_options.id_property if source.tile_options else None
        _write_json(
            outputs[BuildStage.PROPERTIES],
            properties_records(projected, id_property),
            indent=2,
        )
    if encoded is not None and source.tile_options is not None:
        tiles, metadata = encoded
        options = source.tile_options
        result.archive_path = outputs[BuildStage.TILES]
        archive_writer.write_archive(
            result.archive_path,
            tiles,
            metadata,
            min_zoom=options.min_zoom,
            max_zoom=options.max_zoom,
            bounds=data_bounds(projected),
            center_zoom=settings.center_zoom,
        )
        result.tiles = len(tiles)

    if state is not None:
        state.record(source.name, outputs, fingerprint)
    result.status = BuildStatus.BUILT
    result.duration_seconds = time.perf_counter() - started
    logger.info(
        "[%s] built %s in %.1fs: %d features, %d tiles",
        source.name,
        ", ".join(outputs),
        result.duration_seconds,
        len(projected),
        result.tiles,
    )
    return result


def build_sources(
    names: Sequence[str] | None,
    settings: config.Settings,
    registry: projection.ProjectionRegistry | None = None,
    stages: Collection[BuildStage] | None = None,
    force: bool = False,
) -> BuildReport:
    """Build the named sources (all registered ones when ``names`` is empty).

    Each source is isolated: an exception is logged and recorded as a failed
    result, and the next source is built. Completed stages are recorded in
    ``temp/build-state.json`` after every built source.
    """
    settings.ensure_directories()
    state_path = settings.temp_dir / build_state.STATE_FILE
    state = build_state.BuildState.load(state_path)
    report = BuildReport()
    for name in names or list(sources.DATA_SOURCES):
        started = time.perf_counter()
        try:
            result = build_source(
                sources.get_source(name),
                settings,
                registry,
                stages=stages,
                state=state,
                force=force,
            )
        except Exception as exc:
            logger.exception("[%s] build failed", name)
            result = SourceResult(
                name=name,
                status=BuildStatus.FAILED,
                message=str(exc),
                duration_seconds=time.perf_counter() - started,
            )
        if result.status is BuildStatus.BUILT:
            state.save(state_path)
        report.results.append(result)
    return report
