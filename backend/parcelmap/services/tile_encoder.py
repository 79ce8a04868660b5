"""Mapbox Vector Tile encoding of indexed tiles.

Each tile's clipped features are moved from the mercator plane into tile
pixel space (origin top-left, y down, ``extent`` pixels per side), encoded as
one MVT v2 layer with mapbox-vector-tile and gzip-compressed. Compression uses
a fixed mtime so identical tiles produce identical bytes, which lets the
archive writer deduplicate them.

Tiles are independent of each other, so :func:`encode_tiles` fans them out
over a thread pool bounded by ``Settings.max_workers``.

Example:
    Encode every tile of an index and decode one back:
        >>> from parcelmap.services import tile_encoder
        >>> batch = tile_encoder.encode_tiles(index, "parcels", settings)
        >>> tile = batch.tiles[0]
        >>> layers = tile_encoder.decode_tile(tile.payload)
        >>> len(layers["parcels"]["features"])
        17
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import gzip
import json
import logging
from typing import TYPE_CHECKING, Any

import mapbox_vector_tile
import shapely
from mapbox_vector_tile import encoder as mvt_encoder

from parcelmap.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Sequence

    from parcelmap.core import config
    from parcelmap.services import tile_index

logger = logging.getLogger(__name__)

MAX_FEATURE_ID = (1 << 64) - 1


def encode_value(value: Any) -> Any:
    """Map an attribute value onto the types an MVT value can hold.

    Strings, integers, floats and booleans pass through. Lists and dicts
    (such as ``coord``) are stored as JSON text. None means "no value".
    """
    if value is None:
        return None
    if isinstance(value, str | bool | int | float):
        return value
    if isinstance(value, list | tuple | dict):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def encode_properties(properties: dict[str, Any]) -> dict[str, Any]:
    encoded = {}
    for key, value in properties.items():
        value = encode_value(value)
        if value is not None:
            encoded[key] = value
    return encoded


def feature_id(
    properties: dict[str, Any], id_property: str | None, fallback: int
) -> int:
    """Return the MVT feature id for a feature.

    The ``id_property`` attribute is promoted when it is a non-negative
    integer, or a string of digits, that fits in 64 bits. Anything else gets
    ``fallback``, the feature's position in its source.
    """
    if id_property is not None:
        value = properties.get(id_property)
        if isinstance(value, str) and value.isascii() and value.isdigit():
            value = int(value)
        if (
            isinstance(value, int)
            and not isinstance(value, bool)
            and 0 <= value <= MAX_FEATURE_ID
        ):
            return value
    return fallback


def _to_tile_pixels(key: db_models.TileKey, extent: int):
    scale = 1 << key.z

    def transform(coords):
        out = coords.copy()
        out[:, 0] = (coords[:, 0] * scale - key.x) * extent
        out[:, 1] = (coords[:, 1] * scale - key.y) * extent
        return out

    return transform


def encode_tile(
    key: db_models.TileKey,
    features_by_layer: dict[str, Sequence[db_models.TileFeature]],
    extent: int = 4096,
    id_property: str | None = None,
) -> db_models.EncodedTile:
    """Encode and compress the features of one tile.

    Args:
        key: Tile coordinates; the features are in mercator units and are
            shifted into this tile's pixel space.
        features_by_layer: Layer name to the features clipped to this tile.
        extent: Pixels per tile side.
        id_property: Attribute promoted to the feature id.

    Returns:
        The gzip-compressed MVT payload for ``key``.
    """
    to_pixels = _to_tile_pixels(key, extent)
    layers = []
    for name, features in features_by_layer.items():
        layers.append(
            {
                "name": name,
                "features": [
                    {
                        "geometry": shapely.transform(feature.geometry, to_pixels),
                        "properties": encode_properties(feature.properties),
                        "id": feature_id(
                            feature.properties, id_property, feature.feature_index
                        ),
                    }
                    for feature in features
                ],
            }
        )
    data = mapbox_vector_tile.encode(
        layers,
        default_options={
            "extents": extent,
            "y_coord_down": True,
            "on_invalid_geometry": mvt_encoder.on_invalid_geometry_make_valid,
        },
    )
    return db_models.EncodedTile(key=key, payload=gzip.compress(data, mtime=0))


def decode_tile(payload: bytes, y_coord_down: bool = True) -> dict[str, Any]:
    """Gunzip and decode a tile payload into ``{layer: {"features": ...}}``."""
    return mapbox_vector_tile.decode(
        gzip.decompress(payload),
        default_options={"y_coord_down": y_coord_down},
    )


@dataclasses.dataclass
class TileBatchResult:
    """Encoded tiles of one index, in (z, x, y) order, plus per-tile errors."""

    tiles: list[db_models.EncodedTile]
    errors: dict[db_models.TileKey, str] = dataclasses.field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def encode_tiles(
    index: tile_index.TileIndex,
    layer_name: str,
    settings: config.Settings,
    id_property: str | None = None,
) -> TileBatchResult:
    """Encode every tile of ``index`` on a bounded thread pool.

    A tile that fails to encode is logged and recorded in
    ``TileBatchResult.errors``; the remaining tiles are still encoded.
    """
    result = TileBatchResult(tiles=[])
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=settings.max_workers
    ) as executor:
        future_to_key = {
            executor.submit(
                encode_tile,
                key,
                {layer_name: features},
                settings.tile_extent,
                id_property,
            ): key
            for key, features in index.tiles()
        }
        for future in concurrent.futures.as_completed(future_to_key):
            key = future_to_key[future]
            try:
                result.tiles.append(future.result())
            except Exception as exc:
                logger.exception("Failed to encode tile %s", key)
                result.errors[key] = str(exc)

    result.tiles.sort(key=lambda tile: tile.key)
    logger.info(
        "Encoded %d tiles (%d failed) with %d workers",
        len(result.tiles),
        len(result.errors),
        settings.max_workers,
    )
    return result
