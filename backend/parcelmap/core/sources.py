"""Data source registry: what to read, how to transform it, where to write.

Each source is a single shapefile (plus its ``.prj``/``.dbf`` sidecars) in
``Settings.raw_dir`` that becomes one tile archive and one properties JSON
file. The registry is the single place where attribute keep-lists, rename
maps, derived fields, region filters and zoom ranges are declared.

Example:
    Look up a source and its tiling options:
        >>> from parcelmap.core import sources
        >>> parcels = sources.get_source("parcels")
        >>> parcels.tile_options.layer_name
        'parcels'
        >>> [c.name for c in parcels.transform.computed]
        ['sigCode', 'emdCode']
"""

from __future__ import annotations

from typing import Literal

import pydantic

from parcelmap.core import errors

Encoding = Literal["utf-8", "euc-kr", "cp949"]


class TileOptions(pydantic.BaseModel):
    """Zoom range and layer naming of one archive.

    Attributes:
        min_zoom: Lowest zoom level materialized in the archive.
        max_zoom: Highest zoom level materialized (clients overzoom past it).
        layer_name: Vector tile layer name inside every tile.
        id_property: Attribute promoted to the feature identifier.
    """

    min_zoom: int = pydantic.Field(ge=0, le=24)
    max_zoom: int = pydantic.Field(ge=0, le=24)
    layer_name: str
    id_property: str | None = None

    @pydantic.model_validator(mode="after")
    def _check_zoom_range(self) -> TileOptions:
        if self.min_zoom > self.max_zoom:
            raise ValueError("min_zoom must not exceed max_zoom")
        return self


class ComputedField(pydantic.BaseModel):
    """Derived attribute: ``source[start:end]`` stored under ``name``."""

    name: str
    source: str
    start: int = pydantic.Field(ge=0)
    end: int = pydantic.Field(ge=0)


class RegionFilterConfig(pydantic.BaseModel):
    """Region predicate.

    Attributes:
        prefix: Code prefix, e.g. ``"28"`` for Incheon.
        name: Optional region name matched as a substring, e.g. ``"인천"``.
        fields: Attributes to inspect; all string/number attributes when unset.
    """

    prefix: str
    name: str | None = None
    fields: list[str] | None = None


class TransformConfig(pydantic.BaseModel):
    filter_region: RegionFilterConfig | None = None
    properties: list[str] | None = None
    rename: dict[str, str] = {}
    computed: list[ComputedField] = []


class DataSourceConfig(pydantic.BaseModel):
    """One raw dataset and its outputs.

    Attributes:
        name: Registry key, also the archive file stem.
        description: Human readable description (stored in archive metadata).
        raw_file: Shapefile name relative to the raw directory.
        encoding: DBF codepage.
        output_geojson: Intermediate GeoJSON path relative to the temp dir.
        output_properties: Properties JSON path relative to the properties dir.
        output_archive: Archive path relative to the tiles dir.
        tile_options: Zoom range and layer naming.
        transform: Filter and attribute transformations.
    """

    name: str
    description: str
    raw_file: str
    encoding: Encoding = "utf-8"
    output_geojson: str | None = None
    output_properties: str | None = None
    output_archive: str | None = None
    tile_options: TileOptions | None = None
    transform: TransformConfig = TransformConfig()

    @property
    def builds_archive(self) -> bool:
        return self.output_archive is not None and self.tile_options is not None


def _district(
    name: str,
    description: str,
    raw_file: str,
    max_zoom: int,
    properties: list[str],
    rename: dict[str, str],
    min_zoom: int = 0,
) -> DataSourceConfig:
    return DataSourceConfig(
        name=name,
        description=description,
        raw_file=raw_file,
        encoding="euc-kr",
        output_geojson=f"{name}.geojson",
        output_properties=f"districts-{name}.json",
        output_archive=f"{name}.pmtiles",
        tile_options=TileOptions(
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            layer_name=name,
            id_property="code",
        ),
        transform=TransformConfig(properties=properties, rename=rename),
    )


DATA_SOURCES: dict[str, DataSourceConfig] = {
    "sido": _district(
        "sido", "시도 행정구역", "N3A_G0010000.shp", 12,
        ["BJCD", "NAME"], {"BJCD": "code", "NAME": "name"},
    ),
    "sig": _district(
        "sig", "시군구 행정구역", "AL_D001_00_20251204(SIG).shp", 12,
        ["A1", "A2"], {"A1": "code", "A2": "name"},
    ),
    "emd": _district(
        "emd", "읍면동 행정구역", "AL_D001_00_20251204(EMD).shp", 14,
        ["A1", "A2", "A4"], {"A1": "code", "A2": "name", "A4": "sigCode"},
    ),
    "li": _district(
        "li", "리 행정구역", "AL_D001_00_20251204(LIO).shp", 17,
        ["A1", "A2", "A4"], {"A1": "code", "A2": "name", "A4": "emdCode"},
        min_zoom=12,
    ),
    "allParcels": DataSourceConfig(
        name="allParcels",
        description="인천 전체 필지",
        raw_file="AL_D010_28_20251204.shp",
        encoding="euc-kr",
        output_geojson="all-parcels.geojson",
        output_properties="all-parcels.json",
        output_archive="all-parcels.pmtiles",
        tile_options=TileOptions(
            min_zoom=12, max_zoom=17, layer_name="allParcels", id_property="PNU"
        ),
        transform=TransformConfig(
            filter_region=RegionFilterConfig(prefix="28", fields=["A2"]),
            properties=["A2", "A3", "A4", "A5", "A6", "A7"],
            rename={
                "A2": "PNU",
                "A3": "emdCode",
                "A4": "address",
                "A5": "jibunMain",
                "A6": "jibunSub",
                "A7": "landType",
            },
        ),
    ),
    "parcels": DataSourceConfig(
        name="parcels",
        description="남동구 필지",
        raw_file="LSMD_CONT_LDREG_28200_202511.shp",
        encoding="euc-kr",
        output_geojson="parcels.geojson",
        output_properties="parcels.json",
        output_archive="parcels.pmtiles",
        tile_options=TileOptions(
            min_zoom=12, max_zoom=17, layer_name="parcels", id_property="PNU"
        ),
        transform=TransformConfig(
            properties=["PNU", "JIBUN", "BCHK", "PNUCD", "REGST_SE_CD"],
            rename={"JIBUN": "jibun"},
            computed=[
                ComputedField(name="sigCode", source="PNU", start=0, end=5),
                ComputedField(name="emdCode", source="PNU", start=0, end=10),
            ],
        ),
    ),
    "complex": DataSourceConfig(
        name="complex",
        description="산업단지",
        raw_file="dam_dan.shp",
        encoding="euc-kr",
        output_geojson="complex.geojson",
        output_properties="complexes.json",
        output_archive="complex.pmtiles",
        tile_options=TileOptions(
            min_zoom=0, max_zoom=16, layer_name="complex", id_property="id"
        ),
        transform=TransformConfig(
            properties=["DAN_ID", "DAN_NAME", "DANJI_TYPE"],
            rename={"DAN_ID": "id", "DAN_NAME": "name", "DANJI_TYPE": "type"},
        ),
    ),
    "lots": DataSourceConfig(
        name="lots",
        description="산업단지 용지",
        raw_file="dam_yoj.shp",
        encoding="euc-kr",
        output_geojson="lots.geojson",
        output_properties="lots.json",
        output_archive="lots.pmtiles",
        tile_options=TileOptions(
            min_zoom=12, max_zoom=17, layer_name="lots", id_property="id"
        ),
        transform=TransformConfig(
            properties=["YOJ_ID", "DAN_ID"],
            rename={"YOJ_ID": "id", "DAN_ID": "complexId"},
        ),
    ),
    "industries": DataSourceConfig(
        name="industries",
        description="유치업종",
        raw_file="dam_yuch.shp",
        encoding="euc-kr",
        output_geojson="industries.geojson",
        output_properties="industries.json",
        output_archive="industries.pmtiles",
        tile_options=TileOptions(
            min_zoom=12, max_zoom=17, layer_name="industries", id_property="id"
        ),
        transform=TransformConfig(
            properties=["UPJ_ID", "DAN_ID", "UPJ6"],
            rename={"UPJ_ID": "id", "DAN_ID": "complexId", "UPJ6": "name"},
        ),
    ),
}


def get_source(name: str) -> DataSourceConfig:
    """Return the registered source called ``name``.

    Raises:
        SourceNotFoundError: If no source is registered under that name.
    """
    try:
        return DATA_SOURCES[name]
    except KeyError:
        raise errors.SourceNotFoundError(f"unknown data source: {name}") from None
