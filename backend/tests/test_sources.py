"""Tests for the data source registry in parcelmap.core.sources."""

from __future__ import annotations

import pydantic
import pytest

from parcelmap.core import errors, sources


def test_parcels_source() -> None:
    """Test the parcels source configuration."""
    parcels = sources.get_source("parcels")
    assert parcels.encoding == "euc-kr"
    assert parcels.tile_options is not None
    assert parcels.tile_options.layer_name == "parcels"
    assert parcels.tile_options.id_property == "PNU"
    assert [(c.name, c.start, c.end) for c in parcels.transform.computed] == [
        ("sigCode", 0, 5),
        ("emdCode", 0, 10),
    ]


def test_district_sources_share_layout() -> None:
    """Test the district source layout."""
    for name in ("sido", "sig", "emd", "li"):
        source = sources.get_source(name)
        assert source.output_archive == f"{name}.pmtiles"
        assert source.transform.rename.get("A1", "code") == "code"
        assert source.tile_options is not None
        assert source.tile_options.id_property == "code"


def test_every_source_builds_an_archive() -> None:
    """Test that every source builds its own archive."""
    archives = [source.output_archive for source in sources.DATA_SOURCES.values()]
    assert all(source.builds_archive for source in sources.DATA_SOURCES.values())
    assert len(set(archives)) == len(archives)


def test_lots_and_industries_reference_their_complex() -> None:
    """Focus mode filters both layers on complexId."""
    for name in ("lots", "industries"):
        assert "complexId" in sources.get_source(name).transform.rename.values()


def test_unknown_source() -> None:
    """Test that an unknown source raises SourceNotFoundError."""
    with pytest.raises(errors.SourceNotFoundError):
        sources.get_source("nope")


def test_tile_options_zoom_order() -> None:
    """Test that min_zoom may not exceed max_zoom."""
    with pytest.raises(pydantic.ValidationError):
        sources.TileOptions(min_zoom=14, max_zoom=12, layer_name="x")


def test_source_without_outputs_does_not_build_archive() -> None:
    """Test a source with no outputs."""
    source = sources.DataSourceConfig(
        name="bare", description="bare", raw_file="bare.shp"
    )
    assert not source.builds_archive
    assert source.transform.rename == {}
