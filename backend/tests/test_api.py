"""API endpoint tests for tile serving and archive discovery.

This module exercises the FastAPI application end to end:
    - ``GET /tiles/{layer}/{z}/{x}/{y}.pbf`` returns stored tiles with the
      gzip content encoding and cache headers, 204 for empty tiles, 400 for
      malformed coordinates, 404 for unknown archives and 500 for corrupt
      ones,
    - ``GET /api/archives`` and ``GET /api/archives/{name}`` describe the
      archives,
    - the application factory and health check.

The archive repository is always injected with FastAPI dependency overrides,
so no test reads the configured tiles directory.

See Also:
    - backend/parcelmap/api/tiles.py for the tile endpoint,
    - backend/parcelmap/api/archives.py for the discovery endpoints,
    - backend/parcelmap/main.py for the application factory.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, cast

import mapbox_vector_tile
import pytest
from fastapi import testclient
from shapely import geometry as shapely_geometry

from parcelmap import main
from parcelmap.api import tiles as api_tiles
from parcelmap.core import config
from parcelmap.db import database
from parcelmap.db import models as db_models
from parcelmap.services import archive_writer, tile_encoder, tile_index

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterator

PNU = "2820010100100010000"


@pytest.fixture
def parcel_tile() -> db_models.EncodedTile:
    """One real zoom 14 parcel tile."""
    parcel = db_models.ProjectedFeature(
        geometry=shapely_geometry.box(126.7300, 37.4500, 126.7305, 37.4504),
        properties={"PNU": PNU, "jibun": "1 대"},
    )
    index = tile_index.TileIndex().build([parcel], 14, 14)
    [(key, features)] = list(index.tiles())
    return tile_encoder.encode_tile(key, {"parcels": features}, id_property="PNU")


@pytest.fixture
def repo(
    tmp_path: pathlib.Path, parcel_tile: db_models.EncodedTile
) -> database.InMemoryArchiveRepository:
    """Repository holding a parcels archive and a corrupt one."""
    path = tmp_path / "parcels.pmtiles"
    metadata = archive_writer.build_metadata(
        "parcels", "남동구 필지", "parcels", 14, 14, [{"PNU": PNU}]
    )
    archive_writer.write_archive(
        path, [parcel_tile], metadata, 14, 14, (126.73, 37.45, 126.7305, 37.4504)
    )
    broken = tmp_path / "broken.pmtiles"
    broken.write_bytes(b"\x00" * 200)

    repo = database.InMemoryArchiveRepository()
    repo.add(database.describe_archive(path))
    repo.add(database.describe_archive(broken))
    return repo


@pytest.fixture
def client(
    repo: database.InMemoryArchiveRepository,
) -> Iterator[testclient.TestClient]:
    app = main.create_app()
    app.dependency_overrides[api_tiles._get_repo] = lambda: repo
    try:
        yield testclient.TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _url(key: db_models.TileKey, layer: str = "parcels") -> str:
    return f"/tiles/{layer}/{key.z}/{key.x}/{key.y}.pbf"


def test_get_tile(client: testclient.TestClient, parcel_tile) -> None:
    """Test that a stored tile is served with gzip encoding and cache headers."""
    response = client.get(_url(parcel_tile.key))
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/x-protobuf"
    assert response.headers["content-encoding"] == "gzip"
    assert response.headers["cache-control"] == "public, max-age=86400, immutable"

    layers = mapbox_vector_tile.decode(
        response.content, default_options={"y_coord_down": True}
    )
    [feature] = layers["parcels"]["features"]
    assert feature["id"] == int(PNU)
    assert feature["properties"]["jibun"] == "1 대"


def test_get_tile_without_suffix(client: testclient.TestClient, parcel_tile) -> None:
    """Test that the .pbf suffix is optional."""
    key = parcel_tile.key
    response = client.get(f"/tiles/parcels/{key.z}/{key.x}/{key.y}")
    assert response.status_code == 200


def test_empty_tile_returns_204(client: testclient.TestClient, parcel_tile) -> None:
    """Test that a tile with no data is answered with 204 No Content."""
    key = parcel_tile.key
    response = client.get(_url(db_models.TileKey(key.z, key.x + 1, key.y)))
    assert response.status_code == 204
    assert response.content == b""


def test_unknown_archive_returns_404(client: testclient.TestClient) -> None:
    """Test that an unknown archive name is a 404."""
    response = client.get("/tiles/roads/0/0/0.pbf")
    assert response.status_code == 404
    assert response.json() == {"detail": "Archive not found"}


@pytest.mark.parametrize(
    "path",
    [
        "/tiles/parcels/abc/0/0.pbf",
        "/tiles/parcels/1/-1/0.pbf",
        "/tiles/parcels/1/0/1.5.pbf",
        "/tiles/parcels/1/2/0.pbf",
        "/tiles/parcels/32/0/0.pbf",
    ],
)
def test_invalid_coordinates_return_400(
    client: testclient.TestClient, path: str
) -> None:
    """Test that malformed or out-of-range coordinates are a 400."""
    response = client.get(path)
    assert response.status_code == 400


def test_corrupt_archive_returns_500(client: testclient.TestClient) -> None:
    """Test that an unreadable archive is a 500, not a crash."""
    response = client.get("/tiles/broken/0/0/0.pbf")
    assert response.status_code == 500
    assert response.json() == {"detail": "Corrupt archive"}


def test_list_archives(client: testclient.TestClient) -> None:
    """Test listing the archives ordered by name."""
    response = client.get("/api/archives")
    assert response.status_code == 200
    archives = response.json()
    assert [a["name"] for a in archives] == ["broken", "parcels"]
    parcels = archives[1]
    assert parcels["tiles_url"] == "/tiles/parcels/{z}/{x}/{y}.pbf"
    assert parcels["size_bytes"] > archive_writer.HEADER_SIZE
    assert parcels["modified_at"].endswith("+00:00")


def test_get_archive(client: testclient.TestClient) -> None:
    """Test describing one archive with its header and metadata."""
    response = client.get("/api/archives/parcels")
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "parcels"
    header = body["header"]
    assert header["tile_type"] == "mvt"
    assert header["tile_compression"] == "gzip"
    assert header["internal_compression"] == "gzip"
    assert (header["min_zoom"], header["max_zoom"]) == (14, 14)
    assert header["addressed_tiles_count"] == 1
    assert header["bounds"] == pytest.approx([126.73, 37.45, 126.7305, 37.4504])
    assert body["metadata"]["description"] == "남동구 필지"
    assert body["metadata"]["vector_layers"][0]["fields"] == {"PNU": "String"}


def test_get_archive_errors(client: testclient.TestClient) -> None:
    """Test 404 for unknown and 500 for corrupt archives."""
    assert client.get("/api/archives/roads").status_code == 404
    assert client.get("/api/archives/broken").status_code == 500


def test_filesystem_repository_behind_api(
    tmp_path: pathlib.Path, parcel_tile
) -> None:
    """Test the endpoints over archives discovered in a directory."""
    metadata = archive_writer.build_metadata("sig", "시군구", "sig", 14, 14)
    archive_writer.write_archive(
        tmp_path / "sig.pmtiles", [parcel_tile], metadata, 14, 14, (0, 0, 0, 0)
    )
    repo = database.FileSystemArchiveRepository(tmp_path)
    app = main.create_app()
    app.dependency_overrides[api_tiles._get_repo] = lambda: repo
    client = testclient.TestClient(app)
    try:
        assert [a["name"] for a in client.get("/api/archives").json()] == ["sig"]
        assert client.get(_url(parcel_tile.key, "sig")).status_code == 200
        assert client.get(_url(parcel_tile.key, "..%2Fsig")).status_code == 404
    finally:
        app.dependency_overrides.clear()
        repo.close()


def test_create_app() -> None:
    """Test that create_app returns a configured FastAPI instance."""
    app = main.create_app()
    assert app.title == "Parcel Map Tiles"
    assert app.version == "0.1.0"
    routes = [cast(str, getattr(route, "path", "")) for route in app.routes]
    assert "/tiles/{layer}/{z}/{x}/{y}" in routes
    assert "/api/archives" in routes
    assert "/health" in routes


def test_health_endpoint() -> None:
    """Test the health check endpoint returns ok status."""
    client = testclient.TestClient(main.create_app())
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_lifespan_logs_and_closes_readers(
    monkeypatch: pytest.MonkeyPatch,
    settings,
    parcel_tile,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Test that startup lists the served archives and shutdown closes readers."""
    settings.tiles_dir.mkdir(parents=True)
    metadata = archive_writer.build_metadata("sig", "시군구", "sig", 14, 14)
    path = settings.tiles_dir / "sig.pmtiles"
    archive_writer.write_archive(path, [parcel_tile], metadata, 14, 14, (0, 0, 0, 0))
    get_settings = config.get_settings
    monkeypatch.setattr(config, "get_settings", lambda: settings)
    caplog.set_level("INFO", logger="parcelmap.main")
    repo = database.get_archive_repository(settings)

    app = main.create_app()
    app.dependency_overrides[get_settings] = lambda: settings
    with testclient.TestClient(app) as client:
        assert client.get(_url(parcel_tile.key, "sig")).status_code == 200
        assert len(repo._readers) == 1
    assert "Serving 1 archives" in caplog.text
    assert len(repo._readers) == 0


def test_cors_allows_get(client: testclient.TestClient) -> None:
    """Test that browsers on other origins may fetch tiles."""
    response = client.options(
        "/api/archives",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert response.status_code == 200
    assert "GET" in response.headers["access-control-allow-methods"]
