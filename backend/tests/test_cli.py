"""Tests for the parcelmap-build command line entrypoint.

The build itself is replaced with fakes where the test is about argument
handling and exit codes; one test runs the real pipeline over an empty raw
directory.

See Also:
    - backend/parcelmap/cli.py for the entrypoint,
    - backend/parcelmap/services/build.py for the build report.
"""

from __future__ import annotations

import pytest

from parcelmap import cli
from parcelmap.core import config, logs
from parcelmap.services import build


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logs, "configure_logging", lambda verbose=False: None)


@pytest.fixture
def use_settings(monkeypatch: pytest.MonkeyPatch, settings: config.Settings):
    monkeypatch.setattr(config, "get_settings", lambda: settings)
    return settings


def test_list_sources(capsys: pytest.CaptureFixture[str]) -> None:
    """Test that --list prints every registered source with its zoom range."""
    assert cli.main(["--list"]) == 0
    out = capsys.readouterr().out
    assert "parcels" in out
    assert "z12-17" in out
    assert "dam_dan.shp" in out


def test_unknown_source_is_a_usage_error(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Test that an unknown source name exits with status 2."""
    assert cli.main(["parcels", "roads"]) == 2
    assert "roads" in caplog.text


def test_invalid_worker_count(use_settings) -> None:
    """Test that --workers below 1 exits with status 2."""
    assert cli.main(["--workers", "0"]) == 2


def test_overrides_reach_the_build(
    monkeypatch: pytest.MonkeyPatch, use_settings
) -> None:
    """Test that command line options override the loaded settings."""
    calls = []

    def fake_build(names, settings, **kwargs):
        calls.append((names, settings))
        return build.BuildReport()

    monkeypatch.setattr(build, "build_sources", fake_build)
    argv = ["sig", "emd", "--workers", "8", "--allow-projection-fallback"]
    assert cli.main(argv) == 0

    [(names, settings)] = calls
    assert names == ["sig", "emd"]
    assert settings.max_workers == 8
    assert settings.allow_projection_fallback is True
    assert use_settings.max_workers == 2


def test_failed_source_exits_1(
    monkeypatch: pytest.MonkeyPatch,
    use_settings,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Test that any failed source makes the build exit with status 1."""
    report = build.BuildReport(
        results=[
            build.SourceResult(
                name="sig",
                status=build.BuildStatus.BUILT,
                total=10,
                included=10,
                dropped=1,
                tiles=42,
            ),
            build.SourceResult(
                name="emd",
                status=build.BuildStatus.FAILED,
                message="unrecognized projection",
            ),
        ]
    )
    monkeypatch.setattr(
        build, "build_sources", lambda names, settings, **kwargs: report
    )

    assert cli.main([]) == 1
    out = capsys.readouterr().out
    assert "9 features, 1 dropped, 42 tiles" in out
    assert "failed" in out
    assert "unrecognized projection" in out


def test_unwritable_output_directory_exits_1(
    use_settings, caplog: pytest.LogCaptureFixture
) -> None:
    """Test that an output tree that cannot be created exits with status 1."""
    use_settings.output_dir.parent.mkdir(parents=True, exist_ok=True)
    use_settings.output_dir.write_text("not a directory")
    assert cli.main(["parcels"]) == 1
    assert "Cannot create the output directories" in caplog.text


def test_only_and_force_reach_the_build(
    monkeypatch: pytest.MonkeyPatch, use_settings
) -> None:
    """Test that --only accepts repeated and comma separated stages."""
    calls = []

    def fake_build(names, settings, stages=None, force=False):
        calls.append((stages, force))
        return build.BuildReport()

    monkeypatch.setattr(build, "build_sources", fake_build)
    assert cli.main(["parcels", "--only", "geojson,properties"]) == 0
    assert cli.main(["--only", "tiles", "--only", "properties", "--force"]) == 0
    assert cli.main(["parcels"]) == 0

    assert calls == [
        ([build.BuildStage.GEOJSON, build.BuildStage.PROPERTIES], False),
        ([build.BuildStage.TILES, build.BuildStage.PROPERTIES], True),
        (None, False),
    ]


def test_unknown_stage_is_a_usage_error(
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Test that an unknown stage name exits with status 2."""
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--only", "tiles,excel"])
    assert exc_info.value.code == 2
    assert "invalid stage list" in capsys.readouterr().err


def test_real_build_skips_missing_inputs(
    use_settings, capsys: pytest.CaptureFixture[str]
) -> None:
    """Test that a build with no raw files skips every source and succeeds."""
    assert cli.main([]) == 0
    out = capsys.readouterr().out
    assert out.count("skipped") == len(cli.sources.DATA_SOURCES)
    assert use_settings.tiles_dir.is_dir()
