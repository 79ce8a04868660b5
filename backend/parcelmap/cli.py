"""Command line entrypoint for the archive build.

Example:
    Build every registered source:
        $ parcelmap-build

    Build two sources with eight encoder threads and debug logging:
        $ parcelmap-build sig parcels --workers 8 --verbose

    Re-encode the parcel tiles from the intermediate GeoJSON:
        $ parcelmap-build parcels --only tiles

    Rebuild everything, even sources whose inputs have not changed:
        $ parcelmap-build --force

    Show the registry:
        $ parcelmap-build --list
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TYPE_CHECKING

from parcelmap.core import config, logs, sources
from parcelmap.services import build

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


def _stages(value: str) -> list[build.BuildStage]:
    try:
        return [build.BuildStage(name.strip()) for name in value.split(",")]
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid stage list {value!r}; choose from "
            + ", ".join(build.BuildStage)
        ) from None


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parcelmap-build",
        description="Convert raw shapefiles into GeoJSON, properties JSON "
        "and tile archives.",
    )
    parser.add_argument(
        "sources",
        nargs="*",
        metavar="SOURCE",
        help="data sources to build (default: all)",
    )
    parser.add_argument(
        "--list", action="store_true", help="list the registered sources and exit"
    )
    parser.add_argument(
        "--workers", type=int, default=None, help="tile encoding threads"
    )
    parser.add_argument(
        "--allow-projection-fallback",
        action="store_true",
        help="use the default CRS when the .prj file is missing or unrecognized",
    )
    parser.add_argument(
        "--only",
        type=_stages,
        action="extend",
        metavar="STAGE[,STAGE]",
        help="run only these stages: " + ", ".join(build.BuildStage),
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="rebuild stages the build state records as up to date",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def _print_sources() -> None:
    for name, source in sources.DATA_SOURCES.items():
        options = source.tile_options
        zooms = f"z{options.min_zoom}-{options.max_zoom}" if options else "-"
        print(f"{name:<12} {zooms:<8} {source.raw_file}  ({source.description})")


def _print_report(report: build.BuildReport) -> None:
    for result in report.results:
        line = f"{result.name:<12} {result.status:<8}"
        if result.status is build.BuildStatus.BUILT:
            line += (
                f" {result.included - result.dropped} features,"
                f" {result.dropped} dropped, {result.tiles} tiles"
                f" in {result.duration_seconds:.1f}s"
            )
        elif result.message:
            line += f" {result.message}"
        print(line)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the build; returns the process exit code (1 if any source failed)."""
    args = _parser().parse_args(argv)
    logs.configure_logging(args.verbose)

    if args.list:
        _print_sources()
        return 0

    unknown = [name for name in args.sources if name not in sources.DATA_SOURCES]
    if unknown:
        logger.error("Unknown data source(s): %s", ", ".join(unknown))
        return 2

    overrides: dict[str, object] = {}
    if args.workers is not None:
        if args.workers < 1:
            logger.error("--workers must be at least 1")
            return 2
        overrides["max_workers"] = args.workers
    if args.allow_projection_fallback:
        overrides["allow_projection_fallback"] = True
    try:
        settings = config.get_settings().model_copy(update=overrides)
        settings.ensure_directories()
    except OSError:
        logger.exception("Cannot create the output directories")
        return 1

    report = build.build_sources(
        args.sources, settings, stages=args.only, force=args.force
    )

    _print_report(report)
    if not report.ok:
        logger.error(
            "%d of %d sources failed: %s",
            len(report.failed),
            len(report.results),
            ", ".join(r.name for r in report.failed),
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
