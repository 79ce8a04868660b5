"""Application settings and configuration management.

This module provides Pydantic-based settings management that loads
configuration from environment variables or a .env file. Settings include
the raw input directory, the output directory tree (intermediate GeoJSON,
properties JSON and tile archives), tiling parameters, the build worker pool
size and the projection failure policies, plus CORS origins for the tile
service.

Example:
    Settings can be accessed via the cached get_settings() function:
        >>> from parcelmap.core.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.tiles_dir)

    Environment variables can override defaults:
        >>> RAW_DIR=/data/rawdata
        >>> OUTPUT_DIR=/srv/parcelmap
        >>> MAX_WORKERS=8
"""

import enum
import functools
import pathlib

import pydantic
import pydantic_settings


class ProjectionFailurePolicy(enum.StrEnum):
    """What the build does with a feature whose coordinates fail to project.

    ``drop_feature`` removes the feature and counts it in the build report,
    ``fail_build`` aborts the current source.
    """

    DROP_FEATURE = "drop_feature"
    FAIL_BUILD = "fail_build"


class Settings(pydantic_settings.BaseSettings):
    """Runtime configuration pulled from environment variables or defaults.

    All settings can be overridden via environment variables or .env file.
    Output directories are created on demand via ensure_directories().

    Attributes:
        raw_dir: Directory holding the raw shapefiles (with .prj/.dbf).
        output_dir: Root of the output tree.
        temp_subdir: Intermediate GeoJSON directory, relative to output_dir.
        properties_subdir: Properties JSON directory, relative to output_dir.
        tiles_subdir: Tile archive directory, relative to output_dir.
        tile_extent: Vector tile extent in pixels.
        tile_buffer: Clip buffer around each tile, in tile pixels.
        simplify_tolerance: Simplification tolerance, in tile pixels.
        polylabel_precision: Visual center precision, in degrees.
        max_workers: Upper bound on concurrently encoded tiles.
        projection_failure_policy: Handling of per-feature projection errors.
        allow_projection_fallback: Use the default CRS when the .prj file is
            missing or matches no known signature (logged as a warning).
        center_zoom: Default zoom stored in the archive header center.
        reader_cache_size: Number of open archives the tile service keeps.
        allow_origins: List of allowed CORS origins (["*"] allows all).

    Example:
        Create settings with custom values:
            >>> settings = Settings(
            ...     raw_dir=Path("/data/rawdata"),
            ...     output_dir=Path("/srv/parcelmap"),
            ...     max_workers=8,
            ... )
            >>> settings.ensure_directories()
    """

    raw_dir: pathlib.Path = pathlib.Path("rawdata")
    output_dir: pathlib.Path = pathlib.Path("/tmp/parcelmap")
    temp_subdir: str = "temp"
    properties_subdir: str = "properties"
    tiles_subdir: str = "tiles"
    tile_extent: int = 4096
    tile_buffer: int = 64
    simplify_tolerance: float = 3.0
    polylabel_precision: float = 0.00001
    max_workers: int = pydantic.Field(default=4, ge=1)
    projection_failure_policy: ProjectionFailurePolicy = (
        ProjectionFailurePolicy.DROP_FEATURE
    )
    allow_projection_fallback: bool = False
    center_zoom: int = 10
    reader_cache_size: int = 16
    allow_origins: list[str] = ["*"]

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def temp_dir(self) -> pathlib.Path:
        return self.output_dir / self.temp_subdir

    @property
    def properties_dir(self) -> pathlib.Path:
        return self.output_dir / self.properties_subdir

    @property
    def tiles_dir(self) -> pathlib.Path:
        return self.output_dir / self.tiles_subdir

    def ensure_directories(self) -> None:
        """Create the output tree (temp, properties and tiles directories)."""
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.properties_dir.mkdir(parents=True, exist_ok=True)
        self.tiles_dir.mkdir(parents=True, exist_ok=True)


@functools.lru_cache
def get_settings() -> Settings:
    """Get cached settings instance with directories initialized.

    Settings are loaded from environment variables or .env file and cached
    for the lifetime of the process. Directories are created on first call.

    Returns:
        Settings instance with all configuration values populated and
        the output tree ensured to exist.
    """
    settings = Settings()
    settings.ensure_directories()
    return settings
