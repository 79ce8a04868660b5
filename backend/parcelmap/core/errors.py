"""Exception hierarchy shared by the build pipeline, service and client."""


class ParcelMapError(Exception):
    """Base class for all errors raised by this package."""


class UnknownProjectionError(ParcelMapError):
    """The projection descriptor matches none of the known CRS signatures."""


class CoordinateTransformError(ParcelMapError):
    """A coordinate pair could not be reprojected.

    Attributes:
        coordinate: The offending (x, y) pair in the source CRS.
    """

    def __init__(self, coordinate: tuple[float, ...], reason: str) -> None:
        super().__init__(f"cannot transform {coordinate!r}: {reason}")
        self.coordinate = coordinate


class SourceNotFoundError(ParcelMapError):
    """A data source name or its raw input file does not exist."""


class ArchiveFormatError(ParcelMapError):
    """An archive file is truncated or does not follow the PMTiles v3 layout."""


class RendererError(ParcelMapError):
    """The map renderer rejected an operation (missing layer, unloaded tile)."""
