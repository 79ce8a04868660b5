"""Parcel map package: tile archive builder and tile service.

This package turns regional shapefile datasets (administrative districts,
land parcels, industrial complexes and their lots/industry zones) delivered in
Korean projected coordinate systems into single-file, zoom-indexed tile
archives, and serves them back by tile coordinate.

- Detects the source CRS from the ``.prj`` sidecar and reprojects to EPSG:4326
- Filters, renames and enriches attributes, and computes a visual center
  (pole of inaccessibility) per polygon for label/marker placement
- Indexes clipped, simplified geometry per zoom and encodes Mapbox Vector
  Tiles, gzip-compressed
- Writes PMTiles v3 compatible archives (Hilbert-ordered tile ids,
  delta/run-length encoded directories)
- Provides a renderer-agnostic layer orchestrator for the map client
  (zoom-driven layer swaps, color modes, feature-state recoloring, focus mode)

See the module docstrings of the sub-packages for details.
"""
