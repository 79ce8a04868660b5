"""Build pipeline stages and the client layer orchestrator.

Submodules, leaf to root:
    - projection: CRS detection and reprojection to EPSG:4326.
    - features: shapefile reading, region filtering, attribute transforms,
      visual centers.
    - tile_index: per-zoom clipped/simplified tile index.
    - tile_encoder: Mapbox Vector Tile encoding and gzip compression.
    - archive_writer / archive_reader: PMTiles v3 archive layout.
    - build: per-source orchestration of the above.
    - renderer: map renderer interface and an in-memory implementation.
    - orchestrator: client-side layer, color and focus-mode state machine.
"""
