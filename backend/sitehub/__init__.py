"""Site Hub backend: shapefile ingestion into a PostGIS-backed EAV store.

This package turns zipped shapefiles into sites, geometries and
entity-attribute-value rows, and reads those attributes back in bulk.

- Parses zipped shapefiles with GDAL and infers a value type per field
- Registers attribute definitions lazily, shared by name across imports
- Loads each import in one transaction through COPY-fed staging tables
- Resolves attribute values with one query per attribute, never per site
- Clusters project geometries on a grid and answers boundary queries

See the module docstrings for details on architecture and usage.
"""
