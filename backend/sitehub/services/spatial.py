"""Read-only spatial queries over stored site geometries.

Two operations live here:

* grid clustering, which buckets a project's site geometries by centroid
  onto a square grid in the projected CRS and returns one point per
  occupied cell (in EPSG:4326) for map display;
* the boundary query, which returns the existing sites whose geometry
  intersects the shapes in an uploaded archive.

Example:
    Cluster a project on a 1 km grid:
        >>> result = spatial.cluster_project_sites(
        ...     conn, project_id=7, grid_size=1000, projected_srid=2263
        ... )
        >>> result.cluster_count, result.total_sites
        (12, 431)
"""

from __future__ import annotations

import contextlib
import json
from typing import TYPE_CHECKING

from loguru import logger

from sitehub.db import database
from sitehub.db import models as db_models
from sitehub.services import crs, feature_parser

if TYPE_CHECKING:
    import pathlib

    import psycopg2.extensions

    from sitehub.core import config

SAMPLE_SIZE = 5

_PROJECT_GEOMETRIES = """
    SELECT DISTINCT ON (g.hub_site_id) g.hub_site_id, g.shape
    FROM lnk_project_site l
    JOIN sat_site_geometry g ON g.hub_site_id = l.hub_site_id
    WHERE l.hub_project_id = %(project_id)s AND g.shape IS NOT NULL
    ORDER BY g.hub_site_id, g.start_dt DESC
"""

_CLUSTER_QUERY = f"""
    WITH project_geoms AS ({_PROJECT_GEOMETRIES}),
    cells AS (
      SELECT hub_site_id,
             floor(ST_X(ST_Centroid(shape)) / %(grid_size)s) AS gx,
             floor(ST_Y(ST_Centroid(shape)) / %(grid_size)s) AS gy
      FROM project_geoms
    )
    SELECT ST_AsGeoJSON(
             ST_Transform(
               ST_SetSRID(
                 ST_MakePoint(
                   gx * %(grid_size)s + %(grid_size)s / 2.0,
                   gy * %(grid_size)s + %(grid_size)s / 2.0
                 ),
                 %(projected_srid)s
               ),
               %(geodetic_srid)s
             )
           ) AS geometry,
           COUNT(*) AS site_count,
           (array_agg(hub_site_id ORDER BY hub_site_id))[1:{SAMPLE_SIZE}]
             AS sample_site_ids
    FROM cells
    GROUP BY gx, gy
    ORDER BY site_count DESC, gx, gy
"""

_SUMMARY_QUERY = f"""
    WITH project_geoms AS ({_PROJECT_GEOMETRIES})
    SELECT COUNT(*),
           ST_AsGeoJSON(
             ST_Transform(
               ST_SetSRID(ST_Extent(shape)::geometry, %(projected_srid)s),
               %(geodetic_srid)s
             )
           )
    FROM project_geoms
"""

_INTERSECTING_QUERY = """
    SELECT DISTINCT g.hub_site_id
    FROM sat_site_geometry g
    WHERE g.shape IS NOT NULL
      AND ST_Intersects(
        g.shape,
        ST_Transform(
          ST_SetSRID(ST_GeomFromGeoJSON(%(geometry)s), %(source_srid)s),
          %(projected_srid)s
        )
      )
    ORDER BY g.hub_site_id
"""


def _load_geojson(value: str | dict | None) -> db_models.GeoJSON | None:
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    return json.loads(value)


def cluster_project_sites(
    conn: psycopg2.extensions.connection,
    project_id: int,
    grid_size: float,
    projected_srid: int,
    geodetic_srid: int = 4326,
) -> db_models.ClusterResult:
    """Bucket a project's site geometries onto a square grid.

    Each site counts once, by the centroid of its most recent geometry.
    Cells are reported by their centre point.

    Args:
        conn: Open connection.
        project_id: Project whose sites to cluster.
        grid_size: Cell edge length in projected units; must be positive.
        projected_srid: SRID the geometries are stored in.
        geodetic_srid: SRID for the returned points and bounds.

    Returns:
        ClusterResult with cells ordered by member count, descending.

    Raises:
        ValueError: If ``grid_size`` is not positive.
    """
    if grid_size <= 0:
        raise ValueError("grid_size must be positive")

    params = {
        "project_id": project_id,
        "grid_size": grid_size,
        "projected_srid": projected_srid,
        "geodetic_srid": geodetic_srid,
    }
    with conn.cursor() as cur:
        cur.execute(_CLUSTER_QUERY, params)
        cluster_rows = cur.fetchall()
        cur.execute(_SUMMARY_QUERY, params)
        total_sites, bounds = cur.fetchone()

    clusters = [
        db_models.Cluster(
            geometry=_load_geojson(geometry) or {},
            count=int(count),
            sample_site_ids=[int(site_id) for site_id in sample_ids or []],
        )
        for geometry, count, sample_ids in cluster_rows
    ]
    logger.debug(
        "Project {}: {} sites in {} cells of {}",
        project_id,
        total_sites,
        len(clusters),
        grid_size,
    )
    return db_models.ClusterResult(
        clusters=clusters,
        total_sites=int(total_sites or 0),
        bounds=_load_geojson(bounds),
        cluster_count=len(clusters),
        grid_size=grid_size,
    )


def find_intersecting_sites(
    conn: psycopg2.extensions.connection,
    geometry: db_models.GeoJSON,
    source_srid: int,
    projected_srid: int,
) -> list[int]:
    """Ids of stored sites whose geometry intersects ``geometry``.

    Args:
        conn: Open connection.
        geometry: GeoJSON geometry (a GeometryCollection is fine).
        source_srid: SRID the geometry's coordinates are in.
        projected_srid: SRID of the stored site geometries.

    Returns:
        Distinct site ids in ascending order.
    """
    with conn.cursor() as cur:
        cur.execute(
            _INTERSECTING_QUERY,
            {
                "geometry": json.dumps(geometry),
                "source_srid": source_srid,
                "projected_srid": projected_srid,
            },
        )
        return [int(row[0]) for row in cur.fetchall()]


def find_sites_in_archive(
    archive_path: pathlib.Path,
    settings: config.Settings,
) -> list[int]:
    """Run the boundary query for the shapes in a zipped shapefile.

    Raises:
        MalformedInputError: If the archive can't be decoded.
        EmptyInputError: If it holds no feature with a geometry.
    """
    collection = feature_parser.read_features(archive_path, settings.storage_dir)
    geometry = feature_parser.combine_geometries(collection.features)
    source = crs.resolve_source_crs(geometry, collection.declared_srid, settings)
    if not source.declared:
        crs.log_guessed_crs({source.srid: 1}, collection.source_name)

    with contextlib.closing(database.get_connection(settings)) as conn:
        site_ids = find_intersecting_sites(
            conn, geometry, source.srid, settings.projected_srid
        )
    logger.info(
        "{} intersects {} existing sites", collection.source_name, len(site_ids)
    )
    return site_ids
