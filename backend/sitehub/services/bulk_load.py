"""Transactional bulk import of a zipped shapefile into the site EAV store.

One import creates one project and one brand-new site per feature that has
a geometry. Everything happens on one dedicated connection inside a single
transaction, in this order:

    lineage      ref_record_source + hub_projects rows
    schema       resolve/create one attribute definition per field
    reserve_ids  nextval() for every new site in one statement
    entities     COPY hub_sites and lnk_project_site
    geometry     COPY into a temp staging table, then one INSERT ... SELECT
                 that puts every shape into the projected SRID
    attributes   COPY typed values into a temp staging table in chunks,
                 then one INSERT ... SELECT into sat_site_attributes
    project_attributes  link every touched attribute to the project
    commit

The feature pre-scan is pure and runs first, outside the transaction, so an
upload with no usable features fails before anything is written. Any error
after that rolls back the whole transaction and is re-raised as an
ImportStageError naming the stage it happened in.

Example:
    Import an uploaded archive:
        >>> from sitehub.core.config import get_settings
        >>> from sitehub.services import bulk_load
        >>> summary = bulk_load.import_archive(
        ...     Path("parcels.zip"), get_settings(), project_name="Parcels"
        ... )
        >>> summary.entities_created
        1204
"""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import json
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from loguru import logger

from sitehub.db import database
from sitehub.db import models as db_models
from sitehub.services import attribute_registry, crs, feature_parser, value_types

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterator, Sequence

    import psycopg2.extensions

    from sitehub.core import config

ProgressCallback = Callable[[str, int], None]

LINEAGE_SYSTEM = "shapefile_import"
LINEAGE_APP = "SiteHub"
LINEAGE_PROCESS = "import_project_from_shapefile"

_GEOMETRY_STAGING_DDL = """
    CREATE TEMP TABLE temp_geom_import (
      hub_site_id BIGINT,
      geom_json TEXT,
      is_projected BOOLEAN,
      source_srid INTEGER,
      record_source_id INTEGER
    ) ON COMMIT DROP
"""

_GEOMETRY_INSERT = """
    INSERT INTO sat_site_geometry (hub_site_id, shape, record_source_id, start_dt)
    SELECT hub_site_id,
           CASE
             WHEN is_projected
               THEN ST_SetSRID(ST_GeomFromGeoJSON(geom_json), %(srid)s)
             ELSE ST_Transform(
               ST_SetSRID(ST_GeomFromGeoJSON(geom_json), source_srid),
               %(srid)s
             )
           END,
           record_source_id,
           %(start_dt)s
    FROM temp_geom_import
"""

_ATTRIBUTE_STAGING_DDL = """
    CREATE TEMP TABLE temp_attr_import (
      hub_site_id BIGINT,
      attribute_id INTEGER,
      attribute_value_text TEXT,
      attribute_value_int BIGINT,
      attribute_value_number NUMERIC,
      attribute_value_ts TIMESTAMP,
      record_source_id INTEGER
    ) ON COMMIT DROP
"""

_ATTRIBUTE_COLUMNS = (
    "hub_site_id",
    "attribute_id",
    "attribute_value_text",
    "attribute_value_int",
    "attribute_value_number",
    "attribute_value_ts",
    "record_source_id",
)

_ATTRIBUTE_INSERT = f"""
    INSERT INTO sat_site_attributes ({", ".join(_ATTRIBUTE_COLUMNS)}, start_dt)
    SELECT {", ".join(_ATTRIBUTE_COLUMNS)}, %s
    FROM temp_attr_import
"""

_PROJECT_ATTRIBUTE_INSERT = """
    INSERT INTO sat_project_site_attributes
      (hub_project_id, attribute_id, sort_order, create_dt)
    SELECT %(project_id)s, a.attribute_id, a.ord - 1, %(create_dt)s
    FROM unnest(%(attribute_ids)s::int[]) WITH ORDINALITY AS a(attribute_id, ord)
    ON CONFLICT (hub_project_id, attribute_id) DO NOTHING
"""


class ImportStageError(RuntimeError):
    """An import failed after the pre-scan and was rolled back.

    Attributes:
        stage: Name of the stage that raised.
        counts: Progress counters reached before the failure.
    """

    def __init__(self, stage: str, counts: dict[str, int], message: str) -> None:
        super().__init__(f"Import failed during {stage}: {message}")
        self.stage = stage
        self.counts = dict(counts)


@dataclasses.dataclass
class PreScan:
    """Features worth importing and the fields they carry.

    Attributes:
        features: Features with a geometry, in file order.
        skipped: Number of features dropped for lacking a geometry.
        fields: Field name to inferred type, in first-seen order. Fields
            that were only ever empty are absent.
    """

    features: list[db_models.Feature]
    skipped: int
    fields: dict[str, db_models.ValueType]


def prescan(features: Sequence[db_models.Feature]) -> PreScan:
    """Split off geometry-less features and infer one type per field.

    Raises:
        EmptyInputError: If no feature has a geometry.
    """
    kept: list[db_models.Feature] = []
    fields: dict[str, db_models.ValueType] = {}
    for feature in features:
        if not feature.geometry:
            continue
        kept.append(feature)
        for name, value in feature.properties.items():
            if name in fields:
                continue
            inferred = value_types.infer_value_type(value)
            if inferred is not None:
                fields[name] = inferred

    if not kept:
        raise feature_parser.EmptyInputError("Shapefile contains no features")
    return PreScan(features=kept, skipped=len(features) - len(kept), fields=fields)


def default_project_name(moment: datetime.datetime) -> str:
    return f"Import_{moment.strftime('%Y-%m-%dT%H-%M-%S')}"


def _notify(progress: ProgressCallback | None, stage: str, count: int) -> None:
    logger.info("Import stage {}: {}", stage, count)
    if progress is None:
        return
    try:
        progress(stage, count)
    except Exception:
        logger.exception("Progress callback failed at stage {}", stage)


def _create_lineage_and_project(
    cur: psycopg2.extensions.cursor,
    project_name: str,
    source_name: str,
) -> tuple[int, int]:
    cur.execute(
        "INSERT INTO ref_record_source "
        "(source_system, source_app, source_process, source_owner) "
        "VALUES (%s, %s, %s, %s) RETURNING record_source_id",
        (LINEAGE_SYSTEM, LINEAGE_APP, LINEAGE_PROCESS, source_name),
    )
    lineage_id = int(cur.fetchone()[0])
    cur.execute(
        "INSERT INTO hub_projects (project_nm, project_desc, record_source_id) "
        "VALUES (%s, %s, %s) RETURNING hub_project_id",
        (
            project_name,
            f"Imported from shapefile: {source_name}",
            lineage_id,
        ),
    )
    project_id = int(cur.fetchone()[0])
    return lineage_id, project_id


def _reserve_site_ids(cur: psycopg2.extensions.cursor, count: int) -> list[int]:
    cur.execute(
        "SELECT nextval(pg_get_serial_sequence('hub_sites', 'hub_site_id')) "
        "FROM generate_series(1, %s)",
        (count,),
    )
    site_ids = [int(row[0]) for row in cur.fetchall()]
    if len(site_ids) != count:
        raise RuntimeError(f"Reserved {len(site_ids)} site ids, expected {count}")
    return site_ids


def _geometry_rows(
    features: Sequence[db_models.Feature],
    site_ids: Sequence[int],
    declared_srid: int | None,
    lineage_id: int,
    settings: config.Settings,
    guessed: dict[int, int],
) -> Iterator[tuple[Any, ...]]:
    for site_id, feature in zip(site_ids, features, strict=True):
        source = crs.resolve_source_crs(feature.geometry, declared_srid, settings)
        if not source.declared:
            guessed[source.srid] = guessed.get(source.srid, 0) + 1
        yield (
            site_id,
            json.dumps(feature.geometry),
            source.is_projected,
            source.srid,
            lineage_id,
        )


def _attribute_rows(
    features: Sequence[db_models.Feature],
    site_ids: Sequence[int],
    attributes: dict[str, db_models.AttributeDefinition],
    lineage_id: int,
    counts: dict[str, int],
) -> Iterator[tuple[Any, ...]]:
    for site_id, feature in zip(site_ids, features, strict=True):
        for name, value in feature.properties.items():
            attribute = attributes.get(name)
            if attribute is None or value_types.is_empty(value):
                continue
            typed = value_types.coerce_value(value, attribute.value_type)
            if typed is None:
                counts["values_dropped"] += 1
                logger.debug(
                    "Dropped value {!r} for {} ({}) on site {}",
                    value,
                    attribute.name,
                    attribute.value_type,
                    site_id,
                )
                continue
            yield (
                site_id,
                attribute.id,
                *value_types.to_columns(typed),
                lineage_id,
            )


def _stage_attribute_values(
    cur: psycopg2.extensions.cursor,
    rows: Iterator[tuple[Any, ...]],
    batch_size: int,
) -> int:
    """COPY rows into ``temp_attr_import`` in chunks of ``batch_size``."""
    staged = 0
    batch: list[tuple[Any, ...]] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= batch_size:
            staged += database.copy_rows(
                cur, "temp_attr_import", _ATTRIBUTE_COLUMNS, batch
            )
            logger.debug("Flushed {} attribute values", staged)
            batch = []
    staged += database.copy_rows(cur, "temp_attr_import", _ATTRIBUTE_COLUMNS, batch)
    return staged


def run_import(
    conn: psycopg2.extensions.connection,
    collection: db_models.FeatureCollection,
    settings: config.Settings,
    project_name: str | None = None,
    progress: ProgressCallback | None = None,
) -> db_models.ImportSummary:
    """Load a decoded FeatureCollection as a new project.

    Args:
        conn: Connection owned by this import; must not be in autocommit.
        collection: Features decoded by the parser.
        settings: Supplies SRIDs, the CRS threshold, batch size and scope.
        project_name: Name for the new project; generated when empty.
        progress: Optional ``progress(stage, count)`` callback.

    Returns:
        ImportSummary of the committed import.

    Raises:
        EmptyInputError: If no feature has a geometry (nothing written).
        ImportStageError: If any later stage fails (everything rolled back).
    """
    started = time.perf_counter()
    started_at = datetime.datetime.now()
    name = project_name or default_project_name(started_at)

    scan = prescan(collection.features)
    counts = {
        "features": len(scan.features),
        "skipped": scan.skipped,
        "values_dropped": 0,
    }
    _notify(progress, "prescan", len(scan.features))

    stage = "lineage"
    try:
        with conn.cursor() as cur:
            lineage_id, project_id = _create_lineage_and_project(
                cur, name, collection.source_name
            )
            _notify(progress, stage, 1)

            stage = "schema"
            registrar = attribute_registry.AttributeRegistrar(
                cur,
                settings.site_attribute_scope,
                attribute_registry.AttributeCache(),
            )
            attributes = {
                field: registrar.resolve(field, inferred)
                for field, inferred in scan.fields.items()
            }
            ordered: dict[int, db_models.AttributeDefinition] = {}
            for attribute in attributes.values():
                ordered.setdefault(attribute.id, attribute)
            counts["attributes_created"] = registrar.created
            _notify(progress, stage, len(ordered))

            stage = "reserve_ids"
            site_ids = _reserve_site_ids(cur, len(scan.features))
            _notify(progress, stage, len(site_ids))

            stage = "entities"
            database.copy_rows(
                cur,
                "hub_sites",
                ("hub_site_id", "create_dt"),
                ((site_id, started_at) for site_id in site_ids),
            )
            database.copy_rows(
                cur,
                "lnk_project_site",
                ("hub_project_id", "hub_site_id", "create_dt"),
                ((project_id, site_id, started_at) for site_id in site_ids),
            )
            counts["entities"] = len(site_ids)
            _notify(progress, stage, len(site_ids))

            stage = "geometry"
            guessed: dict[int, int] = {}
            cur.execute(_GEOMETRY_STAGING_DDL)
            counts["geometries"] = database.copy_rows(
                cur,
                "temp_geom_import",
                (
                    "hub_site_id",
                    "geom_json",
                    "is_projected",
                    "source_srid",
                    "record_source_id",
                ),
                _geometry_rows(
                    scan.features,
                    site_ids,
                    collection.declared_srid,
                    lineage_id,
                    settings,
                    guessed,
                ),
            )
            crs.log_guessed_crs(guessed, collection.source_name)
            cur.execute(
                _GEOMETRY_INSERT,
                {"srid": settings.projected_srid, "start_dt": started_at},
            )
            _notify(progress, stage, counts["geometries"])

            stage = "attributes"
            cur.execute(_ATTRIBUTE_STAGING_DDL)
            counts["values"] = _stage_attribute_values(
                cur,
                _attribute_rows(
                    scan.features, site_ids, attributes, lineage_id, counts
                ),
                settings.attribute_batch_size,
            )
            if counts["values"]:
                cur.execute(_ATTRIBUTE_INSERT, (started_at,))
            _notify(progress, stage, counts["values"])

            stage = "project_attributes"
            if ordered:
                cur.execute(
                    _PROJECT_ATTRIBUTE_INSERT,
                    {
                        "project_id": project_id,
                        "create_dt": started_at,
                        "attribute_ids": list(ordered),
                    },
                )
            _notify(progress, stage, len(ordered))

        stage = "commit"
        conn.commit()
    except Exception as exc:
        conn.rollback()
        logger.exception("Import of {} rolled back at stage {}", name, stage)
        raise ImportStageError(stage, counts, str(exc)) from exc

    elapsed = time.perf_counter() - started
    _notify(progress, "commit", len(site_ids))
    logger.info(
        "Imported {} sites into project {} ({} skipped, {} values, {:.2f}s)",
        len(site_ids),
        project_id,
        scan.skipped,
        counts["values"],
        elapsed,
    )
    return db_models.ImportSummary(
        project_id=project_id,
        project_name=name,
        lineage_id=lineage_id,
        entities_created=len(site_ids),
        entities_skipped=scan.skipped,
        attributes_used=len(ordered),
        attribute_names=[attribute.name for attribute in ordered.values()],
        elapsed_seconds=elapsed,
    )


def import_archive(
    archive_path: pathlib.Path,
    settings: config.Settings,
    project_name: str | None = None,
    progress: ProgressCallback | None = None,
) -> db_models.ImportSummary:
    """Decode ``archive_path`` and import it on a fresh connection.

    Raises:
        MalformedInputError: If the archive can't be decoded.
        EmptyInputError: If it holds no feature with a geometry.
        ImportStageError: If the import failed and was rolled back.
    """
    collection = feature_parser.read_features(archive_path, settings.storage_dir)
    prescan(collection.features)

    with contextlib.closing(database.get_connection(settings)) as conn:
        database.ensure_schema(conn)
        return run_import(conn, collection, settings, project_name, progress)
