"""Database helpers for the site EAV store."""

from __future__ import annotations

import contextlib
import csv
import datetime
import io
import re
from typing import TYPE_CHECKING, Any, cast

import psycopg2
import psycopg2.extensions

from sitehub.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

    from sitehub.core import config

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

VOCABULARIES = ("material", "style", "type", "use")

_VOCABULARY_DDL = "".join(
    f"""
    CREATE TABLE IF NOT EXISTS ref_{name} (
      {name}_id SERIAL PRIMARY KEY,
      {name}_nm TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS sat_site_{name} (
      hub_site_id BIGINT NOT NULL
        REFERENCES hub_sites (hub_site_id) ON DELETE CASCADE,
      {name}_id INTEGER NOT NULL REFERENCES ref_{name} ({name}_id),
      sort_order INTEGER NOT NULL DEFAULT 0,
      start_dt TIMESTAMPTZ DEFAULT now()
    );
    """
    for name in VOCABULARIES
)

SCHEMA_SQL = (
    """
    CREATE EXTENSION IF NOT EXISTS postgis;

    CREATE TABLE IF NOT EXISTS ref_record_source (
      record_source_id SERIAL PRIMARY KEY,
      source_system TEXT,
      source_app TEXT,
      source_process TEXT,
      source_owner TEXT,
      create_dt TIMESTAMPTZ DEFAULT now()
    );

    CREATE TABLE IF NOT EXISTS hub_projects (
      hub_project_id SERIAL PRIMARY KEY,
      project_nm TEXT NOT NULL,
      project_desc TEXT,
      record_source_id INTEGER REFERENCES ref_record_source (record_source_id),
      create_dt TIMESTAMPTZ DEFAULT now()
    );

    CREATE TABLE IF NOT EXISTS hub_sites (
      hub_site_id BIGSERIAL PRIMARY KEY,
      create_dt TIMESTAMPTZ DEFAULT now()
    );

    CREATE TABLE IF NOT EXISTS lnk_project_site (
      hub_project_id INTEGER NOT NULL
        REFERENCES hub_projects (hub_project_id) ON DELETE CASCADE,
      hub_site_id BIGINT NOT NULL
        REFERENCES hub_sites (hub_site_id) ON DELETE CASCADE,
      create_dt TIMESTAMPTZ DEFAULT now(),
      PRIMARY KEY (hub_project_id, hub_site_id)
    );

    CREATE TABLE IF NOT EXISTS ref_attributes (
      attribute_id SERIAL PRIMARY KEY,
      attribute_nm TEXT NOT NULL,
      attribute_text TEXT,
      attribute_desc TEXT,
      attribute_type TEXT NOT NULL CHECK (attribute_type IN
        ('int', 'txt', 'num', 'ts', 'tbl', 'ref', 'refs')),
      attribute_p_or_s TEXT NOT NULL DEFAULT 'S',
      create_dt TIMESTAMPTZ DEFAULT now()
    );
    CREATE UNIQUE INDEX IF NOT EXISTS ref_attributes_name_scope_uq
      ON ref_attributes (LOWER(attribute_nm), attribute_p_or_s);

    CREATE TABLE IF NOT EXISTS sat_site_attributes (
      hub_site_id BIGINT NOT NULL
        REFERENCES hub_sites (hub_site_id) ON DELETE CASCADE,
      attribute_id INTEGER NOT NULL REFERENCES ref_attributes (attribute_id),
      attribute_value_text TEXT,
      attribute_value_int BIGINT,
      attribute_value_number NUMERIC,
      attribute_value_ts TIMESTAMP,
      record_source_id INTEGER REFERENCES ref_record_source (record_source_id),
      start_dt TIMESTAMPTZ DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS sat_site_attributes_attr_site_idx
      ON sat_site_attributes (attribute_id, hub_site_id, start_dt);

    CREATE TABLE IF NOT EXISTS sat_site_geometry (
      hub_site_id BIGINT NOT NULL
        REFERENCES hub_sites (hub_site_id) ON DELETE CASCADE,
      shape geometry,
      record_source_id INTEGER REFERENCES ref_record_source (record_source_id),
      start_dt TIMESTAMPTZ DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS sat_site_geometry_shape_idx
      ON sat_site_geometry USING GIST (shape);

    CREATE TABLE IF NOT EXISTS sat_project_site_attributes (
      sat_project_site_attributes_id SERIAL PRIMARY KEY,
      hub_project_id INTEGER NOT NULL
        REFERENCES hub_projects (hub_project_id) ON DELETE CASCADE,
      attribute_id INTEGER NOT NULL REFERENCES ref_attributes (attribute_id),
      sort_order INTEGER NOT NULL DEFAULT 0,
      create_dt TIMESTAMPTZ DEFAULT now(),
      UNIQUE (hub_project_id, attribute_id)
    );

    CREATE TABLE IF NOT EXISTS sat_site_bbl (
      hub_site_id BIGINT NOT NULL
        REFERENCES hub_sites (hub_site_id) ON DELETE CASCADE,
      bbl TEXT,
      start_dt TIMESTAMPTZ DEFAULT now()
    );

    CREATE TABLE IF NOT EXISTS sat_site_built (
      hub_site_id BIGINT NOT NULL
        REFERENCES hub_sites (hub_site_id) ON DELETE CASCADE,
      date_combo TEXT,
      start_dt TIMESTAMPTZ DEFAULT now()
    );
    """
    + _VOCABULARY_DDL
)


def get_connection(
    settings: config.Settings,
) -> psycopg2.extensions.connection:
    """Create a synchronous psycopg2 extensions connection.

    Args:
        settings: Application settings containing database connection URL.

    Returns:
        psycopg2 extensions connection object for direct database access.
    """
    return psycopg2.connect(settings.database_url)


def ensure_schema(conn: psycopg2.extensions.connection) -> None:
    """Create the PostGIS extension and every site-store table if missing.

    All statements are idempotent, so this is safe to run on every start.
    """
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    conn.commit()


def _quote_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _csv_value(value: Any) -> Any:
    if isinstance(value, datetime.datetime | datetime.date):
        return value.isoformat()
    return value


def copy_rows(
    cur: psycopg2.extensions.cursor,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
) -> int:
    """Stream rows into ``table`` with ``COPY ... FROM STDIN`` in CSV format.

    Every non-None value is written quoted and None is written as an
    unquoted empty field, which COPY reads as NULL. Embedded commas,
    quotes, backslashes and newlines therefore survive unchanged.

    Args:
        cur: Cursor on the connection that owns the target table.
        table: Target table name (lowercase identifier).
        columns: Target column names, in row order.
        rows: Row tuples matching ``columns``.

    Returns:
        Number of rows written.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_NOTNULL, lineterminator="\n")
    count = 0
    for row in rows:
        writer.writerow([_csv_value(value) for value in row])
        count += 1
    if count == 0:
        return 0

    buffer.seek(0)
    column_list = ", ".join(_quote_identifier(c) for c in columns)
    cur.copy_expert(
        f"COPY {_quote_identifier(table)} ({column_list}) "
        "FROM STDIN WITH (FORMAT csv)",
        buffer,
    )
    return count


@contextlib.contextmanager
def in_savepoint(
    cur: psycopg2.extensions.cursor,
    name: str,
) -> Iterator[None]:
    """Run the block inside ``SAVEPOINT name``.

    On an exception the savepoint is rolled back, which leaves the outer
    transaction usable, and the exception propagates.
    """
    savepoint = _quote_identifier(name)
    cur.execute(f"SAVEPOINT {savepoint}")
    try:
        yield
    except Exception:
        cur.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
        raise
    else:
        cur.execute(f"RELEASE SAVEPOINT {savepoint}")


def attribute_from_row(row: Sequence[Any]) -> db_models.AttributeDefinition:
    """Convert a ``ref_attributes`` row to an AttributeDefinition.

    Expects columns in the order ``attribute_id, attribute_nm,
    attribute_text, attribute_desc, attribute_type, attribute_p_or_s``
    optionally followed by ``sort_order``.
    """
    sort_order = row[6] if len(row) > 6 else None
    return db_models.AttributeDefinition(
        id=int(row[0]),
        name=str(row[1]),
        display_text=cast(str | None, row[2]),
        description=cast(str | None, row[3]),
        value_type=cast(db_models.ValueType, str(row[4])),
        scope=cast(str | None, row[5]),
        sort_order=int(sort_order) if sort_order is not None else None,
    )
