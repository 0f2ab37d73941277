"""Per-project attribute selection and the paged site listing.

A project shows a chosen, ordered subset of attribute definitions. Imports
fill that selection with every attribute the upload touched; users can
replace it afterwards. The project's site links can likewise be replaced
wholesale, or extended with the sites an uploaded boundary intersects. The site listing returns one page of a project's
sites with every selected attribute resolved through the EAV reader.
"""

from __future__ import annotations

import contextlib
import math
from typing import TYPE_CHECKING

import psycopg2.errors
from loguru import logger

from sitehub.db import database
from sitehub.db import models as db_models
from sitehub.services import eav_reader, spatial

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Sequence

    import psycopg2.extensions

    from sitehub.core import config

_PROJECT_ATTRIBUTES = """
    SELECT a.attribute_id, a.attribute_nm, a.attribute_text, a.attribute_desc,
           a.attribute_type, a.attribute_p_or_s, p.sort_order
    FROM sat_project_site_attributes p
    JOIN ref_attributes a ON a.attribute_id = p.attribute_id
    WHERE p.hub_project_id = %s
    ORDER BY p.sort_order, a.attribute_nm
"""

_LINK_SITES = """
    INSERT INTO lnk_project_site (hub_project_id, hub_site_id)
    SELECT %s, site_id FROM unnest(%s::bigint[]) AS site_id
    ON CONFLICT DO NOTHING
    RETURNING hub_site_id
"""


class ProjectNotFoundError(LookupError):
    """No project with the requested id exists."""


class UnknownSiteError(LookupError):
    """A site id to link doesn't exist."""


def _ensure_project(cur: psycopg2.extensions.cursor, project_id: int) -> None:
    cur.execute(
        "SELECT 1 FROM hub_projects WHERE hub_project_id = %s", (project_id,)
    )
    if cur.fetchone() is None:
        raise ProjectNotFoundError(f"Project {project_id} not found")


def get_project_attributes(
    conn: psycopg2.extensions.connection,
    project_id: int,
) -> list[db_models.AttributeDefinition]:
    """The project's selected attributes in display order."""
    with conn.cursor() as cur:
        cur.execute(_PROJECT_ATTRIBUTES, (project_id,))
        rows = cur.fetchall()
    return [database.attribute_from_row(row) for row in rows]


def replace_project_attributes(
    conn: psycopg2.extensions.connection,
    project_id: int,
    attribute_ids: Sequence[int],
) -> list[db_models.AttributeDefinition]:
    """Replace the project's selection with ``attribute_ids``, in order.

    Duplicate ids keep their first position. The delete and the inserts
    commit together or not at all.

    Raises:
        ProjectNotFoundError: If the project doesn't exist.
    """
    unique_ids = list(dict.fromkeys(int(i) for i in attribute_ids))
    try:
        with conn.cursor() as cur:
            _ensure_project(cur, project_id)
            cur.execute(
                "DELETE FROM sat_project_site_attributes "
                "WHERE hub_project_id = %s",
                (project_id,),
            )
            for sort_order, attribute_id in enumerate(unique_ids):
                cur.execute(
                    "INSERT INTO sat_project_site_attributes "
                    "(hub_project_id, attribute_id, sort_order) "
                    "VALUES (%s, %s, %s)",
                    (project_id, attribute_id, sort_order),
                )
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.info(
        "Project {} now shows {} attributes", project_id, len(unique_ids)
    )
    return get_project_attributes(conn, project_id)


def _write_site_links(
    conn: psycopg2.extensions.connection,
    project_id: int,
    site_ids: Sequence[int],
    replace: bool,
) -> int:
    unique_ids = list(dict.fromkeys(int(i) for i in site_ids))
    try:
        with conn.cursor() as cur:
            _ensure_project(cur, project_id)
            if replace:
                cur.execute(
                    "DELETE FROM lnk_project_site WHERE hub_project_id = %s",
                    (project_id,),
                )
            linked = 0
            if unique_ids:
                cur.execute(_LINK_SITES, (project_id, unique_ids))
                linked = len(cur.fetchall())
        conn.commit()
    except psycopg2.errors.ForeignKeyViolation as exc:
        conn.rollback()
        raise UnknownSiteError(
            f"Cannot link unknown sites to project {project_id}"
        ) from exc
    except Exception:
        conn.rollback()
        raise
    return linked


def replace_project_sites(
    conn: psycopg2.extensions.connection,
    project_id: int,
    site_ids: Sequence[int],
) -> int:
    """Make ``site_ids`` the project's complete set of sites.

    The delete and the inserts commit together or not at all.

    Returns:
        Number of sites now linked to the project.

    Raises:
        ProjectNotFoundError: If the project doesn't exist.
        UnknownSiteError: If any site id doesn't exist.
    """
    linked = _write_site_links(conn, project_id, site_ids, replace=True)
    logger.info("Project {} now links {} sites", project_id, linked)
    return linked


def link_project_sites(
    conn: psycopg2.extensions.connection,
    project_id: int,
    site_ids: Sequence[int],
) -> int:
    """Add ``site_ids`` to the project, keeping its existing links.

    Returns:
        Number of sites that were not linked before.
    """
    linked = _write_site_links(conn, project_id, site_ids, replace=False)
    logger.info("Linked {} new sites to project {}", linked, project_id)
    return linked


def link_sites_in_archive(
    archive_path: pathlib.Path,
    settings: config.Settings,
    project_id: int,
    replace: bool = False,
) -> tuple[list[int], int]:
    """Link every site intersecting an uploaded boundary to a project.

    Args:
        archive_path: Zipped boundary shapefile.
        settings: Application settings.
        project_id: Project to link the sites to.
        replace: Drop the project's other site links first.

    Returns:
        The intersecting site ids (ascending) and how many links were
        written.

    Raises:
        MalformedInputError: If the archive can't be decoded.
        EmptyInputError: If it holds no feature with a geometry.
        ProjectNotFoundError: If the project doesn't exist.
    """
    site_ids = spatial.find_sites_in_archive(archive_path, settings)
    with contextlib.closing(database.get_connection(settings)) as conn:
        if replace:
            linked = replace_project_sites(conn, project_id, site_ids)
        else:
            linked = link_project_sites(conn, project_id, site_ids)
    return site_ids, linked


def get_sites_with_attributes(
    conn: psycopg2.extensions.connection,
    project_id: int,
    limit: int,
    offset: int,
    scope: str = "S",
) -> db_models.SitePage:
    """One page of a project's sites with all selected attributes resolved.

    Args:
        conn: Open connection.
        project_id: Project to list.
        limit: Page size; must be positive.
        offset: Number of sites to skip; must not be negative.
        scope: Only selected attributes of this scope are listed.

    Returns:
        SitePage whose rows carry ``id``, ``hub_site_id`` and one
        ``attr_<id>`` entry per attribute, "" where a site has no value.

    Raises:
        ValueError: On a non-positive limit or a negative offset.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if offset < 0:
        raise ValueError("offset must not be negative")

    attributes = [
        attribute
        for attribute in get_project_attributes(conn, project_id)
        if attribute.scope == scope
    ]
    with conn.cursor() as cur:
        cur.execute(
            "SELECT COUNT(*) FROM lnk_project_site WHERE hub_project_id = %s",
            (project_id,),
        )
        total = int(cur.fetchone()[0])
        cur.execute(
            "SELECT hub_site_id FROM lnk_project_site "
            "WHERE hub_project_id = %s ORDER BY hub_site_id "
            "LIMIT %s OFFSET %s",
            (project_id, limit, offset),
        )
        site_ids = [int(row[0]) for row in cur.fetchall()]

    values: dict[int, dict[str, str]] = {}
    if site_ids and attributes:
        values = eav_reader.resolve_attribute_values(conn, attributes, site_ids)

    sites = []
    for site_id in site_ids:
        site_values = values.get(site_id, {})
        row: dict[str, object] = {"id": site_id, "hub_site_id": site_id}
        for attribute in attributes:
            row[attribute.key] = site_values.get(attribute.key, "")
        sites.append(row)

    return db_models.SitePage(
        attributes=attributes,
        sites=sites,
        pagination=db_models.Pagination(
            total=total,
            limit=limit,
            offset=offset,
            page=offset // limit + 1,
            total_pages=math.ceil(total / limit),
        ),
    )
