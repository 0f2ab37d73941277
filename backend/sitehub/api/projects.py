"""Project read endpoints and attribute selection.

Example:
    Page through a project's sites with their attribute values:
        >>> response = client.get(
        ...     "/api/projects/7/sites/attributes",
        ...     params={"limit": 50, "offset": 100},
        ... )
        >>> response.json()["pagination"]
        {'total': 431, 'limit': 50, 'offset': 100, 'page': 3, 'total_pages': 9}

    Replace the attributes a project shows:
        >>> client.put(
        ...     "/api/projects/7/attributes", json={"attribute_ids": [3, 17]}
        ... )

    Replace the sites a project covers:
        >>> client.put("/api/projects/7/sites", json={"site_ids": [101, 102]})
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import fastapi
import psycopg2.extensions
import pydantic

from sitehub.core import config
from sitehub.db import database
from sitehub.services import attribute_registry, catalog, spatial

if TYPE_CHECKING:
    from sitehub.db import models as db_models

router = fastapi.APIRouter(prefix="/api", tags=["projects"])


class AttributeSelection(pydantic.BaseModel):
    attribute_ids: list[int]


class SiteSelection(pydantic.BaseModel):
    site_ids: list[int]


def _get_connection(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> Iterator[psycopg2.extensions.connection]:
    """Open a connection for one request and close it afterwards.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Yields:
        psycopg2 connection.
    """
    conn = database.get_connection(settings)
    try:
        yield conn
    finally:
        conn.close()


def _attribute_to_dict(attribute: db_models.AttributeDefinition) -> dict[str, Any]:
    result = dataclasses.asdict(attribute)
    result["key"] = attribute.key
    return result


@router.get("/projects/{project_id}/sites/attributes")
def list_sites_with_attributes(
    project_id: int,
    limit: int = fastapi.Query(100, gt=0, le=10_000),  # noqa: B008
    offset: int = fastapi.Query(0, ge=0),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    conn: psycopg2.extensions.connection = fastapi.Depends(_get_connection),  # noqa: B008
) -> dict[str, Any]:
    """One page of a project's sites with every selected attribute.

    Args:
        project_id: Project to list.
        limit: Page size.
        offset: Number of sites to skip.
        settings: Application settings (injected via FastAPI Depends).
        conn: Database connection (injected via FastAPI Depends).

    Returns:
        ``attributes`` (the project's selection), ``sites`` (one mapping
        per site with an ``attr_<id>`` entry per attribute) and
        ``pagination``.
    """
    page = catalog.get_sites_with_attributes(
        conn,
        project_id,
        limit=limit,
        offset=offset,
        scope=settings.site_attribute_scope,
    )
    return {
        "attributes": [_attribute_to_dict(a) for a in page.attributes],
        "sites": page.sites,
        "pagination": dataclasses.asdict(page.pagination),
    }


@router.get("/projects/{project_id}/sites/clustered")
def get_clustered_sites(
    project_id: int,
    grid_size: float | None = fastapi.Query(None, gt=0),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    conn: psycopg2.extensions.connection = fastapi.Depends(_get_connection),  # noqa: B008
) -> dict[str, Any]:
    """Grid-clustered view of a project's site geometries in EPSG:4326.

    Args:
        project_id: Project to cluster.
        grid_size: Cell size in projected units; the configured default
            when omitted.
        settings: Application settings (injected via FastAPI Depends).
        conn: Database connection (injected via FastAPI Depends).

    Returns:
        Clusters, total site count, bounds, cluster count and grid size.
    """
    result = spatial.cluster_project_sites(
        conn,
        project_id,
        grid_size=grid_size or settings.default_grid_size,
        projected_srid=settings.projected_srid,
        geodetic_srid=settings.geodetic_srid,
    )
    return dataclasses.asdict(result)


@router.get("/projects/{project_id}/attributes")
def list_project_attributes(
    project_id: int,
    conn: psycopg2.extensions.connection = fastapi.Depends(_get_connection),  # noqa: B008
) -> list[dict[str, Any]]:
    """The attributes a project shows, in display order."""
    return [
        _attribute_to_dict(attribute)
        for attribute in catalog.get_project_attributes(conn, project_id)
    ]


@router.put("/projects/{project_id}/attributes")
def replace_project_attributes(
    project_id: int,
    selection: AttributeSelection,
    conn: psycopg2.extensions.connection = fastapi.Depends(_get_connection),  # noqa: B008
) -> list[dict[str, Any]]:
    """Replace the attributes a project shows with an ordered list.

    Raises:
        HTTPException: 404 if the project doesn't exist.
    """
    try:
        attributes = catalog.replace_project_attributes(
            conn, project_id, selection.attribute_ids
        )
    except catalog.ProjectNotFoundError as exc:
        raise fastapi.HTTPException(status_code=404, detail=str(exc)) from exc
    return [_attribute_to_dict(attribute) for attribute in attributes]


@router.get("/attributes")
def list_site_attributes(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    conn: psycopg2.extensions.connection = fastapi.Depends(_get_connection),  # noqa: B008
) -> list[dict[str, Any]]:
    """Every site attribute definition, ordered by name."""
    return [
        _attribute_to_dict(attribute)
        for attribute in attribute_registry.list_site_attributes(
            conn, settings.site_attribute_scope
        )
    ]


@router.put("/projects/{project_id}/sites")
def replace_project_sites(
    project_id: int,
    selection: SiteSelection,
    conn: psycopg2.extensions.connection = fastapi.Depends(_get_connection),  # noqa: B008
) -> dict[str, Any]:
    """Replace the sites linked to a project.

    Raises:
        HTTPException: 404 if the project doesn't exist, 400 if a site id
            is unknown.
    """
    try:
        count = catalog.replace_project_sites(conn, project_id, selection.site_ids)
    except catalog.ProjectNotFoundError as exc:
        raise fastapi.HTTPException(status_code=404, detail=str(exc)) from exc
    except catalog.UnknownSiteError as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc
    return {"project_id": project_id, "count": count}
