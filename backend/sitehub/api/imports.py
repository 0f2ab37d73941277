"""Shapefile upload endpoints: project import and boundary queries.

Every endpoint here takes a zipped shapefile as a multipart upload, streams
it to the storage directory under a unique name, and removes it again once
the request is done.

Example:
    Import an archive as a new project:
        >>> response = client.post(
        ...     "/api/imports/shapefile",
        ...     files={"file": ("parcels.zip", open("parcels.zip", "rb"))},
        ...     data={"project_name": "Parcels"},
        ... )
        >>> response.json()["entities_created"]
        1204

    Find existing sites inside an uploaded boundary:
        >>> response = client.post(
        ...     "/api/sites/intersecting",
        ...     files={"file": ("area.zip", open("area.zip", "rb"))},
        ... )
        >>> response.json()
        {'site_ids': [101, 102], 'count': 2}
"""

from __future__ import annotations

import dataclasses
import pathlib
import shutil
import tempfile
import uuid
from typing import Any

import fastapi

from sitehub.core import config
from sitehub.services import bulk_load, catalog, feature_parser, spatial

router = fastapi.APIRouter(prefix="/api", tags=["imports"])


def _save_upload(
    file: fastapi.UploadFile,
    storage_dir: pathlib.Path,
    max_size: int,
) -> pathlib.Path:
    """Persist an uploaded archive to disk with size validation.

    Args:
        file: FastAPI UploadFile object containing the file data.
        storage_dir: Directory where the file should be saved.
        max_size: Maximum allowed file size in bytes.

    Returns:
        Path to the saved file, unique per upload.

    Raises:
        HTTPException: 400 if the upload is not a ``.zip``, 413 if it
            exceeds the maximum size limit.
    """
    filename = pathlib.PurePath(file.filename or "").name
    if not filename.lower().endswith(".zip"):
        raise fastapi.HTTPException(
            status_code=400,
            detail="Please upload a zipped shapefile (.zip)",
        )

    storage_dir.mkdir(parents=True, exist_ok=True)
    target_path = storage_dir / f"{uuid.uuid4().hex}_{filename}"
    with tempfile.NamedTemporaryFile(delete=False, dir=storage_dir) as tmp:
        size = 0
        try:
            for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
                size += len(chunk)
                if size > max_size:
                    raise fastapi.HTTPException(
                        status_code=413,
                        detail="Upload too large",
                    )

                tmp.write(chunk)
        except fastapi.HTTPException:
            pathlib.Path(tmp.name).unlink(missing_ok=True)
            raise

        tmp.flush()

    shutil.move(tmp.name, target_path)

    return target_path


@router.post("/imports/shapefile")
def import_shapefile(
    file: fastapi.UploadFile,
    project_name: str | None = fastapi.Form(None),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, Any]:
    """Import a zipped shapefile as a new project.

    Every feature with a geometry becomes a new site linked to the new
    project; every non-empty field becomes an attribute value.

    Args:
        file: Zipped shapefile from multipart form data.
        project_name: Optional project name; generated when omitted.
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        The import summary: project id and name, lineage id, counts of
        created and skipped sites, the attributes used and elapsed time.

    Raises:
        HTTPException: 400 for an unreadable or empty shapefile, 413 for an
            oversized upload, 500 (with the failing stage) when the import
            was rolled back.
    """
    saved_path = _save_upload(
        file,
        settings.storage_dir,
        settings.max_upload_size_bytes,
    )
    try:
        summary = bulk_load.import_archive(
            saved_path,
            settings,
            project_name=(project_name or "").strip() or None,
        )
    except (
        feature_parser.MalformedInputError,
        feature_parser.EmptyInputError,
    ) as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc
    except bulk_load.ImportStageError as exc:
        raise fastapi.HTTPException(
            status_code=500,
            detail={"message": str(exc), "stage": exc.stage},
        ) from exc
    finally:
        saved_path.unlink(missing_ok=True)

    return dataclasses.asdict(summary)


@router.post("/sites/intersecting")
def find_intersecting_sites(
    file: fastapi.UploadFile,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, Any]:
    """List existing sites whose geometry intersects the uploaded shapes.

    Args:
        file: Zipped shapefile from multipart form data.
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        ``{"site_ids": [...], "count": n}`` with ids ascending.

    Raises:
        HTTPException: 400 for an unreadable or empty shapefile, 413 for an
            oversized upload.
    """
    saved_path = _save_upload(
        file,
        settings.storage_dir,
        settings.max_upload_size_bytes,
    )
    try:
        site_ids = spatial.find_sites_in_archive(saved_path, settings)
    except (
        feature_parser.MalformedInputError,
        feature_parser.EmptyInputError,
    ) as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        saved_path.unlink(missing_ok=True)

    return {"site_ids": site_ids, "count": len(site_ids)}


@router.post("/projects/{project_id}/sites/intersecting")
def link_intersecting_sites(
    project_id: int,
    file: fastapi.UploadFile,
    replace: bool = fastapi.Form(False),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, Any]:
    """Link the sites inside the uploaded shapes to an existing project.

    Args:
        project_id: Project to link the sites to.
        file: Zipped shapefile from multipart form data.
        replace: Drop the project's other site links first.
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        ``{"project_id": id, "site_ids": [...], "count": n, "linked": m}``
        where ``linked`` counts the links actually written.

    Raises:
        HTTPException: 400 for an unreadable or empty shapefile, 404 for an
            unknown project, 413 for an oversized upload.
    """
    saved_path = _save_upload(
        file,
        settings.storage_dir,
        settings.max_upload_size_bytes,
    )
    try:
        site_ids, linked = catalog.link_sites_in_archive(
            saved_path, settings, project_id, replace=replace
        )
    except (
        feature_parser.MalformedInputError,
        feature_parser.EmptyInputError,
    ) as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc
    except catalog.ProjectNotFoundError as exc:
        raise fastapi.HTTPException(status_code=404, detail=str(exc)) from exc
    finally:
        saved_path.unlink(missing_ok=True)

    return {
        "project_id": project_id,
        "site_ids": site_ids,
        "count": len(site_ids),
        "linked": linked,
    }
