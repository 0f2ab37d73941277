"""Zipped shapefile decoding and feature normalization.

Uploaded archives hold a ``.shp`` geometry file and usually a ``.dbf``
attribute table, plus optional ``.shx``/``.prj``/``.cpg`` sidecars. The
members are matched by extension, case-insensitively, extracted under a
common stem and handed to ``ogr2ogr``, which exports the layer as GeoJSON
without touching the coordinates. The GeoJSON is then read back into
Feature objects.

Example:
    Read an archive and collapse it to one geometry:
        >>> from sitehub.services import feature_parser
        >>> collection = feature_parser.read_features(
        ...     Path("parcels.zip"), workdir=Path("/tmp/uploads")
        ... )
        >>> geometry = feature_parser.combine_geometries(collection.features)
"""

from __future__ import annotations

import json
import pathlib
import re
import shutil
import tempfile
import zipfile
from typing import TYPE_CHECKING, Any

from loguru import logger

from sitehub.db import models as db_models
from sitehub.utils import gdal_helpers

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

SIDECAR_SUFFIXES = (".dbf", ".shx", ".prj", ".cpg")

_EPSG_NAME = re.compile(r"EPSG:+(?:[\d.]*:)?(\d+)$", re.IGNORECASE)
_CRS84_NAMES = {
    "urn:ogc:def:crs:ogc:1.3:crs84",
    "urn:ogc:def:crs:ogc::crs84",
    "crs84",
}


class MalformedInputError(ValueError):
    """The upload is not a readable zipped shapefile."""


class EmptyInputError(ValueError):
    """The upload decoded fine but holds no usable features."""


def _pick_member(
    names: Sequence[str],
    suffix: str,
    stem: str | None = None,
) -> str | None:
    """Return the first archive member ending in ``suffix``.

    Members whose stem equals ``stem`` (case-insensitively) are preferred.
    """
    candidates = [
        name
        for name in names
        if name.lower().endswith(suffix)
        and not name.endswith("/")
        and not pathlib.PurePosixPath(name).name.startswith("._")
    ]
    if stem is not None:
        for name in candidates:
            if pathlib.PurePosixPath(name).stem.lower() == stem.lower():
                return name
    return candidates[0] if candidates else None


def extract_shapefile(
    archive_path: pathlib.Path,
    workdir: pathlib.Path,
) -> pathlib.Path:
    """Extract the shapefile members of ``archive_path`` into ``workdir``.

    Members are written as ``layer.<ext>`` so the geometry file and its
    sidecars always share a stem, whatever they were called in the archive.

    Args:
        archive_path: Zip archive uploaded by the user.
        workdir: Existing directory to extract into.

    Returns:
        Path of the extracted ``.shp`` file.

    Raises:
        MalformedInputError: If the file is not a zip or has no ``.shp``.
    """
    try:
        archive = zipfile.ZipFile(archive_path)
    except (zipfile.BadZipFile, OSError) as exc:
        raise MalformedInputError(
            f"Failed to parse shapefile: {archive_path.name} is not a zip archive"
        ) from exc

    with archive:
        names = archive.namelist()
        shp_member = _pick_member(names, ".shp")
        if shp_member is None:
            raise MalformedInputError(
                "No .shp file found in the uploaded zip"
            )

        stem = pathlib.PurePosixPath(shp_member).stem
        members = {".shp": shp_member}
        for suffix in SIDECAR_SUFFIXES:
            member = _pick_member(names, suffix, stem)
            if member is not None:
                members[suffix] = member

        for suffix, member in members.items():
            target = workdir / f"layer{suffix}"
            with archive.open(member) as source, target.open("wb") as sink:
                shutil.copyfileobj(source, sink)

    if ".dbf" not in members:
        logger.warning(
            "Archive {} has no .dbf; features will carry no attributes",
            archive_path.name,
        )
    return workdir / "layer.shp"


def parse_declared_srid(crs: dict[str, Any] | None) -> int | None:
    """Extract an EPSG code from a GeoJSON ``crs`` member.

    Args:
        crs: The ``crs`` object GDAL writes for non-WGS84 layers, e.g.
            ``{"type": "name", "properties":
            {"name": "urn:ogc:def:crs:EPSG::2263"}}``.

    Returns:
        The EPSG code, 4326 for CRS84 names, or None if absent/unknown.
    """
    if not crs:
        return None
    name = str((crs.get("properties") or {}).get("name") or "").strip()
    if not name:
        return None
    if name.lower() in _CRS84_NAMES:
        return 4326
    match = _EPSG_NAME.search(name)
    return int(match.group(1)) if match else None


def read_features(
    archive_path: pathlib.Path,
    workdir: pathlib.Path,
) -> db_models.FeatureCollection:
    """Decode a zipped shapefile into an ordered FeatureCollection.

    Args:
        archive_path: Zip archive containing at least a ``.shp`` file.
        workdir: Directory under which a scratch directory is created and
            removed again once the features are in memory.

    Returns:
        FeatureCollection with features in file order and the declared
        CRS, if the archive carried a ``.prj`` GDAL could identify.

    Raises:
        MalformedInputError: If the archive or the shapefile can't be read.
    """
    workdir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(dir=workdir) as scratch:
        scratch_dir = pathlib.Path(scratch)
        shp_path = extract_shapefile(archive_path, scratch_dir)
        geojson_path = scratch_dir / "layer.geojson"
        try:
            gdal_helpers.export_geojson(shp_path, geojson_path)
            document = json.loads(geojson_path.read_text(encoding="utf-8"))
        except (gdal_helpers.CommandError, OSError, ValueError) as exc:
            raise MalformedInputError(
                f"Failed to parse shapefile: {exc}"
            ) from exc

    features = [
        db_models.Feature(
            geometry=raw.get("geometry") or None,
            properties=dict(raw.get("properties") or {}),
        )
        for raw in document.get("features") or []
    ]
    declared_srid = parse_declared_srid(document.get("crs"))
    logger.info(
        "Read {} features from {} (declared SRID: {})",
        len(features),
        archive_path.name,
        declared_srid,
    )
    return db_models.FeatureCollection(
        features=features,
        declared_srid=declared_srid,
        source_name=archive_path.name,
    )


def combine_geometries(
    features: Iterable[db_models.Feature],
) -> db_models.GeoJSON:
    """Reduce features to one geometry for an intersection query.

    A single remaining geometry is returned as-is; several become an
    unordered ``GeometryCollection``. Features without geometry are dropped.

    Raises:
        EmptyInputError: If no feature has a geometry.
    """
    geometries = [f.geometry for f in features if f.geometry]
    if not geometries:
        raise EmptyInputError("Shapefile contains no features")
    if len(geometries) == 1:
        return geometries[0]
    return {"type": "GeometryCollection", "geometries": geometries}
