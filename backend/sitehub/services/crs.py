"""Source CRS resolution for uploaded geometries.

Site geometries are stored in one projected CRS (``projected_srid``).
Uploaded geometries either declare their CRS through a ``.prj`` or don't;
in the latter case the magnitude of the first coordinate decides between
"already projected" and "longitude/latitude". The heuristic is only a
fallback and every decision it makes is logged.
"""

from __future__ import annotations

import dataclasses
import numbers
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from sitehub.core import config
    from sitehub.db import models as db_models


@dataclasses.dataclass(frozen=True)
class SourceCRS:
    """How a geometry's coordinates must be read before storage.

    Attributes:
        is_projected: Coordinates are already in the store's projected SRID.
        srid: SRID the coordinates are expressed in.
        declared: True if the SRID came from the file, False if guessed.
    """

    is_projected: bool
    srid: int
    declared: bool


def first_coordinate(geometry: db_models.GeoJSON | None) -> float | None:
    """Return the first ordinate found in a GeoJSON geometry, if any."""
    if not geometry:
        return None
    if geometry.get("type") == "GeometryCollection":
        for member in geometry.get("geometries") or []:
            value = first_coordinate(member)
            if value is not None:
                return value
        return None

    node: Any = geometry.get("coordinates")
    while isinstance(node, list | tuple) and node:
        node = node[0]
    if isinstance(node, numbers.Real) and not isinstance(node, bool):
        return float(node)
    return None


def resolve_source_crs(
    geometry: db_models.GeoJSON | None,
    declared_srid: int | None,
    settings: config.Settings,
) -> SourceCRS:
    """Decide which CRS a geometry's coordinates are in.

    A declared SRID always wins. Without one, a first coordinate whose
    absolute value exceeds ``settings.projected_coordinate_threshold`` is
    read as already projected; anything else as ``settings.geodetic_srid``.

    Args:
        geometry: GeoJSON geometry to classify.
        declared_srid: EPSG code from the source file, or None.
        settings: Supplies the projected/geodetic SRIDs and threshold.

    Returns:
        SourceCRS describing the decision.
    """
    if declared_srid is not None:
        return SourceCRS(
            is_projected=declared_srid == settings.projected_srid,
            srid=declared_srid,
            declared=True,
        )

    value = first_coordinate(geometry)
    if value is not None and abs(value) > settings.projected_coordinate_threshold:
        return SourceCRS(
            is_projected=True, srid=settings.projected_srid, declared=False
        )
    return SourceCRS(
        is_projected=False, srid=settings.geodetic_srid, declared=False
    )


def log_guessed_crs(guessed: dict[int, int], source_name: str) -> None:
    """Warn once per import about geometries whose CRS was guessed.

    Args:
        guessed: Count of guessed geometries per resulting SRID.
        source_name: Upload name, for the log line.
    """
    for srid, count in sorted(guessed.items()):
        logger.warning(
            "{}: no declared CRS, assumed EPSG:{} for {} geometries "
            "from coordinate magnitude",
            source_name,
            srid,
            count,
        )
