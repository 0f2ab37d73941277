"""Safe execution wrapper for GDAL/OGR command-line utilities.

This module runs GDAL tools (``ogr2ogr`` in practice) as subprocesses and
turns a non-zero exit into a CommandError carrying the tool's stderr. It
also knows how to export a shapefile layer to GeoJSON, which is how the
feature parser reads uploaded archives.

Example:
    Export a shapefile to GeoJSON:
        >>> from sitehub.utils.gdal_helpers import export_geojson
        >>> export_geojson(Path("parcels.shp"), Path("parcels.geojson"))
"""

from __future__ import annotations

import subprocess
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable


class CommandError(RuntimeError):
    """Exception raised when a GDAL/OGR subprocess command fails.

    Contains the error message from the failed command's stderr output.
    """


def run_command(
    command: Iterable[str | pathlib.Path],
    workdir: pathlib.Path | None = None,
) -> None:
    """Execute a command and raise on non-zero exit.

    Args:
        command: Iterable arguments to execute (e.g., ["ogr2ogr", "-f", ...]).
        workdir: Optional working directory for the command execution.

    Raises:
        CommandError: if the command exits with a non-zero status code.
            The exception message contains the stderr output from the command.
    """
    args = [str(part) for part in command]
    logger.debug("Running {}", " ".join(args))
    result = subprocess.run(
        args,
        cwd=workdir,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise CommandError(result.stderr.strip() or "Unknown command failure")


def export_geojson(
    source_path: pathlib.Path,
    target_path: pathlib.Path,
) -> None:
    """Write the first layer of ``source_path`` as a GeoJSON file.

    Coordinates are written as stored, with no reprojection. GDAL adds a
    ``crs`` member when the source declares a non-WGS84 CRS. A missing
    ``.shx`` index is rebuilt from the ``.shp`` on the fly.

    Args:
        source_path: Shapefile (``.shp``) to read.
        target_path: GeoJSON file to create; overwritten if present.

    Raises:
        CommandError: If ogr2ogr cannot read or convert the source.
    """
    command = (
        "ogr2ogr",
        "--config",
        "SHAPE_RESTORE_SHX",
        "YES",
        "-f",
        "GeoJSON",
        "-lco",
        "RFC7946=NO",
        "-lco",
        "WRITE_NAME=NO",
        str(target_path),
        str(source_path),
    )
    run_command(command)
