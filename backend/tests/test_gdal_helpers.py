"""Unit tests for utilities in sitehub.utils.gdal_helpers.

This module tests the low-level GDAL/OGR command execution helpers:
    - Successful command execution (zero exit code)
    - Failure handling and error message propagation (nonzero exit code)
    - The ogr2ogr invocation used to export shapefiles as GeoJSON

Monkeypatching is used to avoid actual subprocess execution, ensuring tests
are isolated, fast, and reliable.

See Also:
    - backend/sitehub/utils/gdal_helpers.py for implementation details.
"""

from __future__ import annotations

import pathlib
import subprocess
from typing import Any

import pytest

from sitehub.utils import gdal_helpers


def test_run_command_success(monkeypatch: pytest.MonkeyPatch) -> None:
    """Command with zero return code should pass."""
    calls: list[dict[str, Any]] = []

    def fake_run(
        args: list[str],
        **kwargs: Any,
    ) -> subprocess.CompletedProcess[str]:
        """Mock subprocess.run to return a successful CompletedProcess."""
        calls.append({"args": args, **kwargs})
        return subprocess.CompletedProcess(
            args=args,
            returncode=0,
            stdout="ok",
            stderr="",
        )

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    gdal_helpers.run_command(["echo", pathlib.Path("ok")])

    assert calls[0]["args"] == ["echo", "ok"]
    assert calls[0]["check"] is False


def test_run_command_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """Command errors raise CommandError with the stderr message."""

    def fake_run(
        *args: Any,
        **kwargs: Any,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            args=[],
            returncode=1,
            stdout="",
            stderr="  Unable to open datasource  \n",
        )

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="Unable to open"):
        gdal_helpers.run_command(["false"])


def test_run_command_failure_without_stderr(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An empty stderr still produces a readable error."""

    def fake_run(
        *args: Any,
        **kwargs: Any,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            args=[], returncode=2, stdout="", stderr=""
        )

    monkeypatch.setattr(gdal_helpers.subprocess, "run", fake_run)
    with pytest.raises(gdal_helpers.CommandError, match="Unknown command"):
        gdal_helpers.run_command(["false"])


def test_export_geojson_keeps_coordinates(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The export must not reproject and must write the source CRS."""
    captured: list[list[str]] = []

    def fake_run_command(
        command: Any,
        workdir: pathlib.Path | None = None,
    ) -> None:
        captured.append([str(part) for part in command])

    monkeypatch.setattr(gdal_helpers, "run_command", fake_run_command)
    gdal_helpers.export_geojson(
        pathlib.Path("/data/layer.shp"),
        pathlib.Path("/data/layer.geojson"),
    )

    command = captured[0]
    assert command[0] == "ogr2ogr"
    assert "-t_srs" not in command
    assert "RFC7946=NO" in command
    assert "SHAPE_RESTORE_SHX" in command
    assert command[-2:] == ["/data/layer.geojson", "/data/layer.shp"]
