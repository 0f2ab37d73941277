"""Tests for zipped shapefile decoding in sitehub.services.feature_parser.

Archives are built on the fly with zipfile. GDAL is never invoked: the
``run_command`` helper is monkeypatched to write the GeoJSON that ogr2ogr
would have produced, so the tests exercise member selection, CRS parsing,
error translation and geometry reduction in isolation.
"""

from __future__ import annotations

import json
import pathlib
import zipfile
from typing import Any

import pytest

from sitehub.db import models as db_models
from sitehub.services import feature_parser
from sitehub.utils import gdal_helpers


def _make_zip(path: pathlib.Path, members: dict[str, bytes]) -> pathlib.Path:
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return path


def _fake_ogr2ogr(
    monkeypatch: pytest.MonkeyPatch,
    document: dict[str, Any],
    seen: list[list[str]] | None = None,
) -> None:
    def fake_run_command(
        command: Any,
        workdir: pathlib.Path | None = None,
    ) -> None:
        args = [str(part) for part in command]
        if seen is not None:
            seen.append(args)
        pathlib.Path(args[-2]).write_text(json.dumps(document), encoding="utf-8")

    monkeypatch.setattr(gdal_helpers, "run_command", fake_run_command)


POINT = {"type": "Point", "coordinates": [987000.0, 210000.0]}


def test_extract_shapefile_matches_members_case_insensitively(
    tmp_path: pathlib.Path,
) -> None:
    """The .shp and its sidecars are renamed to a common stem."""
    archive = _make_zip(
        tmp_path / "upload.zip",
        {
            "data/Parcels.SHP": b"shp",
            "data/Parcels.DBF": b"dbf",
            "data/other.dbf": b"wrong",
            "data/Parcels.prj": b"prj",
            "__MACOSX/data/._Parcels.shx": b"junk",
        },
    )
    workdir = tmp_path / "out"
    workdir.mkdir()

    shp = feature_parser.extract_shapefile(archive, workdir)

    assert shp == workdir / "layer.shp"
    assert (workdir / "layer.dbf").read_bytes() == b"dbf"
    assert (workdir / "layer.prj").read_bytes() == b"prj"
    assert not (workdir / "layer.shx").exists()


def test_extract_shapefile_first_shp_wins(tmp_path: pathlib.Path) -> None:
    archive = _make_zip(
        tmp_path / "upload.zip",
        {"a.shp": b"first", "b.shp": b"second", "b.dbf": b"b", "a.dbf": b"a"},
    )
    workdir = tmp_path / "out"
    workdir.mkdir()

    feature_parser.extract_shapefile(archive, workdir)

    assert (workdir / "layer.shp").read_bytes() == b"first"
    assert (workdir / "layer.dbf").read_bytes() == b"a"


def test_extract_shapefile_without_shp(tmp_path: pathlib.Path) -> None:
    archive = _make_zip(tmp_path / "upload.zip", {"readme.txt": b"hi"})

    with pytest.raises(feature_parser.MalformedInputError, match="No .shp"):
        feature_parser.extract_shapefile(archive, tmp_path)


def test_extract_shapefile_not_a_zip(tmp_path: pathlib.Path) -> None:
    archive = tmp_path / "upload.zip"
    archive.write_bytes(b"definitely not a zip")

    with pytest.raises(feature_parser.MalformedInputError):
        feature_parser.extract_shapefile(archive, tmp_path)


@pytest.mark.parametrize(
    ("crs", "expected"),
    [
        (None, None),
        ({"type": "name", "properties": {"name": "EPSG:2263"}}, 2263),
        (
            {
                "type": "name",
                "properties": {"name": "urn:ogc:def:crs:EPSG::2263"},
            },
            2263,
        ),
        (
            {
                "type": "name",
                "properties": {"name": "urn:ogc:def:crs:EPSG:6.3:32618"},
            },
            32618,
        ),
        (
            {
                "type": "name",
                "properties": {"name": "urn:ogc:def:crs:OGC:1.3:CRS84"},
            },
            4326,
        ),
        ({"type": "name", "properties": {"name": "LOCAL_CS"}}, None),
        ({"type": "name", "properties": {}}, None),
    ],
)
def test_parse_declared_srid(
    crs: dict[str, Any] | None,
    expected: int | None,
) -> None:
    assert feature_parser.parse_declared_srid(crs) == expected


def test_read_features_returns_features_in_file_order(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """Features keep file order, null shapes survive as None geometry."""
    archive = _make_zip(
        tmp_path / "parcels.zip", {"parcels.shp": b"", "parcels.dbf": b""}
    )
    seen: list[list[str]] = []
    _fake_ogr2ogr(
        monkeypatch,
        {
            "type": "FeatureCollection",
            "crs": {
                "type": "name",
                "properties": {"name": "urn:ogc:def:crs:EPSG::2263"},
            },
            "features": [
                {"type": "Feature", "geometry": POINT, "properties": {"a": 1}},
                {"type": "Feature", "geometry": None, "properties": None},
            ],
        },
        seen,
    )

    collection = feature_parser.read_features(archive, tmp_path / "work")

    assert collection.declared_srid == 2263
    assert collection.source_name == "parcels.zip"
    assert [f.geometry for f in collection.features] == [POINT, None]
    assert collection.features[0].properties == {"a": 1}
    assert collection.features[1].properties == {}
    assert seen[0][0] == "ogr2ogr"
    # scratch directory is cleaned up
    assert list((tmp_path / "work").iterdir()) == []


def test_read_features_translates_gdal_failure(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    archive = _make_zip(tmp_path / "broken.zip", {"broken.shp": b"garbage"})

    def failing_run_command(
        command: Any,
        workdir: pathlib.Path | None = None,
    ) -> None:
        raise gdal_helpers.CommandError("Unable to open datasource")

    monkeypatch.setattr(gdal_helpers, "run_command", failing_run_command)

    with pytest.raises(
        feature_parser.MalformedInputError, match="Unable to open datasource"
    ):
        feature_parser.read_features(archive, tmp_path / "work")


def test_combine_single_geometry_is_returned_as_is() -> None:
    features = [
        db_models.Feature(geometry=None),
        db_models.Feature(geometry=POINT),
    ]

    assert feature_parser.combine_geometries(features) == POINT


def test_combine_many_geometries_into_collection() -> None:
    other = {"type": "Point", "coordinates": [1.0, 2.0]}
    combined = feature_parser.combine_geometries(
        [db_models.Feature(geometry=POINT), db_models.Feature(geometry=other)]
    )

    assert combined == {
        "type": "GeometryCollection",
        "geometries": [POINT, other],
    }


def test_combine_without_geometries_is_empty_input() -> None:
    with pytest.raises(feature_parser.EmptyInputError):
        feature_parser.combine_geometries([db_models.Feature(geometry=None)])
