"""Tests for source CRS resolution in sitehub.services.crs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest
from loguru import logger

from sitehub.services import crs

if TYPE_CHECKING:
    from sitehub.core import config


@pytest.mark.parametrize(
    ("geometry", "expected"),
    [
        ({"type": "Point", "coordinates": [987000.5, 210000.0]}, 987000.5),
        (
            {
                "type": "Polygon",
                "coordinates": [[[-73.9, 40.7], [-73.8, 40.7], [-73.9, 40.8]]],
            },
            -73.9,
        ),
        (
            {
                "type": "GeometryCollection",
                "geometries": [
                    {"type": "Point", "coordinates": []},
                    {"type": "Point", "coordinates": [5, 6]},
                ],
            },
            5.0,
        ),
        ({"type": "Point", "coordinates": []}, None),
        (None, None),
    ],
)
def test_first_coordinate(geometry: dict[str, Any] | None, expected: Any) -> None:
    assert crs.first_coordinate(geometry) == expected


def test_declared_srid_wins_over_magnitude(settings: config.Settings) -> None:
    """A declared geodetic CRS is honoured even for large coordinates."""
    geometry = {"type": "Point", "coordinates": [987000.0, 210000.0]}

    source = crs.resolve_source_crs(geometry, 32618, settings)

    assert source == crs.SourceCRS(is_projected=False, srid=32618, declared=True)


def test_declared_projected_srid_is_not_transformed(
    settings: config.Settings,
) -> None:
    geometry = {"type": "Point", "coordinates": [-73.9, 40.7]}

    source = crs.resolve_source_crs(geometry, settings.projected_srid, settings)

    assert source.is_projected is True
    assert source.srid == settings.projected_srid


@pytest.mark.parametrize(
    ("x", "projected"),
    [(987000.0, True), (-1000.5, True), (1000.0, False), (-73.98, False)],
)
def test_magnitude_heuristic(
    settings: config.Settings,
    x: float,
    projected: bool,
) -> None:
    """Without a declared CRS, |x| > threshold means already projected."""
    source = crs.resolve_source_crs(
        {"type": "Point", "coordinates": [x, 0.0]}, None, settings
    )

    assert source.declared is False
    assert source.is_projected is projected
    expected_srid = settings.projected_srid if projected else settings.geodetic_srid
    assert source.srid == expected_srid


def test_threshold_is_configurable(settings: config.Settings) -> None:
    tuned = settings.model_copy(update={"projected_coordinate_threshold": 10.0})

    source = crs.resolve_source_crs(
        {"type": "Point", "coordinates": [-73.98, 40.7]}, None, tuned
    )

    assert source.is_projected is True


def test_log_guessed_crs_warns_per_srid() -> None:
    messages: list[str] = []
    handler_id = logger.add(messages.append, level="WARNING", format="{message}")
    try:
        crs.log_guessed_crs({4326: 3, 2263: 1}, "parcels.zip")
    finally:
        logger.remove(handler_id)

    assert len(messages) == 2
    assert "EPSG:2263 for 1 geometries" in messages[0]
    assert "EPSG:4326 for 3 geometries" in messages[1]
