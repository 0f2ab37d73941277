"""Tests for the FastAPI main application factory and health checks.

This module validates that:
    - The FastAPI app is correctly instantiated via main.create_app,
    - OpenAPI metadata (title, version) matches the project contract,
    - The import and project routers are registered,
    - The /health endpoint returns the expected response.

See Also:
    - backend/sitehub/main.py for the application factory.
"""

from __future__ import annotations

from typing import cast

from fastapi import testclient

from sitehub import main


def test_create_app() -> None:
    """Test that create_app returns a configured FastAPI instance."""
    app = main.create_app()
    assert app is not None
    assert app.title == "Site Hub"
    assert app.version == "0.1.0"


def test_health_endpoint() -> None:
    """Test the health check endpoint returns ok status."""
    app = main.create_app()
    client = testclient.TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_app_includes_routers() -> None:
    """Test that all API routers are included in the app."""
    app = main.create_app()
    routes: list[str] = [
        cast(str, getattr(route, "path", ""))
        for route in app.routes  # type: ignore[attr-defined]
        if hasattr(route, "path")
    ]
    assert "/health" in routes
    for path in (
        "/api/imports/shapefile",
        "/api/sites/intersecting",
        "/api/projects/{project_id}/sites/attributes",
        "/api/projects/{project_id}/sites/clustered",
        "/api/projects/{project_id}/attributes",
        "/api/projects/{project_id}/sites",
        "/api/projects/{project_id}/sites/intersecting",
        "/api/attributes",
    ):
        assert path in routes
