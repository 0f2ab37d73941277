"""FastAPI application entrypoint and configuration.

This module provides the application factory that configures logging,
sets up CORS middleware, includes the import and project routers, and
exposes a health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn sitehub.main:app --reload

    Or imported and used programmatically:
        >>> from sitehub.main import app
        >>> # Use app in ASGI server
"""

import fastapi
from fastapi.middleware import cors

from sitehub.api import imports, projects
from sitehub.core import config
from sitehub.core import logging as core_logging


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures the loguru sink at the configured level, includes the
    import and project routers, and adds CORS middleware and a health
    check endpoint.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    core_logging.configure_logging(settings.log_level)
    app = fastapi.FastAPI(title="Site Hub", version="0.1.0")

    app.include_router(imports.router)
    app.include_router(projects.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
