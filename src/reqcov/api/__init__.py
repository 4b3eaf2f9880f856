"""reqcov API service.

FastAPI application exposing the reconciliation engine:
- L2 requirement coverage report
- Internal (mentioned vs linked) validation report
- External spreadsheet pre-validation

This module provides the app factory used by the ASGI entry point and tests.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from reqcov import __version__
from reqcov.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from reqcov.api.routers import reports_router
from reqcov.core.config import Settings

logger = logging.getLogger(__name__)

API_TITLE = "reqcov API"
API_DESCRIPTION = """
Requirement coverage reconciliation for test plans.

## Endpoints

- **/reports/coverage** - L2 coverage rows with run status, bugs and L3/L4 links
- **/reports/validation** - requirement codes mentioned in steps vs formally linked
- **/reports/external-files/validate** - header and location checks for uploaded tables

## Documentation

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
- ReDoc: `/api/redoc`
"""


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Settings to serve with. Defaults to settings loaded from the
            environment; pass explicit settings for tests.

    Returns:
        Configured FastAPI application.

    Example:
        app = create_app(Settings(backend=BackendSettings(org_url="https://ado.example/org/")))
    """
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=settings.app_version or __version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    app.state.settings = settings

    # first added is innermost
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(reports_router)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Liveness probe."""
        return {"status": "healthy"}

    logger.info("reqcov API application created (version=%s)", app.version)
    return app
