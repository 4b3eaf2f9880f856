"""reqcov API routers."""

from reqcov.api.routers.reports import router as reports_router

__all__ = [
    "reports_router",
]
