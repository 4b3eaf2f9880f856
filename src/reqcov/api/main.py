"""reqcov API entry point.

This module provides the application instance for ASGI servers (uvicorn)
and a run() function for direct execution.
"""

import logging

from reqcov.api import create_app
from reqcov.core.settings import get_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# uvicorn reference: reqcov.api.main:app
app = create_app(get_settings())


def run() -> None:
    """Run the API server using uvicorn.

    Called by the reqcov-api console script defined in pyproject.toml.
    """
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    logger.info("Starting reqcov API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "reqcov.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
