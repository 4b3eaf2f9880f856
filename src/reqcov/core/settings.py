"""Process-wide settings for the API and the report services.

Settings are read from the environment once; a configuration that fails
validation stops the process before any request is served.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from reqcov.core.config import ConfigValidationError, Settings, validate_settings

logger = logging.getLogger(__name__)


def _validation_problems(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in item['loc']) or 'settings'}: {item['msg']}"
        for item in error.errors()
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, check and memoize the settings.

    Raises:
        SystemExit: When the environment holds an invalid configuration.
    """
    try:
        settings = Settings()
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Invalid configuration: %s", _validation_problems(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical("Invalid configuration: %s: %s", e.field or "settings", e.message)
        raise SystemExit(1) from e

    logger.info(
        "Using backend %s (environment=%s, max_concurrency=%d, ingestion bucket=%s)",
        settings.backend.org_url,
        settings.environment.value,
        settings.backend.max_concurrency,
        settings.ingestion.bucket,
    )
    return settings


def clear_settings_cache() -> None:
    """Forget the memoized settings so the next call re-reads the environment."""
    get_settings.cache_clear()
