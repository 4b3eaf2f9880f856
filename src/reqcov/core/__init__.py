"""reqcov core module.

Shared components used across the services:
- Configuration management
- Typed entities
"""

from reqcov.core.config import (
    BackendSettings,
    ConfigValidationError,
    CoverageSettings,
    Environment,
    IngestionSettings,
    S3Settings,
    Settings,
)
from reqcov.core.settings import (
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "BackendSettings",
    "ConfigValidationError",
    "CoverageSettings",
    "Environment",
    "IngestionSettings",
    "S3Settings",
    "Settings",
    "clear_settings_cache",
    "get_settings",
]
