"""Configuration management for the reconciliation engine.

This module provides centralized configuration using Pydantic Settings,
covering the test-management backend connection, the object store holding
externally supplied spreadsheets, and the reconciliation rules that are
backend-specific (relation-type allow-lists, terminal work-item states).

All configuration is loaded from environment variables with the REQCOV_ prefix.
Nested settings use double underscore as delimiter (e.g., REQCOV_BACKEND__ORG_URL).

Example:
    export REQCOV_ENVIRONMENT=dev
    export REQCOV_BACKEND__ORG_URL=https://dev.azure.com/my-org/
    export REQCOV_BACKEND__TOKEN=...
"""

from __future__ import annotations

import logging
from enum import Enum
from functools import cached_property
from typing import Annotated, Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_INGESTION_BUCKET = "mewp-external-ingestion"
DEFAULT_MAX_FILE_SIZE_BYTES = 20 * 1024 * 1024


class Environment(str, Enum):
    """Deployment environment.

    Affects default behaviors and validation strictness.
    """

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class BackendSettings(BaseSettings):
    """Test-management backend connection settings.

    Every upstream fetch goes through a single client that enforces the
    concurrency cap and the per-fetch timeout configured here.
    """

    model_config = SettingsConfigDict(
        env_prefix="REQCOV_BACKEND__",
        extra="ignore",
    )

    org_url: str = Field(
        default="https://dev.azure.com/org/",
        description="Organization base URL, with trailing slash",
    )
    token: SecretStr = Field(
        default=SecretStr(""),
        description="Personal access token used as the basic-auth password",
    )
    timeout: Annotated[float, Field(gt=0, le=600)] = Field(
        default=30.0,
        description="Per-fetch timeout in seconds",
    )
    max_concurrency: Annotated[int, Field(ge=1, le=100)] = Field(
        default=10,
        description="Maximum number of in-flight upstream fetches",
    )
    cache_ttl_seconds: Annotated[float, Field(ge=0, le=3600)] = Field(
        default=30.0,
        description="Lifetime of cached read-only lookups (0 disables caching)",
    )
    batch_size: Annotated[int, Field(ge=1, le=200)] = Field(
        default=200,
        description="Work items requested per batch fetch",
    )

    @field_validator("org_url")
    @classmethod
    def ensure_trailing_slash(cls, v: str) -> str:
        """Normalize the organization URL so paths can be appended directly."""
        v = v.strip()
        if not v:
            msg = "Backend organization URL cannot be empty"
            raise ValueError(msg)
        return v if v.endswith("/") else f"{v}/"


class S3Settings(BaseSettings):
    """S3-compatible object storage settings.

    External bug and L3/L4 spreadsheets are uploaded to a dedicated bucket
    and downloaded from there by the ingestor. In development, MinIO provides
    S3-compatible storage.
    """

    model_config = SettingsConfigDict(
        env_prefix="REQCOV_S3__",
        extra="ignore",
    )

    endpoint: str = Field(
        default="http://localhost:9000",
        description="S3-compatible endpoint URL",
    )
    access_key: SecretStr = Field(
        default=SecretStr(""),
        description="Access key for S3 authentication",
    )
    secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Secret key for S3 authentication",
    )
    region: str = Field(
        default="us-east-1",
        description="S3 region (use us-east-1 for MinIO)",
    )
    secure: bool = Field(
        default=False,
        description="Use HTTPS for S3 connections (True for production)",
    )


class IngestionSettings(BaseSettings):
    """Rules applied to externally supplied spreadsheets.

    Files are only accepted from the dedicated bucket and object prefix, with
    an allow-listed extension and below the size ceiling.
    """

    model_config = SettingsConfigDict(
        env_prefix="REQCOV_INGESTION__",
        extra="ignore",
    )

    bucket: str = Field(
        default=DEFAULT_INGESTION_BUCKET,
        description="Only bucket external files may be read from",
    )
    path_marker: str = Field(
        default=f"/{DEFAULT_INGESTION_BUCKET}/",
        description="Path segment every accepted object key must contain",
    )
    source_type: str = Field(
        default="mewpExternalIngestion",
        description="Expected sourceType on file references, when one is given",
    )
    max_file_size_bytes: Annotated[int, Field(ge=1)] = Field(
        default=DEFAULT_MAX_FILE_SIZE_BYTES,
        description="Maximum accepted file size in bytes",
    )
    allowed_extensions: list[str] = Field(
        default=[".xlsx", ".xls", ".csv"],
        description="Accepted file extensions (lowercase, leading dot)",
    )
    terminal_states: list[str] = Field(
        default=["closed", "resolved", "removed"],
        description="Work-item states that take a bug or L3/L4 link out of scope",
    )

    @field_validator("allowed_extensions", "terminal_states")
    @classmethod
    def lowercase_entries(cls, v: list[str]) -> list[str]:
        """Compare extensions and states case-insensitively."""
        return [item.strip().lower() for item in v if item.strip()]

    @field_validator("bucket")
    @classmethod
    def validate_bucket_name(cls, v: str) -> str:
        """Validate S3 bucket naming rules."""
        if len(v) < 3 or len(v) > 63:
            msg = "Bucket name must be 3-63 characters"
            raise ValueError(msg)
        return v


class CoverageSettings(BaseSettings):
    """Backend-specific reconciliation rules.

    The relation types that count as formal requirement coverage depend on the
    backend's relation-type schema, so they are kept configurable.
    """

    model_config = SettingsConfigDict(
        env_prefix="REQCOV_COVERAGE__",
        extra="ignore",
    )

    requirement_relation_types: list[str] = Field(
        default=["Microsoft.VSTS.Common.TestedBy-Reverse"],
        description="Test-case relation types that mean 'verifies this requirement'",
    )
    bug_relation_types: list[str] = Field(
        default=["System.LinkTypes.Related", "Microsoft.VSTS.Common.TestedBy-Forward"],
        description="Test-case relation types that link a bug",
    )
    test_case_relation_types: list[str] = Field(
        default=["Microsoft.VSTS.Common.TestedBy-Forward"],
        description="Requirement relation types that point at verifying test cases",
    )
    requirement_work_item_type: str = Field(
        default="Requirement",
        description="Work-item type of L2 requirements",
    )
    requirement_area_marker: str = Field(
        default="Customer Requirements\\Level 2",
        description="Area-path fragment selecting L2 requirements",
    )
    use_backend_bugs_without_external_file: bool = Field(
        default=False,
        description="Build bug rows from backend-linked bugs when no bug file is supplied",
    )


class Settings(BaseSettings):
    """Main configuration container.

    Loads all configuration from environment variables with REQCOV_ prefix.
    Nested settings use double underscore delimiter.

    Example environment variables:
        REQCOV_ENVIRONMENT=production
        REQCOV_BACKEND__ORG_URL=https://dev.azure.com/my-org/
        REQCOV_S3__ENDPOINT=https://s3.example.com
    """

    model_config = SettingsConfigDict(
        env_prefix="REQCOV_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_default=True,
    )

    environment: Environment = Field(
        default=Environment.DEV,
        description="Deployment environment (dev, staging, production)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode (never in production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    backend: BackendSettings = Field(default_factory=BackendSettings)
    s3: S3Settings = Field(default_factory=S3Settings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    coverage: CoverageSettings = Field(default_factory=CoverageSettings)

    api_host: str = Field(
        default="127.0.0.1",
        description="API server bind address",
    )
    api_port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=8000,
        description="API server port",
    )

    app_name: str = Field(
        default="reqcov",
        description="Application name for logging",
    )
    app_version: str = Field(
        default="0.1.0",
        description="Application version",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept only the standard logging level names."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            msg = f"Log level must be one of: {', '.join(sorted(allowed))}"
            raise ValueError(msg)
        return v.upper()

    @model_validator(mode="after")
    def validate_production_constraints(self) -> Self:
        """Enforce production environment constraints."""
        if self.environment == Environment.PRODUCTION:
            if self.debug:
                msg = "Debug mode is not allowed in production environment"
                raise ValueError(msg)
            if not self.s3.secure:
                logger.warning(
                    "S3 is configured without HTTPS in production. "
                    "External spreadsheets will be downloaded in clear text."
                )
        return self

    @cached_property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION


class ConfigValidationError(Exception):
    """Raised when configuration validation fails.

    This exception should cause fast failure at startup to prevent
    running with invalid configuration.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize with error details.

        Args:
            message: Human-readable error description.
            field: Optional field name that failed validation.
        """
        self.message = message
        self.field = field
        super().__init__(message)


def validate_settings(settings: Settings) -> None:
    """Perform additional runtime validation of settings.

    This function performs validations that cannot be expressed
    declaratively in Pydantic models.

    Args:
        settings: Settings instance to validate.

    Raises:
        ConfigValidationError: If validation fails.
    """
    if not settings.backend.org_url.startswith(("http://", "https://")):
        raise ConfigValidationError(
            "Backend organization URL must be http(s). Set REQCOV_BACKEND__ORG_URL.",
            field="backend.org_url",
        )

    for extension in settings.ingestion.allowed_extensions:
        if not extension.startswith("."):
            raise ConfigValidationError(
                f"Allowed extension must start with a dot: {extension}",
                field="ingestion.allowed_extensions",
            )

    if not settings.coverage.requirement_relation_types:
        raise ConfigValidationError(
            "At least one requirement relation type is required.",
            field="coverage.requirement_relation_types",
        )
