"""Pytest configuration and shared fixtures.

Backend and object-store traffic is mocked throughout: httpx requests are
patched per test and S3 is served by moto.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator

import boto3
import pytest
from botocore.config import Config
from httpx import ASGITransport, AsyncClient
from moto import mock_aws

from reqcov.api import create_app
from reqcov.core.config import (
    BackendSettings,
    CoverageSettings,
    IngestionSettings,
    S3Settings,
    Settings,
)
from reqcov.services.storage import ObjectStoreClient
from tests.factories import INGESTION_BUCKET


# ---------------------------------------------------------------------------
# Settings fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def settings() -> Settings:
    """Settings with explicit values, independent of the environment."""
    return Settings(
        backend=BackendSettings(
            org_url="https://ado.example.com/org/",
            token="test-token",  # noqa: S106
            timeout=5.0,
            max_concurrency=4,
            cache_ttl_seconds=30.0,
            batch_size=2,
        ),
        s3=S3Settings(
            endpoint="http://localhost:9000",
            access_key="test_access_key",
            secret_key="test_secret_key",  # noqa: S106
        ),
        ingestion=IngestionSettings(),
        coverage=CoverageSettings(),
    )


# ---------------------------------------------------------------------------
# Object store fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def object_store() -> Generator[ObjectStoreClient, None, None]:
    """ObjectStoreClient backed by moto, with the ingestion bucket created.

    moto only intercepts clients created without a custom endpoint_url, so
    the wrapper's internal client is replaced by one that has none.
    """
    with mock_aws():
        s3_client = boto3.client(
            "s3",
            aws_access_key_id="test_access_key",
            aws_secret_access_key="test_secret_key",  # noqa: S106
            region_name="us-east-1",
            config=Config(signature_version="s3v4"),
        )
        s3_client.create_bucket(Bucket=INGESTION_BUCKET)

        client = ObjectStoreClient(
            endpoint_url="http://mocked",
            access_key="test_access_key",
            secret_key="test_secret_key",  # noqa: S106
            region="us-east-1",
        )
        client._client = s3_client
        yield client


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def test_app(settings: Settings):
    """Create a test FastAPI application."""
    return create_app(settings)


@pytest.fixture
async def api_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API.

    Uses httpx with ASGI transport for in-process testing.
    """
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
