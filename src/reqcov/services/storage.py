"""Object store access for externally uploaded spreadsheets.

External bug and L3/L4 tables are uploaded by users to a dedicated
S3-compatible bucket. The ingestor only reads from that bucket: it asks for
an object's metadata to enforce the size limit before downloading it.

Example:
    from reqcov.services.storage import ObjectStoreClient
    from reqcov.core.settings import get_settings

    settings = get_settings()
    client = ObjectStoreClient.from_settings(settings.s3)
    metadata = client.get_metadata("mewp-external-ingestion", "bugs/plan-12.xlsx")
    data = client.download("mewp-external-ingestion", "bugs/plan-12.xlsx")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

    from reqcov.core.config import S3Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata for a stored object.

    Attributes:
        key: The object key in the bucket.
        bucket: The bucket name.
        size_bytes: Size of the object in bytes.
        content_type: MIME type of the content.
        etag: S3 ETag.
        last_modified: Last modification timestamp as ISO string.
    """

    key: str
    bucket: str
    size_bytes: int
    content_type: str
    etag: str
    last_modified: str


class StorageError(Exception):
    """Base exception for storage operations.

    Attributes:
        message: Human-readable error description.
        bucket: The bucket involved in the operation.
        key: The object key involved (if applicable).
        operation: The operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.bucket = bucket
        self.key = key
        self.operation = operation
        super().__init__(message)


class ObjectNotFoundError(StorageError):
    """Raised when an object does not exist."""


class BucketNotFoundError(StorageError):
    """Raised when a bucket does not exist."""


class ObjectStoreClient:
    """Read-only S3-compatible client for external ingestion files.

    The client uses synchronous boto3; async callers run it in a worker
    thread.
    """

    def __init__(
        self,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        """Initialize the object store client.

        Args:
            endpoint_url: S3-compatible endpoint URL (e.g., http://localhost:9000).
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            region: AWS region (use us-east-1 for MinIO).
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
        """
        self._endpoint_url = endpoint_url

        config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_retries, "mode": "standard"},
            signature_version="s3v4",
        )

        self._client: S3Client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=config,
        )

        logger.debug("Initialized ObjectStoreClient for endpoint=%s region=%s", endpoint_url, region)

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreClient:
        """Create client from S3Settings configuration."""
        return cls(
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
        )

    def _raise_for(self, e: ClientError, bucket: str, key: str, operation: str) -> None:
        error_code = e.response.get("Error", {}).get("Code", "")
        if error_code in ("NoSuchKey", "404"):
            raise ObjectNotFoundError(
                f"Object does not exist: {bucket}/{key}",
                bucket=bucket,
                key=key,
                operation=operation,
            ) from e
        if error_code == "NoSuchBucket":
            raise BucketNotFoundError(
                f"Bucket does not exist: {bucket}",
                bucket=bucket,
                key=key,
                operation=operation,
            ) from e
        raise StorageError(
            f"{operation.replace('_', ' ').capitalize()} failed: {e}",
            bucket=bucket,
            key=key,
            operation=operation,
        ) from e

    def get_metadata(self, bucket: str, key: str) -> ObjectMetadata:
        """Get object metadata without downloading content.

        Raises:
            ObjectNotFoundError: If object does not exist.
            BucketNotFoundError: If the bucket does not exist.
            StorageError: If metadata retrieval fails.
        """
        try:
            response = self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            self._raise_for(e, bucket, key, "get_metadata")
            raise

        return ObjectMetadata(
            key=key,
            bucket=bucket,
            size_bytes=response.get("ContentLength", 0),
            content_type=response.get("ContentType", "application/octet-stream"),
            etag=response.get("ETag", ""),
            last_modified=(
                response["LastModified"].isoformat() if response.get("LastModified") else ""
            ),
        )

    def download(self, bucket: str, key: str) -> bytes:
        """Download an object's content.

        Raises:
            ObjectNotFoundError: If object does not exist.
            BucketNotFoundError: If the bucket does not exist.
            StorageError: If download fails.
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            data = response["Body"].read()
        except ClientError as e:
            self._raise_for(e, bucket, key, "download")
            raise

        logger.debug("Downloaded %s/%s (%d bytes)", bucket, key, len(data))
        return data
